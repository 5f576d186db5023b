from __future__ import annotations

from pathlib import Path
from tempfile import TemporaryDirectory
import json
import logging
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from simcloud.api import create_app
from simcloud.config import AppConfig, PathsConfig, ServerConfig

PAYLOAD = {
    "Session": {"ID": "cube60", "Photons": 1000000},
    "Forward": {"T0": 0, "T1": 5e-9, "Dt": 5e-9},
    "Domain": {"Dim": [60, 60, 60], "Media": [{"mua": 0, "mus": 1, "g": 1, "n": 1}]},
}


def unwrap(text: str, callback: str = "addlog") -> object:
    prefix = f"{callback}("
    assert text.startswith(prefix) and text.endswith(")"), text
    return json.loads(text[len(prefix) : -1])


class CapturingHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


class ApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.config = AppConfig(
            paths=PathsConfig(workspace=root / "workspace", db=root / "simcloud.db", log=root / "simcloud.log"),
            server=ServerConfig(admin_addresses=["testclient"]),
        )
        self.logger = logging.getLogger("test_simcloud_api")
        self.logger.handlers.clear()
        self.logger.addHandler(logging.NullHandler())
        self.client = TestClient(create_app(self.config, self.logger))

    def tearDown(self) -> None:
        self.client.close()
        self.temp_dir.cleanup()

    def test_submit_then_poll(self) -> None:
        response = self.client.post("/", data={"json": json.dumps(PAYLOAD), "name": "Ada", "inst": "Lab"})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("application/javascript"))
        body = unwrap(response.text)
        self.assertEqual(body["status"], "success")
        job_id = body["jobid"]

        polled = unwrap(self.client.get("/", params={"jobid": job_id}).text)
        self.assertEqual(polled, {"status": "queued", "jobid": job_id})

        workspace = self.config.paths.workspace / job_id
        workspace.mkdir()
        polled = unwrap(self.client.get("/", params={"jobid": job_id}).text)
        self.assertEqual(polled["status"], "initiated")

        (workspace / "output.jnii").write_text("partial", encoding="utf-8")
        polled = unwrap(self.client.get("/", params={"jobid": job_id}).text)
        self.assertEqual(polled, {"status": "writing output", "jobid": job_id})

        (workspace / "output.log").write_text("log text", encoding="utf-8")
        (workspace / "done").write_text("", encoding="utf-8")
        polled = unwrap(self.client.get("/", params={"jobid": job_id}).text)
        self.assertEqual(polled["status"], "completed")
        self.assertEqual(polled["output"], "partial")
        self.assertEqual(polled["log"], "log text")

    def test_custom_callback(self) -> None:
        response = self.client.get("/", params={"jobid": "unknown", "callback": "handleStatus"})
        self.assertEqual(unwrap(response.text, "handleStatus"), {"status": "invalid", "jobid": "unknown"})

    def test_unsafe_callback_falls_back_to_default(self) -> None:
        response = self.client.get("/", params={"jobid": "unknown", "callback": "alert(document.cookie)"})
        self.assertTrue(response.text.startswith("addlog("))

    def test_rejection(self) -> None:
        payload = json.loads(json.dumps(PAYLOAD))
        payload["Domain"]["Media"][0]["mus"] = 20.0001
        body = unwrap(self.client.post("/", data={"json": json.dumps(payload)}).text)
        self.assertEqual(body["status"], "invalid")
        self.assertIn("scattering coefficient", body["dberror"])
        self.assertIn("jobid", body)

    def test_cancel(self) -> None:
        job_id = unwrap(self.client.post("/", data={"json": json.dumps(PAYLOAD)}).text)["jobid"]
        body = unwrap(self.client.get("/", params={"jobid": job_id, "action": "cancel"}).text)
        self.assertEqual(body, {"status": "cancelled", "jobid": job_id, "dberror": ""})
        polled = unwrap(self.client.get("/", params={"jobid": job_id}).text)
        self.assertEqual(polled["status"], "cancelled")

    def test_publish_browse_load(self) -> None:
        published = unwrap(
            self.client.post(
                "/",
                data={"json": json.dumps(PAYLOAD), "title": "cube", "comment": "demo", "license": "CC0"},
            ).text
        )
        self.assertEqual(published["status"], "success")
        self.assertIn("createtime", published)

        listing = unwrap(self.client.get("/", params={"limit": "10", "offset": "0"}).text)
        self.assertEqual(len(listing), 1)
        self.assertEqual(listing[0]["hash"], published["hash"])

        filtered = unwrap(self.client.get("/", params={"keyword": "nothing-like-this"}).text)
        self.assertEqual(filtered, [])

        loaded = unwrap(
            self.client.get("/", params={"hash": published["hash"], "id": str(published["createtime"])}).text
        )
        self.assertEqual(loaded, PAYLOAD)

        run = unwrap(self.client.post("/", data={"json": json.dumps(PAYLOAD), "hash": published["hash"]}).text)
        self.assertEqual(run["status"], "success")

    def test_status_by_hash_alias_only(self) -> None:
        alias = self.config.paths.workspace / ("_" + "a" * 64)
        alias.mkdir()
        (alias / "input.json").write_text("{}", encoding="utf-8")
        body = unwrap(self.client.get("/", params={"hash": "a" * 64}).text)
        self.assertEqual(body["status"], "created")

    def test_admin_edit_names_the_entry_by_hash(self) -> None:
        other = json.loads(json.dumps(PAYLOAD))
        other["Session"]["ID"] = "sphere"
        with patch("simcloud.service.epoch_seconds", return_value=1700000000):
            cube = unwrap(self.client.post("/", data={"json": json.dumps(PAYLOAD), "title": "cube"}).text)
            unwrap(self.client.post("/", data={"json": json.dumps(other), "title": "sphere"}).text)

        edited_payload = json.loads(json.dumps(PAYLOAD))
        edited_payload["Session"]["Photons"] = 2000000
        edited = unwrap(
            self.client.post(
                "/",
                data={
                    "json": json.dumps(edited_payload),
                    "title": "cube v2",
                    "id": "1700000000",
                    "hash": cube["hash"],
                },
            ).text
        )
        self.assertEqual(edited["status"], "success")
        titles = sorted(entry["title"] for entry in unwrap(self.client.get("/").text))
        self.assertEqual(titles, ["cube v2", "sphere"])

    def test_request_events_carry_request_id(self) -> None:
        handler = CapturingHandler()
        self.logger.setLevel(logging.INFO)
        self.logger.addHandler(handler)
        self.client.post("/", data={"json": json.dumps(PAYLOAD)})
        self.client.post("/", data={"json": json.dumps(PAYLOAD)})

        submitted = [record.extra_fields for record in handler.records if record.getMessage() == "job_submitted"]
        self.assertEqual(len(submitted), 2)
        self.assertEqual(submitted[0]["client"], "testclient")
        self.assertNotEqual(submitted[0]["request_id"], submitted[1]["request_id"])


class OriginCheckTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        root = Path(self.temp_dir.name)
        config = AppConfig(
            paths=PathsConfig(workspace=root / "workspace", db=root / "simcloud.db", log=root / "simcloud.log"),
            server=ServerConfig(allowed_origins=["mcx.example.org"]),
        )
        logger = logging.getLogger("test_simcloud_api")
        logger.handlers.clear()
        logger.addHandler(logging.NullHandler())
        self.client = TestClient(create_app(config, logger))

    def tearDown(self) -> None:
        self.client.close()
        self.temp_dir.cleanup()

    def test_allowed_origin(self) -> None:
        response = self.client.get("/", headers={"Origin": "https://mcx.example.org"})
        self.assertEqual(response.status_code, 200)

    def test_referer_is_used_without_origin(self) -> None:
        response = self.client.get("/", headers={"Referer": "https://mcx.example.org/page.html"})
        self.assertEqual(response.status_code, 200)

    def test_foreign_origin_rejected(self) -> None:
        response = self.client.get("/", headers={"Origin": "https://evil.example.com"})
        self.assertEqual(response.status_code, 403)

    def test_missing_origin_rejected(self) -> None:
        self.assertEqual(self.client.get("/").status_code, 403)


if __name__ == "__main__":
    unittest.main()

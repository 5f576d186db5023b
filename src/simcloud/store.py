from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .models import JobRecord, JobStatus, LibraryEntry, Submitter
from .utils import utc_now_iso


class StoreError(RuntimeError):
    pass


class DuplicateEntryError(StoreError):
    pass


def _row_to_submitter(row: sqlite3.Row) -> Submitter:
    return Submitter(
        name=row["name"] or "",
        institution=row["institution"] or "",
        email=row["email"] or "",
        netname=row["netname"] or "",
        address=row["address"] or "",
    )


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        job_id=row["job_id"],
        fingerprint=row["fingerprint"],
        status=JobStatus(int(row["status"])),
        priority=int(row["priority"]),
        submitter=_row_to_submitter(row),
        payload=row["payload"],
        created_at=row["created_at"],
    )


def _row_to_library_entry(row: sqlite3.Row) -> LibraryEntry:
    return LibraryEntry(
        createtime=int(row["createtime"]),
        fingerprint=row["fingerprint"],
        title=row["title"] or "",
        payload=row["payload"],
        updated_at=int(row["time"]),
        comment=row["comment"] or "",
        license=row["license"] or "",
        thumbnail=row["thumbnail"] or "",
        submitter=_row_to_submitter(row),
        run_count=int(row["runcount"]),
    )


def _like_pattern(keyword: str) -> str:
    escaped = keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class Store:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        try:
            self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open {db_path}: {exc}") from exc
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def _guard(self, context: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.IntegrityError as exc:
            self.conn.rollback()
            raise DuplicateEntryError(f"{context} failed: {exc}") from exc
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise StoreError(f"{context} failed: {exc}") from exc

    def init_schema(self) -> None:
        with self._guard("init schema"):
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    fingerprint TEXT NOT NULL,
                    status INTEGER NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 1,
                    name TEXT,
                    institution TEXT,
                    email TEXT,
                    netname TEXT,
                    address TEXT,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS library (
                    createtime INTEGER NOT NULL,
                    fingerprint TEXT NOT NULL,
                    time INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    comment TEXT,
                    license TEXT,
                    thumbnail TEXT,
                    name TEXT,
                    institution TEXT,
                    email TEXT,
                    netname TEXT,
                    address TEXT,
                    payload TEXT NOT NULL,
                    runcount INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (createtime, fingerprint)
                );

                CREATE TABLE IF NOT EXISTS job_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_status_priority
                    ON jobs(status, priority, created_at);
                CREATE INDEX IF NOT EXISTS idx_jobs_fingerprint
                    ON jobs(fingerprint);
                CREATE INDEX IF NOT EXISTS idx_library_fingerprint
                    ON library(fingerprint);
                CREATE INDEX IF NOT EXISTS idx_job_events_job_timestamp
                    ON job_events(job_id, timestamp);
                """
            )
            self.conn.commit()

    def add_event(self, job_id: str, event_type: str, details: dict[str, Any] | None = None) -> None:
        with self._guard(f"record event {event_type}"):
            self.conn.execute(
                """
                INSERT INTO job_events(job_id, event_type, timestamp, details_json)
                VALUES (?, ?, ?, ?)
                """,
                (job_id, event_type, utc_now_iso(), json.dumps(details or {}, sort_keys=True)),
            )
            self.conn.commit()

    def list_events(self, job_id: str) -> list[dict[str, Any]]:
        with self._guard("list events"):
            rows = self.conn.execute(
                "SELECT event_type, timestamp, details_json FROM job_events WHERE job_id = ? ORDER BY id",
                (job_id,),
            ).fetchall()
        return [
            {
                "event_type": row["event_type"],
                "timestamp": row["timestamp"],
                "details": json.loads(row["details_json"]),
            }
            for row in rows
        ]

    def insert_job(self, record: JobRecord) -> None:
        submitter = record.submitter
        with self._guard(f"insert job {record.job_id}"):
            self.conn.execute(
                """
                INSERT INTO jobs(
                    job_id, fingerprint, status, priority, name, institution, email,
                    netname, address, payload, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.job_id,
                    record.fingerprint,
                    int(record.status),
                    record.priority,
                    submitter.name,
                    submitter.institution,
                    submitter.email,
                    submitter.netname,
                    submitter.address,
                    record.payload,
                    record.created_at,
                ),
            )
            self.conn.commit()

    def update_status(self, job_id: str, status: JobStatus) -> bool:
        """Set a job's stored status; returns False when nothing changed."""
        with self._guard(f"update status of {job_id}"):
            cursor = self.conn.execute(
                "UPDATE jobs SET status = ? WHERE job_id = ? AND status != ?",
                (int(status), job_id, int(status)),
            )
            self.conn.commit()
        return cursor.rowcount > 0

    def get_job(self, job_id: str) -> JobRecord | None:
        with self._guard(f"get job {job_id}"):
            row = self.conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return _row_to_job(row)

    def get_status(self, job_id: str) -> JobStatus | None:
        with self._guard(f"get status of {job_id}"):
            row = self.conn.execute("SELECT status FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return JobStatus(int(row["status"]))

    def list_queued_jobs(self, limit: int = 20) -> list[JobRecord]:
        with self._guard("list queued jobs"):
            rows = self.conn.execute(
                "SELECT * FROM jobs WHERE status = ? ORDER BY priority, created_at LIMIT ?",
                (int(JobStatus.QUEUED), limit),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def summary_counts(self) -> dict[str, int]:
        with self._guard("count jobs"):
            rows = self.conn.execute("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status").fetchall()
        output = {status.label: 0 for status in JobStatus}
        for row in rows:
            output[JobStatus(int(row["status"])).label] = int(row["count"])
        return output

    def increment_run_count(self, fingerprint: str) -> int:
        """Bump the run counter of every library entry sharing this fingerprint."""
        with self._guard(f"increment run count of {fingerprint}"):
            cursor = self.conn.execute(
                "UPDATE library SET runcount = runcount + 1 WHERE fingerprint = ?",
                (fingerprint,),
            )
            self.conn.commit()
        return cursor.rowcount

    def insert_library_entry(self, entry: LibraryEntry) -> None:
        with self._guard(f"insert library entry {entry.createtime}"):
            self.conn.execute(
                """
                INSERT INTO library(
                    createtime, fingerprint, time, title, comment, license, thumbnail,
                    name, institution, email, netname, address, payload, runcount
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.createtime,
                    entry.fingerprint,
                    entry.updated_at,
                    entry.title,
                    entry.comment,
                    entry.license,
                    entry.thumbnail,
                    entry.submitter.name,
                    entry.submitter.institution,
                    entry.submitter.email,
                    entry.submitter.netname,
                    entry.submitter.address,
                    entry.payload,
                    entry.run_count,
                ),
            )
            self.conn.commit()

    def upsert_library_entry(self, entry: LibraryEntry, previous_fingerprint: str | None = None) -> bool:
        """Overwrite the entry published at ``entry.createtime``, inserting it if absent.

        ``previous_fingerprint`` narrows the match when several entries share a
        creation time; without it every entry at that time is overwritten, which
        fails with ``DuplicateEntryError`` if there is more than one.
        Returns True when a new row was inserted.
        """
        submitter = entry.submitter
        with self._guard(f"upsert library entry {entry.createtime}"):
            cursor = self.conn.execute(
                """
                UPDATE library
                SET fingerprint = ?,
                    time = ?,
                    title = ?,
                    comment = ?,
                    license = ?,
                    thumbnail = ?,
                    name = ?,
                    institution = ?,
                    email = ?,
                    netname = ?,
                    address = ?,
                    payload = ?
                WHERE createtime = ? AND (? IS NULL OR fingerprint = ?)
                """,
                (
                    entry.fingerprint,
                    entry.updated_at,
                    entry.title,
                    entry.comment,
                    entry.license,
                    entry.thumbnail,
                    submitter.name,
                    submitter.institution,
                    submitter.email,
                    submitter.netname,
                    submitter.address,
                    entry.payload,
                    entry.createtime,
                    previous_fingerprint,
                    previous_fingerprint,
                ),
            )
            self.conn.commit()
        if cursor.rowcount > 0:
            return False
        self.insert_library_entry(entry)
        return True

    def get_library_entry(self, fingerprint: str, createtime: int) -> LibraryEntry | None:
        with self._guard(f"get library entry {createtime}"):
            row = self.conn.execute(
                "SELECT * FROM library WHERE fingerprint = ? AND createtime = ?",
                (fingerprint, createtime),
            ).fetchone()
        if row is None:
            return None
        return _row_to_library_entry(row)

    def get_library_payload(self, fingerprint: str, createtime: int) -> str | None:
        entry = self.get_library_entry(fingerprint, createtime)
        return entry.payload if entry is not None else None

    def search_library(self, keyword: str | None = None, limit: int = 10, offset: int = 0) -> list[LibraryEntry]:
        with self._guard("search library"):
            if keyword:
                pattern = _like_pattern(keyword)
                rows = self.conn.execute(
                    """
                    SELECT * FROM library
                    WHERE title LIKE ? ESCAPE '\\' OR comment LIKE ? ESCAPE '\\'
                    ORDER BY runcount DESC, createtime DESC
                    LIMIT ? OFFSET ?
                    """,
                    (pattern, pattern, limit, offset),
                ).fetchall()
            else:
                rows = self.conn.execute(
                    "SELECT * FROM library ORDER BY runcount DESC, createtime DESC LIMIT ? OFFSET ?",
                    (limit, offset),
                ).fetchall()
        return [_row_to_library_entry(row) for row in rows]

from __future__ import annotations

import hashlib
import json
import re
import time
import uuid
from datetime import UTC, datetime
from typing import Any

WORKSPACE_ID_REGEX = re.compile(r"^_?[A-Za-z0-9-]+$")
CALLBACK_REGEX = re.compile(r"^[A-Za-z_$][\w$]*(?:\.[A-Za-z_$][\w$]*)*$")


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def epoch_seconds() -> int:
    return int(time.time())


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def fingerprint(payload: Any) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def new_job_id() -> str:
    return uuid.uuid4().hex


def new_request_id() -> str:
    return uuid.uuid4().hex[:12]


def alias_workspace_id(payload_fingerprint: str) -> str:
    return f"_{payload_fingerprint}"


def is_safe_workspace_id(workspace_id: str) -> bool:
    return bool(WORKSPACE_ID_REGEX.match(workspace_id))


def is_safe_callback(callback: str) -> bool:
    return bool(CALLBACK_REGEX.match(callback))

from __future__ import annotations

import json
import logging
from typing import Any

from .app_logging import AppLogger, log_with_fields
from .config import LibraryConfig
from .models import JobRecord, JobStatus, LibraryEntry, StatusReport, Submitter
from .quota import QuotaLimits, ValidationError, validate
from .store import DuplicateEntryError, Store, StoreError
from .utils import canonical_json, epoch_seconds, fingerprint, new_job_id, utc_now_iso
from .workspace import WorkspaceReconciler


def parse_payload(payload: str | dict[str, Any]) -> dict[str, Any]:
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"payload is not valid JSON: {exc.msg}") from exc
        except (ValueError, RecursionError) as exc:
            # Over-long integer literals and excessive nesting.
            raise ValidationError(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("payload must be a JSON object")
    return payload


def library_event_id(createtime: int) -> str:
    return f"library:{createtime}"


class JobService:
    """Request handlers; every public method returns a response body and never raises for bad input."""

    def __init__(
        self,
        store: Store,
        reconciler: WorkspaceReconciler,
        logger: AppLogger,
        *,
        limits: QuotaLimits | None = None,
        default_priority: int = 1,
        library: LibraryConfig | None = None,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.logger = logger
        self.limits = limits or QuotaLimits()
        self.default_priority = default_priority
        self.library = library or LibraryConfig()

    def _admit(self, payload: str | dict[str, Any]) -> dict[str, Any]:
        document = parse_payload(payload)
        validate(document, self.limits).raise_for_rejection()
        return document

    def _store_failed(self, exc: StoreError, **fields: object) -> str:
        log_with_fields(self.logger, logging.ERROR, "store_error", error=str(exc), **fields)
        return str(exc)

    def submit(
        self,
        payload: str | dict[str, Any],
        submitter: Submitter,
        *,
        priority: int | None = None,
        from_library: bool = False,
    ) -> dict[str, Any]:
        job_id = new_job_id()
        try:
            document = self._admit(payload)
        except ValidationError as exc:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "job_rejected",
                job_id=job_id,
                reason=str(exc),
                address=submitter.address,
            )
            return {"status": "invalid", "jobid": job_id, "dberror": str(exc)}

        payload_hash = fingerprint(document)
        record = JobRecord(
            job_id=job_id,
            fingerprint=payload_hash,
            status=JobStatus.QUEUED,
            priority=self.default_priority if priority is None else priority,
            submitter=submitter,
            payload=canonical_json(document),
            created_at=utc_now_iso(),
        )
        dberror = ""
        try:
            self.store.insert_job(record)
            self.store.add_event(job_id, "submitted", {"fingerprint": payload_hash, "priority": record.priority})
            if from_library:
                # A payload edited after loading no longer matches any entry; that is not an error.
                self.store.increment_run_count(payload_hash)
        except StoreError as exc:
            dberror = self._store_failed(exc, job_id=job_id)
        else:
            log_with_fields(
                self.logger,
                logging.INFO,
                "job_submitted",
                job_id=job_id,
                fingerprint=payload_hash,
                priority=record.priority,
                from_library=from_library,
            )
        return {"status": "success", "jobid": job_id, "hash": payload_hash, "dberror": dberror}

    def publish(
        self,
        payload: str | dict[str, Any],
        submitter: Submitter,
        *,
        title: str,
        comment: str = "",
        license: str = "",
        thumbnail: str = "",
        createtime: int | None = None,
        previous_fingerprint: str | None = None,
    ) -> dict[str, Any]:
        """Add a library entry, or overwrite the one published at ``createtime``.

        A (createtime, fingerprint) pair that is already taken answers ``invalid``.
        """
        now = epoch_seconds()
        try:
            document = self._admit(payload)
        except ValidationError as exc:
            log_with_fields(self.logger, logging.WARNING, "job_rejected", title=title, reason=str(exc))
            return {"status": "invalid", "createtime": createtime, "dberror": str(exc)}

        payload_hash = fingerprint(document)
        entry = LibraryEntry(
            createtime=now if createtime is None else createtime,
            fingerprint=payload_hash,
            title=title,
            payload=canonical_json(document),
            updated_at=now,
            comment=comment,
            license=license,
            thumbnail=thumbnail,
            submitter=submitter,
        )
        dberror = ""
        try:
            if createtime is None:
                self.store.insert_library_entry(entry)
                event = "published"
            else:
                inserted = self.store.upsert_library_entry(entry, previous_fingerprint)
                event = "published" if inserted else "library_updated"
            self.store.add_event(library_event_id(entry.createtime), event, {"fingerprint": payload_hash})
        except DuplicateEntryError as exc:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "library_duplicate",
                createtime=entry.createtime,
                fingerprint=payload_hash,
                error=str(exc),
            )
            return {
                "status": "invalid",
                "createtime": entry.createtime,
                "hash": payload_hash,
                "dberror": "a library entry with this time and fingerprint already exists",
            }
        except StoreError as exc:
            dberror = self._store_failed(exc, createtime=entry.createtime)
        else:
            log_with_fields(
                self.logger,
                logging.INFO,
                "library_published" if event == "published" else "library_updated",
                createtime=entry.createtime,
                fingerprint=payload_hash,
                title=title,
            )
        return {"status": "success", "createtime": entry.createtime, "hash": payload_hash, "dberror": dberror}

    def cancel(self, job_id: str) -> dict[str, Any]:
        # Bookkeeping only: the worker keeps running and its workspace still wins status resolution.
        try:
            if self.store.get_job(job_id) is None:
                return {"status": JobStatus.INVALID.label, "jobid": job_id, "dberror": ""}
            changed = self.store.update_status(job_id, JobStatus.CANCELLED)
            if changed:
                self.store.add_event(job_id, "cancelled")
        except StoreError as exc:
            return {"status": "cancelled", "jobid": job_id, "dberror": self._store_failed(exc, job_id=job_id)}
        if changed:
            log_with_fields(self.logger, logging.INFO, "job_cancelled", job_id=job_id)
        return {"status": "cancelled", "jobid": job_id, "dberror": ""}

    def status(self, job_id: str, fingerprint: str | None = None) -> dict[str, Any]:
        try:
            report = self.reconciler.resolve(job_id, fingerprint)
        except StoreError as exc:
            report = StatusReport(
                job_id=job_id,
                status=JobStatus.INVALID,
                dberror=self._store_failed(exc, job_id=job_id),
            )
        return report.to_response()

    def browse(self, keyword: str | None = None, limit: int | None = None, offset: int = 0) -> list[dict[str, Any]]:
        if limit is None:
            limit = self.library.default_page_size
        limit = max(1, min(limit, self.library.max_page_size))
        offset = max(0, offset)
        try:
            entries = self.store.search_library(keyword or None, limit, offset)
        except StoreError as exc:
            self._store_failed(exc, keyword=keyword)
            return []
        return [entry.summary() for entry in entries]

    def load(self, payload_fingerprint: str, createtime: int) -> dict[str, Any]:
        try:
            payload = self.store.get_library_payload(payload_fingerprint, createtime)
        except StoreError as exc:
            return {
                "status": JobStatus.INVALID.label,
                "hash": payload_fingerprint,
                "id": createtime,
                "dberror": self._store_failed(exc, fingerprint=payload_fingerprint),
            }
        if payload is None:
            return {"status": JobStatus.INVALID.label, "hash": payload_fingerprint, "id": createtime, "dberror": "not found"}
        return json.loads(payload)

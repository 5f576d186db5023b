"""Derive a job's live status from the artifacts its worker left on disk.

Workers own the workspace; this module only reads it. A workspace directory
moves through these observable stages:

    (absent) -> directory -> input descriptor -> output growing -> done sentinel

The sentinel is written only after output and log are flushed, so output is
never read back unless the sentinel is present.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from .app_logging import AppLogger, log_with_fields
from .config import WorkspaceFilesConfig
from .models import ArtifactSnapshot, JobStatus, StatusReport
from .store import Store
from .utils import alias_workspace_id, is_safe_workspace_id


class ArtifactInspector(Protocol):
    def snapshot(self, workspace_id: str) -> ArtifactSnapshot: ...

    def read_output(self, workspace_id: str) -> str: ...

    def read_log(self, workspace_id: str) -> str | None: ...


def derive_status(snapshot: ArtifactSnapshot, stored: JobStatus | None) -> JobStatus:
    """Workspace evidence first, then the stored status, then ``INVALID``."""
    if snapshot.directory_exists:
        if snapshot.output_size > 0:
            return JobStatus.COMPLETED if snapshot.sentinel_exists else JobStatus.WRITING_OUTPUT
        if snapshot.input_size > 0:
            return JobStatus.CREATED
        return JobStatus.INITIATED
    if stored is not None:
        return stored
    return JobStatus.INVALID


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size if path.is_file() else 0
    except OSError:
        return 0


class FilesystemWorkspace:
    def __init__(self, root: Path, files: WorkspaceFilesConfig | None = None) -> None:
        self.root = root
        self.files = files or WorkspaceFilesConfig()

    def directory(self, workspace_id: str) -> Path | None:
        if not is_safe_workspace_id(workspace_id):
            return None
        return self.root / workspace_id

    def snapshot(self, workspace_id: str) -> ArtifactSnapshot:
        directory = self.directory(workspace_id)
        if directory is None or not directory.is_dir():
            return ArtifactSnapshot.missing()
        return ArtifactSnapshot(
            directory_exists=True,
            input_size=_file_size(directory / self.files.input),
            output_size=_file_size(directory / self.files.output),
            log_exists=(directory / self.files.log).is_file(),
            sentinel_exists=(directory / self.files.done).exists(),
        )

    def read_output(self, workspace_id: str) -> str:
        directory = self.directory(workspace_id)
        if directory is None:
            raise FileNotFoundError(workspace_id)
        return (directory / self.files.output).read_text(encoding="utf-8", errors="replace")

    def read_log(self, workspace_id: str) -> str | None:
        directory = self.directory(workspace_id)
        if directory is None:
            return None
        log_path = directory / self.files.log
        if not log_path.is_file():
            return None
        return log_path.read_text(encoding="utf-8", errors="replace")


class WorkspaceReconciler:
    def __init__(self, inspector: ArtifactInspector, store: Store, logger: AppLogger) -> None:
        self.inspector = inspector
        self.store = store
        self.logger = logger

    def resolve(self, job_id: str, fingerprint: str | None = None) -> StatusReport:
        workspace_id = job_id
        snapshot = self.inspector.snapshot(job_id) if job_id else ArtifactSnapshot.missing()
        stored: JobStatus | None = None

        if not snapshot.directory_exists:
            if job_id:
                record = self.store.get_job(job_id)
                if record is not None:
                    stored = record.status
                    fingerprint = fingerprint or record.fingerprint
            if fingerprint:
                alias = alias_workspace_id(fingerprint)
                alias_snapshot = self.inspector.snapshot(alias)
                if alias_snapshot.directory_exists:
                    workspace_id = alias
                    snapshot = alias_snapshot

        status = derive_status(snapshot, stored)
        report = StatusReport(
            job_id=job_id,
            status=status,
            workspace_id=workspace_id if snapshot.directory_exists else None,
        )
        if status is JobStatus.COMPLETED:
            try:
                report.output = self.inspector.read_output(workspace_id)
                report.log = self.inspector.read_log(workspace_id)
            except OSError as exc:
                report = self._reresolve(job_id, workspace_id, stored, exc)

        log_with_fields(
            self.logger,
            logging.DEBUG,
            "status_resolved",
            job_id=job_id,
            workspace_id=report.workspace_id,
            status=report.status.label,
        )
        return report

    def _reresolve(
        self,
        job_id: str,
        workspace_id: str,
        stored: JobStatus | None,
        error: OSError,
    ) -> StatusReport:
        """Artifacts changed under us after the snapshot; derive again without reading content."""
        log_with_fields(
            self.logger,
            logging.WARNING,
            "artifact_read_failed",
            job_id=job_id,
            workspace_id=workspace_id,
            error=str(error),
        )
        snapshot = self.inspector.snapshot(workspace_id)
        if not snapshot.directory_exists and stored is None and job_id:
            stored = self.store.get_status(job_id)
        status = derive_status(snapshot, stored)
        report = StatusReport(
            job_id=job_id,
            status=status,
            workspace_id=workspace_id if snapshot.directory_exists else None,
        )
        if status is JobStatus.COMPLETED:
            report.dberror = f"cannot read workspace artifacts: {error}"
        return report

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from types import MappingProxyType


class JobStatus(IntEnum):
    QUEUED = 0
    INITIATED = 1
    CREATED = 2
    RUNNING = 3
    COMPLETED = 4
    DELETED = 5
    FAILED = 6
    INVALID = 7
    CANCELLED = 8
    WRITING_OUTPUT = 9

    @property
    def label(self) -> str:
        return STATUS_NAMES[self]


STATUS_NAMES = MappingProxyType(
    {
        JobStatus.QUEUED: "queued",
        JobStatus.INITIATED: "initiated",
        JobStatus.CREATED: "created",
        JobStatus.RUNNING: "running",
        JobStatus.COMPLETED: "completed",
        JobStatus.DELETED: "deleted",
        JobStatus.FAILED: "failed",
        JobStatus.INVALID: "invalid",
        JobStatus.CANCELLED: "cancelled",
        JobStatus.WRITING_OUTPUT: "writing output",
    }
)

TERMINAL_STATES = frozenset(
    {JobStatus.COMPLETED, JobStatus.DELETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


@dataclass(slots=True, frozen=True)
class Submitter:
    name: str = ""
    institution: str = ""
    email: str = ""
    netname: str = ""
    address: str = ""


@dataclass(slots=True)
class JobRecord:
    job_id: str
    fingerprint: str
    status: JobStatus
    priority: int
    submitter: Submitter
    payload: str
    created_at: str


@dataclass(slots=True)
class LibraryEntry:
    createtime: int
    fingerprint: str
    title: str
    payload: str
    updated_at: int
    comment: str = ""
    license: str = ""
    thumbnail: str = ""
    submitter: Submitter = field(default_factory=Submitter)
    run_count: int = 0

    def summary(self) -> dict[str, object]:
        return {
            "time": self.createtime,
            "hash": self.fingerprint,
            "title": self.title,
            "comment": self.comment,
            "license": self.license,
            "thumbnail": self.thumbnail,
        }


@dataclass(slots=True, frozen=True)
class ArtifactSnapshot:
    """Point-in-time view of one workspace directory.

    Sizes are in bytes and are 0 for files that do not exist.
    """

    directory_exists: bool
    input_size: int = 0
    output_size: int = 0
    log_exists: bool = False
    sentinel_exists: bool = False

    @classmethod
    def missing(cls) -> ArtifactSnapshot:
        return cls(directory_exists=False)


@dataclass(slots=True)
class StatusReport:
    job_id: str
    status: JobStatus
    workspace_id: str | None = None
    output: str | None = None
    log: str | None = None
    dberror: str | None = None

    def to_response(self) -> dict[str, object]:
        body: dict[str, object] = {"status": self.status.label, "jobid": self.job_id}
        if self.output is not None:
            body["output"] = self.output
        if self.log is not None:
            body["log"] = self.log
        if self.dberror is not None:
            body["dberror"] = self.dberror
        return body

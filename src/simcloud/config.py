from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .quota import QuotaLimits
from .utils import is_safe_callback


@dataclass(slots=True)
class PathsConfig:
    workspace: Path
    db: Path
    log: Path


@dataclass(slots=True)
class WorkspaceFilesConfig:
    input: str = "input.json"
    output: str = "output.jnii"
    log: str = "output.log"
    done: str = "done"


@dataclass(slots=True)
class SubmissionConfig:
    default_priority: int = 1


@dataclass(slots=True)
class LibraryConfig:
    default_page_size: int = 10
    max_page_size: int = 100


@dataclass(slots=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    default_callback: str = "addlog"
    allowed_origins: list[str] = field(default_factory=list)
    admin_addresses: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig
    workspace_files: WorkspaceFilesConfig = field(default_factory=WorkspaceFilesConfig)
    quota: QuotaLimits = field(default_factory=QuotaLimits)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    library: LibraryConfig = field(default_factory=LibraryConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _mapping(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _string_list(section: dict, key: str, section_name: str) -> list[str]:
    value = section.get(key, []) or []
    if not isinstance(value, list):
        raise ValueError(f"`{section_name}.{key}` must be a list")
    return [str(item) for item in value]


def _file_name(section: dict, key: str, default: str) -> str:
    value = str(section.get(key, default))
    if not value or "/" in value or "\\" in value or value in {".", ".."}:
        raise ValueError(f"`workspace_files.{key}` must be a plain file name")
    return value


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    paths_raw = _require(raw, "paths", "root")
    if not isinstance(paths_raw, dict):
        raise ValueError("`paths` must be a mapping")
    files_raw = _mapping(raw, "workspace_files")
    quota_raw = _mapping(raw, "quota")
    submission_raw = _mapping(raw, "submission")
    library_raw = _mapping(raw, "library")
    server_raw = _mapping(raw, "server")

    def to_path(key: str) -> Path:
        value = _require(paths_raw, key, "paths")
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    paths = PathsConfig(
        workspace=to_path("workspace"),
        db=to_path("db"),
        log=to_path("log"),
    )

    workspace_files = WorkspaceFilesConfig(
        input=_file_name(files_raw, "input", "input.json"),
        output=_file_name(files_raw, "output", "output.jnii"),
        log=_file_name(files_raw, "log", "output.log"),
        done=_file_name(files_raw, "done", "done"),
    )
    if len({workspace_files.input, workspace_files.output, workspace_files.log, workspace_files.done}) != 4:
        raise ValueError("`workspace_files` entries must be distinct")

    # YAML 1.1 reads `1e7` as a string, so coerce explicitly.
    quota = QuotaLimits(
        max_photons=float(quota_raw.get("max_photons", 1e7)),
        max_time_gates=float(quota_raw.get("max_time_gates", 20)),
        max_domain_dim=int(quota_raw.get("max_domain_dim", 100)),
        max_shape_size=int(quota_raw.get("max_shape_size", 100)),
        max_scattering=float(quota_raw.get("max_scattering", 20)),
    )
    if quota.max_photons <= 0 or quota.max_time_gates <= 0:
        raise ValueError("`quota` limits must be positive")

    submission = SubmissionConfig(default_priority=int(submission_raw.get("default_priority", 1)))

    library = LibraryConfig(
        default_page_size=int(library_raw.get("default_page_size", 10)),
        max_page_size=int(library_raw.get("max_page_size", 100)),
    )
    if library.max_page_size < 1:
        raise ValueError("`library.max_page_size` must be >= 1")
    if not 1 <= library.default_page_size <= library.max_page_size:
        raise ValueError("`library.default_page_size` must be between 1 and `library.max_page_size`")

    server = ServerConfig(
        host=str(server_raw.get("host", "127.0.0.1")),
        port=int(server_raw.get("port", 8000)),
        default_callback=str(server_raw.get("default_callback", "addlog")),
        allowed_origins=_string_list(server_raw, "allowed_origins", "server"),
        admin_addresses=_string_list(server_raw, "admin_addresses", "server"),
    )
    if not is_safe_callback(server.default_callback):
        raise ValueError("`server.default_callback` must be a JavaScript identifier")

    return AppConfig(
        paths=paths,
        workspace_files=workspace_files,
        quota=quota,
        submission=submission,
        library=library,
        server=server,
    )


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.workspace.mkdir(parents=True, exist_ok=True)
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)

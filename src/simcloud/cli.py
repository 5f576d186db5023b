from __future__ import annotations

import argparse
import json
import logging
import sys

import uvicorn

from .api import build_service, create_app
from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config
from .models import JobStatus
from .service import JobService
from .store import Store, StoreError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="simcloud", description="Simulation job tracking service")
    parser.add_argument("--config", required=True, help="Path to simcloud YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP endpoint")
    serve.add_argument("--host", help="Override server.host")
    serve.add_argument("--port", type=int, help="Override server.port")

    status = subparsers.add_parser("status", help="Resolve the live status of a job")
    status.add_argument("--job-id", required=True, help="Job id to inspect")
    status.add_argument("--hash", help="Payload fingerprint used for the workspace alias")

    cancel = subparsers.add_parser("cancel", help="Mark a job as cancelled")
    cancel.add_argument("--job-id", required=True, help="Job id to cancel")

    browse = subparsers.add_parser("browse", help="List library entries")
    browse.add_argument("--keyword", help="Filter on title or comment")
    browse.add_argument("--limit", type=int, help="Page size")
    browse.add_argument("--offset", type=int, default=0, help="Entries to skip")

    queue = subparsers.add_parser("queue", help="Show queued jobs in pick-up order")
    queue.add_argument("--limit", type=int, default=20, help="Maximum jobs to list")
    return parser


def _open_service(config: AppConfig) -> tuple[Store, JobService]:
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log)
    store = Store(config.paths.db)
    store.init_schema()
    return store, build_service(config, store, logger)


def _print_json(body: object) -> None:
    print(json.dumps(body, indent=2, ensure_ascii=False))


def cmd_serve(config: AppConfig, *, host: str | None = None, port: int | None = None) -> int:
    app = create_app(config)
    try:
        uvicorn.run(app, host=host or config.server.host, port=port or config.server.port)
    except KeyboardInterrupt:
        log_with_fields(logging.getLogger("simcloud"), logging.INFO, "shutdown", reason="keyboard_interrupt")
    return 0


def cmd_status(config: AppConfig, job_id: str, payload_hash: str | None) -> int:
    store, service = _open_service(config)
    try:
        body = service.status(job_id, payload_hash)
        _print_json(body)
        return 2 if body["status"] == JobStatus.INVALID.label else 0
    finally:
        store.close()


def cmd_cancel(config: AppConfig, job_id: str) -> int:
    store, service = _open_service(config)
    try:
        body = service.cancel(job_id)
        _print_json(body)
        if body["status"] != "cancelled":
            print(f"job not found: {job_id}", file=sys.stderr)
            return 2
        return 1 if body["dberror"] else 0
    finally:
        store.close()


def cmd_browse(config: AppConfig, keyword: str | None, limit: int | None, offset: int) -> int:
    store, service = _open_service(config)
    try:
        entries = service.browse(keyword, limit, offset)
        if not entries:
            print("(no library entries)")
        for entry in entries:
            print(f"{entry['time']:>12} {entry['hash'][:12]} {entry['title']}")
        return 0
    finally:
        store.close()


def cmd_queue(config: AppConfig, limit: int) -> int:
    ensure_local_paths(config)
    store = Store(config.paths.db)
    try:
        store.init_schema()
        counts = store.summary_counts()
        print("Jobs:")
        for status in JobStatus:
            print(f"  {status.label:15} {counts.get(status.label, 0)}")

        print("\nQueue:")
        queued = store.list_queued_jobs(limit)
        if not queued:
            print("  (empty)")
        for job in queued:
            print(f"  {job.job_id} priority={job.priority} hash={job.fingerprint[:12]} created={job.created_at}")
        return 0
    except StoreError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    if args.command == "serve":
        return cmd_serve(config, host=args.host, port=args.port)
    if args.command == "status":
        return cmd_status(config, args.job_id, args.hash)
    if args.command == "cancel":
        return cmd_cancel(config, args.job_id)
    if args.command == "browse":
        return cmd_browse(config, args.keyword, args.limit, args.offset)
    if args.command == "queue":
        return cmd_queue(config, args.limit)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())

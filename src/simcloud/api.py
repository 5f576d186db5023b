from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlparse

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from .app_logging import AppLogger, log_with_fields, request_logger, setup_logger
from .config import AppConfig, ensure_local_paths
from .models import Submitter
from .service import JobService
from .store import Store
from .utils import is_safe_callback, new_request_id
from .workspace import FilesystemWorkspace, WorkspaceReconciler

JAVASCRIPT_MEDIA_TYPE = "application/javascript"


def build_service(config: AppConfig, store: Store, logger: AppLogger) -> JobService:
    inspector = FilesystemWorkspace(config.paths.workspace, config.workspace_files)
    return JobService(
        store,
        WorkspaceReconciler(inspector, store, logger),
        logger,
        limits=config.quota,
        default_priority=config.submission.default_priority,
        library=config.library,
    )


def wrap_callback(body: Any, callback: str) -> str:
    return f"{callback}({json.dumps(body, ensure_ascii=False)})"


def origin_allowed(headers: Mapping[str, str], allowed_origins: list[str]) -> bool:
    if not allowed_origins:
        return True
    source = headers.get("origin") or headers.get("referer")
    if not source:
        return False
    return urlparse(source).hostname in allowed_origins


def _int_param(params: Mapping[str, str], key: str) -> int | None:
    value = params.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _submitter(params: Mapping[str, str], client_address: str) -> Submitter:
    return Submitter(
        name=params.get("name", ""),
        institution=params.get("inst", ""),
        email=params.get("email", ""),
        netname=params.get("netname", ""),
        address=client_address,
    )


def dispatch_request(
    params: Mapping[str, str],
    service: JobService,
    *,
    client_address: str = "",
    is_admin: bool = False,
) -> Any:
    """Route one request to exactly one handler based on which parameters are present."""
    payload = params.get("json")
    title = params.get("title")
    payload_hash = params.get("hash") or None
    job_id = params.get("jobid", "")

    if payload is not None and title:
        createtime = _int_param(params, "id")
        if createtime is not None and not is_admin:
            return {
                "status": "invalid",
                "createtime": createtime,
                "dberror": "editing library entries is restricted to admin addresses",
            }
        return service.publish(
            payload,
            _submitter(params, client_address),
            title=title,
            comment=params.get("comment", ""),
            license=params.get("license", ""),
            thumbnail=params.get("thumbnail", ""),
            createtime=createtime,
            previous_fingerprint=payload_hash if createtime is not None else None,
        )
    if payload is not None:
        return service.submit(payload, _submitter(params, client_address), from_library=payload_hash is not None)
    if payload_hash and "id" in params:
        createtime = _int_param(params, "id")
        if createtime is None:
            return {"status": "invalid", "hash": payload_hash, "id": params.get("id"), "dberror": "not found"}
        return service.load(payload_hash, createtime)
    if job_id and params.get("action") == "cancel":
        return service.cancel(job_id)
    if job_id or payload_hash:
        return service.status(job_id, payload_hash)
    return service.browse(
        params.get("keyword") or None,
        _int_param(params, "limit"),
        _int_param(params, "offset") or 0,
    )


def create_app(config: AppConfig, logger: logging.Logger | None = None) -> FastAPI:
    ensure_local_paths(config)
    logger = logger or setup_logger(config.paths.log)
    store = Store(config.paths.db)
    try:
        store.init_schema()
    finally:
        store.close()

    app = FastAPI(title="simcloud job service", version="0.1.0")
    app.state.config = config

    def handle(params: dict[str, str], client_address: str) -> Any:
        scoped = request_logger(logger, new_request_id(), client=client_address)
        request_store = Store(config.paths.db)
        try:
            service = build_service(config, request_store, scoped)
            return dispatch_request(
                params,
                service,
                client_address=client_address,
                is_admin=client_address in config.server.admin_addresses,
            )
        finally:
            request_store.close()

    @app.api_route("/", methods=["GET", "POST"])
    async def endpoint(request: Request) -> Response:
        if not origin_allowed(request.headers, config.server.allowed_origins):
            log_with_fields(
                logger,
                logging.WARNING,
                "origin_rejected",
                origin=request.headers.get("origin") or request.headers.get("referer"),
            )
            raise HTTPException(status_code=403, detail="origin not allowed")

        params = dict(request.query_params)
        if request.method == "POST":
            form = await request.form()
            params.update({key: value for key, value in form.items() if isinstance(value, str)})

        callback = params.get("callback") or config.server.default_callback
        if not is_safe_callback(callback):
            callback = config.server.default_callback

        client_address = request.client.host if request.client else ""
        body = await run_in_threadpool(handle, params, client_address)
        return Response(content=wrap_callback(body, callback), media_type=JAVASCRIPT_MEDIA_TYPE)

    return app

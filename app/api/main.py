from contextlib import asynccontextmanager
import os
import time
from typing import Optional
from uuid import uuid4

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from opentelemetry.trace import SpanKind, Status, StatusCode
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException

from common.clamav_client import ClamdClient
from common.clamd_parsers import ScanOutcome, parse_stats, parse_version_commands
from common.clamd_protocol import RESP_RELOAD
from common.config import APP_NAME, AppConfig, get_config, split_server_addr
from common.errors import ClamAVError, ClamdParseError, ClamdVirusFound, classify_exception
from common.logging_config import (
    get_logger,
    reset_request_id,
    set_request_id,
    setup_logging,
)
from common.telemetry import get_tracer, setup_telemetry, telemetry_is_active

REQUEST_ID_HEADER = "X-Request-ID"

logger = get_logger("api")

# Globals set during app startup
settings: Optional[AppConfig] = None
clamd_client: Optional[ClamdClient] = None


def build_clamd_client(cfg: AppConfig) -> ClamdClient:
    return ClamdClient(
        cfg.clamav_addr,
        cfg.clamav_network,
        timeout=cfg.clamav_timeout,
        keepalive=cfg.clamav_keepalive,
        command_timeout=cfg.clamav_command_timeout or None,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global settings, clamd_client

    settings = get_config()
    setup_logging(APP_NAME, settings.log_level, settings.logger_format)
    setup_telemetry(service_name=APP_NAME, logger_obj=logger)
    clamd_client = build_clamd_client(settings)
    logger.info(
        "Starting server %s on address %s (clamd %s) ...",
        APP_NAME,
        settings.server_addr,
        clamd_client,
    )

    yield  # ---- App runs ----

    logger.info("Server %s shutting down...", APP_NAME)


app = FastAPI(title="ClamAV REST API", lifespan=lifespan)


def _client() -> ClamdClient:
    if not clamd_client:
        raise HTTPException(status_code=503, detail="clamd client not initialized")
    return clamd_client


def _duration(seconds: float) -> float:
    unit = (settings or AppConfig()).duration_unit
    if unit == "s":
        return round(seconds, 6)
    return round(seconds * 1000, 3)


def _error_response(exc: BaseException) -> JSONResponse:
    info = classify_exception(exc)
    if info.log_traceback:
        logger.error("unhandled error (%s)", info.code, exc_info=exc)
    return JSONResponse(
        status_code=info.status_code,
        content={"status": "error", "msg": info.message},
    )


def _bad_request(msg: str) -> JSONResponse:
    return JSONResponse(
        status_code=400, content={"status": "error", "msg": f"bad request: {msg}"}
    )


@app.middleware("http")
async def otel_request_spans(request: Request, call_next):
    if not telemetry_is_active() or request.url.path == "/healthz":
        return await call_next(request)

    tracer = get_tracer(APP_NAME)
    span_name = f"{request.method} {request.url.path}"

    with tracer.start_as_current_span(span_name, kind=SpanKind.SERVER) as span:
        span.set_attribute("http.method", request.method)
        span.set_attribute("http.target", request.url.path)
        span.set_attribute("http.url", str(request.url))

        try:
            response = await call_next(request)
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise

        route = request.scope.get("route")
        route_path = getattr(route, "path", None)
        if route_path:
            span.update_name(f"{request.method} {route_path}")
            span.set_attribute("http.route", route_path)

        span.set_attribute("http.status_code", response.status_code)
        if response.status_code >= 500:
            span.set_status(Status(StatusCode.ERROR))
        return response


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    request.state.request_id = request_id
    token = set_request_id(request_id)
    started = time.perf_counter()
    status = 500
    size = 0
    try:
        response = await call_next(request)
        status = response.status_code
        size = int(response.headers.get("content-length") or 0)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    finally:
        client = request.client
        logger.info(
            "request completed",
            extra={
                "method": request.method,
                "url": str(request.url),
                "status": status,
                "size": size,
                "duration": _duration(time.perf_counter() - started),
                "remote_client": f"{client.host}:{client.port}" if client else "",
                "user_agent": request.headers.get("user-agent", ""),
                "referer": request.headers.get("referer", ""),
            },
        )
        reset_request_id(token)


@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/rest/v1/ping")
async def ping():
    try:
        pong = await _client().ping()
    except ClamAVError as exc:
        logger.error("error while sending ping command: %s", exc)
        return _error_response(exc)
    logger.debug("ping command sent successfully")
    return {"ping": pong.decode("utf-8", "replace")}


@app.get("/rest/v1/version")
async def version():
    try:
        raw = await _client().version()
    except ClamAVError as exc:
        logger.error("error while sending version command: %s", exc)
        return _error_response(exc)
    logger.debug("version command sent successfully")
    return {"clamav_version": raw.decode("utf-8", "replace")}


@app.get("/rest/v1/stats")
async def stats():
    try:
        raw = await _client().stats()
    except ClamAVError as exc:
        logger.error("error while sending stats command: %s", exc)
        return _error_response(exc)
    logger.debug("stats command sent successfully")

    try:
        record = parse_stats(raw.decode("utf-8", "replace"))
    except ClamdParseError as exc:
        logger.error("error while parsing stats: %s", exc)
        return _error_response(exc)
    return record.as_dict()


@app.get("/rest/v1/versioncommands")
async def versioncommands():
    try:
        raw = await _client().version_commands()
    except ClamAVError as exc:
        logger.error("error while sending versioncommands command: %s", exc)
        return _error_response(exc)
    logger.debug("versioncommands command sent successfully")

    try:
        record = parse_version_commands(raw.decode("utf-8", "replace"))
    except ClamdParseError as exc:
        logger.error("error while parsing versioncommands: %s", exc)
        return _error_response(exc)
    return record.as_dict()


@app.post("/rest/v1/reload")
async def reload():
    try:
        await _client().reload()
    except ClamAVError as exc:
        logger.error("error while sending reload command: %s", exc)
        return _error_response(exc)
    logger.debug("reload command sent successfully")
    return {"status": RESP_RELOAD.decode("ascii")}


@app.post("/rest/v1/shutdown")
async def shutdown():
    try:
        await _client().shutdown()
    except ClamAVError as exc:
        logger.error("error while sending shutdown command: %s", exc)
        return _error_response(exc)
    logger.debug("shutdown command sent successfully")
    return {"status": "Shutting down"}


def _upload_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    fh = upload.file
    pos = fh.tell()
    fh.seek(0, os.SEEK_END)
    size = fh.tell() - pos
    fh.seek(pos)
    return size


@app.post("/rest/v1/scan")
async def scan(request: Request):
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("multipart/form-data"):
        logger.debug("scan request is not multipart/form-data (%s)", content_type)
        return _bad_request(
            "failed to parse file: request Content-Type isn't multipart/form-data"
        )

    try:
        form = await request.form()
    except (MultiPartException, StarletteHTTPException) as exc:
        detail = getattr(exc, "detail", None) or getattr(exc, "message", None) or str(exc)
        logger.debug("failed to parse multipart body: %s", detail)
        return _bad_request(f"failed to parse file: {detail}")

    upload = form.get("file")
    if not isinstance(upload, UploadFile):
        await form.close()
        logger.debug("multipart body has no 'file' part")
        return _bad_request("failed to parse file: no such file")

    try:
        size = _upload_size(upload)
        logger.debug(
            "multipart file read successfully",
            extra={"file_name": upload.filename, "file_size": size},
        )
        try:
            resp = await _client().instream(upload, size)
        except ClamdVirusFound as exc:
            outcome = ScanOutcome.from_error(exc)
            logger.debug("%s: %s", exc, outcome.signature)
        except ClamAVError as exc:
            logger.debug("error while scanning file: %s", exc)
            return _error_response(exc)
        else:
            outcome = ScanOutcome.from_response(resp)
    finally:
        await form.close()

    if outcome.verdict == "error":
        logger.error("unrecognized scan reply from clamav: %r", outcome.raw)
        return JSONResponse(status_code=500, content=outcome.as_dict())

    logger.debug("file scanned successfully")
    return outcome.as_dict()


def main() -> None:
    cfg = get_config()
    host, port = split_server_addr(cfg.server_addr)
    setup_logging(APP_NAME, cfg.log_level, cfg.logger_format)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_config=None,
        access_log=False,
        timeout_graceful_shutdown=int(cfg.server_shutdown_timeout) or None,
    )


if __name__ == "__main__":
    main()

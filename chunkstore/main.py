import asyncio
import time
import uuid
from collections.abc import Iterator
from contextlib import asynccontextmanager
from typing import BinaryIO

from fastapi import Depends, FastAPI, Header, HTTPException, Path, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from chunkstore.config import settings
from chunkstore.errors import ChunkStoreError
from chunkstore.events import audit_event, log_event, trace_id
from chunkstore.maintenance import cleanup_once
from chunkstore.metrics import http_request_duration_seconds, metrics_response
from chunkstore.models import UploadState
from chunkstore.registry import UploadRegistry, build_registry
from chunkstore.schemas import (
    AppendChunkResponse,
    ErrorResponse,
    FinalizeResponse,
    PrepareRequest,
    PrepareResponse,
    UploadStatusResponse,
)
from chunkstore.storage import build_storage
from chunkstore.tracing import setup_tracing

STREAM_BLOCK_BYTES = 64 * 1024


@asynccontextmanager
async def lifespan(app: FastAPI):
    registry = build_registry(
        build_storage(settings.storage_root),
        copy_buffer_bytes=settings.copy_buffer_bytes,
        delete_chunks_after_finalize=settings.delete_chunks_after_finalize,
        owns_storage=settings.purge_storage_on_shutdown,
    )
    app.state.registry = registry
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_cleanup_loop() -> None:
        while not stop_event.is_set():
            try:
                stats = await asyncio.to_thread(cleanup_once, registry)
                log_event({"event": "cleanup_completed", **stats})
            except Exception as exc:
                log_event({"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.cleanup_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.cleanup_enabled:
        tasks.append(asyncio.create_task(_periodic_cleanup_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task
    registry.close()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)


def get_registry(request: Request) -> UploadRegistry:
    return request.app.state.registry


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _upload_id(request: Request) -> str | None:
    return request.path_params.get("upload_id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        404: "not_found",
        409: "conflict",
        500: "internal_error",
        503: "storage_unavailable",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_body(request: Request, detail: str, error_code: str) -> dict:
    return {
        "detail": detail,
        "error_code": error_code,
        "request_id": _request_id(request),
        "upload_id": _upload_id(request),
        "trace_id": trace_id(),
    }


def _log_request_error(request: Request, status_code: int, error_class: str, detail: str) -> None:
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class,
            "detail": detail,
        }
    )


COMMON_ERROR_RESPONSES = {
    500: {"model": ErrorResponse, "description": "Internal server error"},
    503: {"model": ErrorResponse, "description": "Storage unavailable"},
}
NOT_FOUND_RESPONSE = {404: {"model": ErrorResponse, "description": "Upload not found"}}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(ChunkStoreError)
async def store_error_handler(request: Request, exc: ChunkStoreError):
    error_class = "client_error" if 400 <= exc.status_code < 500 else "storage_error"
    _log_request_error(request, exc.status_code, error_class, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=_error_body(request, exc.detail, exc.error_code))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    error_class = "client_error" if 400 <= exc.status_code < 500 else "server_error"
    _log_request_error(request, exc.status_code, error_class, str(exc.detail))
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, str(exc.detail), _error_code_for_status(exc.status_code)),
        headers=exc.headers or {},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_request_error(request, 500, "unhandled_exception", str(exc))
    return JSONResponse(status_code=500, content=_error_body(request, "internal server error", "internal_error"))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_root": settings.storage_root,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post(
    "/v1/files/prepare",
    response_model=PrepareResponse,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES},
)
def prepare_upload(
    request: Request,
    payload: PrepareRequest,
    registry: UploadRegistry = Depends(get_registry),
) -> PrepareResponse:
    upload_id = registry.register(payload.name, payload.content_type)
    audit_event(
        {
            "event": "audit",
            "action": "upload_register",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "name": payload.name,
            "content_type": payload.content_type,
        }
    )
    return PrepareResponse(id=upload_id, state=UploadState.open.value)


@app.put(
    "/v1/files/{upload_id}/chunks/{chunk_index}",
    response_model=AppendChunkResponse,
    status_code=201,
    responses={
        **COMMON_ERROR_RESPONSES,
        **NOT_FOUND_RESPONSE,
        400: {"model": ErrorResponse, "description": "Malformed chunk payload"},
        409: {"model": ErrorResponse, "description": "Upload already finalized"},
    },
)
async def append_chunk(
    upload_id: str,
    request: Request,
    chunk_index: int = Path(ge=0),
    content_length: int | None = Header(default=None),
    registry: UploadRegistry = Depends(get_registry),
) -> AppendChunkResponse:
    # The store only sees a chunk once the whole body has arrived.
    body = await request.body()
    if content_length is not None and content_length != len(body):
        raise HTTPException(status_code=400, detail="content-length mismatch")
    await asyncio.to_thread(registry.append_chunk, upload_id, chunk_index, body)
    return AppendChunkResponse(id=upload_id, chunk_index=chunk_index, state=UploadState.open.value)


@app.post(
    "/v1/files/{upload_id}/finalize",
    response_model=FinalizeResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        **NOT_FOUND_RESPONSE,
        409: {"model": ErrorResponse, "description": "Upload already finalized"},
    },
)
def finalize_upload(
    request: Request,
    upload_id: str,
    registry: UploadRegistry = Depends(get_registry),
) -> FinalizeResponse:
    registry.finalize(upload_id)
    info = registry.describe(upload_id)
    audit_event(
        {
            "event": "audit",
            "action": "upload_finalize",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "chunk_count": len(info.chunk_indexes),
            "size_bytes": info.size_bytes,
        }
    )
    return FinalizeResponse(id=upload_id, state=info.state.value, size_bytes=info.size_bytes or 0)


@app.get(
    "/v1/files/{upload_id}",
    response_model=UploadStatusResponse,
    responses={**COMMON_ERROR_RESPONSES, **NOT_FOUND_RESPONSE},
)
def upload_status(upload_id: str, registry: UploadRegistry = Depends(get_registry)) -> UploadStatusResponse:
    info = registry.describe(upload_id)
    return UploadStatusResponse(
        id=info.id,
        name=info.name,
        content_type=info.content_type,
        state=info.state.value,
        chunk_indexes=info.chunk_indexes,
        size_bytes=info.size_bytes,
        created_at=info.created_at,
        finalized_at=info.finalized_at,
    )


def _iter_stream(stream: BinaryIO) -> Iterator[bytes]:
    try:
        while True:
            block = stream.read(STREAM_BLOCK_BYTES)
            if not block:
                break
            yield block
    finally:
        stream.close()


@app.get(
    "/v1/files/{upload_id}/download",
    responses={
        **COMMON_ERROR_RESPONSES,
        **NOT_FOUND_RESPONSE,
        409: {"model": ErrorResponse, "description": "Upload not finalized"},
    },
)
def download(
    request: Request,
    upload_id: str,
    registry: UploadRegistry = Depends(get_registry),
) -> Response:
    info, stream = registry.read(upload_id)
    audit_event(
        {
            "event": "audit",
            "action": "download",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "size_bytes": info.size_bytes,
        }
    )
    filename = info.name.replace("\\", "\\\\").replace('"', '\\"')
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    if info.size_bytes is not None:
        headers["Content-Length"] = str(info.size_bytes)
    return StreamingResponse(_iter_stream(stream), media_type=info.content_type, headers=headers)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)

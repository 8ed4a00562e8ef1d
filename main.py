from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from contextlib import asynccontextmanager
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from typing import Literal, Optional
import asyncio
import contextlib
import logging
import os
import platform
import sys
import time

from config import Settings
from delivery import deliver
from downloader import (
    DownloadOptions,
    Downloader,
    cleanup_loop,
    sweep_stale_files,
    temp_dir_status,
    validate_url,
)
from errors import InvalidRequest, ServiceUnavailable, ToolUnavailable, VidrelayError

__version__ = "1.0.0"

# Logger
logger = logging.getLogger("vidrelay")


class ReadinessGate:
    """Closed until startup checks pass; closed again when shutdown begins."""

    def __init__(self) -> None:
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def require(self) -> None:
        if not self._open:
            raise ServiceUnavailable()


class DownloadRequest(BaseModel):
    url: Optional[str] = None
    delivery: Optional[Literal["stream", "base64"]] = None
    max_filesize_mb: Optional[int] = Field(None, gt=0)
    trim_seconds: Optional[float] = Field(None, gt=0)
    height: Optional[int] = Field(None, ge=144, le=4320)

    def options(self, settings: Settings) -> DownloadOptions:
        # Callers may lower the size ceiling but never raise it
        ceiling = settings.max_filesize_mb
        if self.max_filesize_mb:
            ceiling = min(self.max_filesize_mb, ceiling)
        return DownloadOptions(
            max_filesize_mb=ceiling,
            format_preset=settings.format_preset,
            trim_seconds=self.trim_seconds,
            height=self.height,
        )


@asynccontextmanager
async def _lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    downloader: Downloader = app.state.downloader
    gate: ReadinessGate = app.state.gate
    logging.getLogger("vidrelay").setLevel(settings.log_level)

    try:
        os.makedirs(settings.temp_dir, exist_ok=True)
    except OSError as e:
        raise RuntimeError(f"Cannot create TEMP_DIR '{settings.temp_dir}': {e}") from e
    logger.info("Startup: TEMP_DIR=%s", settings.temp_dir)
    logger.info("Startup: CORS origins=%s", settings.origins)

    # Fatal: refuse to serve without a working downloader
    await downloader.start()

    # Reconcile files orphaned by a previous crash before taking traffic
    await asyncio.to_thread(sweep_stale_files, settings.temp_dir, settings.stale_file_ttl_seconds, time.time())
    cleanup_task = asyncio.create_task(
        cleanup_loop(settings.temp_dir, settings.stale_file_ttl_seconds, settings.cleanup_interval_seconds)
    )
    gate.open()
    logger.info("Server ready")
    try:
        yield
    finally:
        gate.close()
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
        await downloader.shutdown()


def _error_body(exc: VidrelayError, settings: Settings) -> dict:
    body = {"status": "error", "error": exc.message, "kind": type(exc).__name__}
    if settings.expose_error_details and exc.details:
        body["details"] = exc.details
    return body


async def _handle_vidrelay_error(request: Request, exc: VidrelayError) -> JSONResponse:
    settings: Settings = request.app.state.settings
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s: %s (%s)", request.method, request.url.path, type(exc).__name__, exc.message, exc.details)
    return JSONResponse(_error_body(exc, settings), status_code=exc.status_code)


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
    return await _handle_vidrelay_error(request, InvalidRequest("Invalid request body", details=f"Invalid fields: {fields}"))


def require_ready(request: Request) -> None:
    request.app.state.gate.require()


router = APIRouter()


@router.get("/")
def root():
    return JSONResponse({
        "status": "ok",
        "message": "Video download server is running",
        "endpoints": {
            "health": "/health",
            "download": "/download",
        },
    })


@router.head("/")
def root_head():
    return Response(status_code=200)


@router.get("/health")
async def health(request: Request):
    settings: Settings = request.app.state.settings
    downloader: Downloader = request.app.state.downloader
    gate: ReadinessGate = request.app.state.gate

    temp_dir = temp_dir_status(settings.temp_dir)
    body = {
        "status": "ok",
        "ready": gate.is_open,
        "version": __version__,
        "environment": {
            "platform": sys.platform,
            "arch": platform.machine(),
            "python": platform.python_version(),
        },
        "ytdlp": {
            "installed": False,
            "path": " ".join(downloader.command) if downloader.command else None,
            "version": None,
        },
        "ffmpeg": {
            "available": downloader.ffmpeg_exe is not None,
            "path": downloader.ffmpeg_exe,
        },
        "tempDir": temp_dir,
        "jobs": {
            "active": downloader.active_jobs,
            "limit": settings.max_concurrent_downloads,
        },
    }
    try:
        body["ytdlp"]["version"] = await downloader.checked_version()
        body["ytdlp"]["installed"] = True
    except ToolUnavailable as e:
        body.update({"status": "error", "ready": False, "error": e.message})
        return JSONResponse(body, status_code=500)
    if not temp_dir["writable"]:
        body.update({"status": "error", "ready": False, "error": "Temp directory is not writable"})
        return JSONResponse(body, status_code=500)
    return JSONResponse(body)


@router.head("/health")
def health_head(request: Request):
    return Response(status_code=200 if request.app.state.gate.is_open else 503)


@router.post("/download", dependencies=[Depends(require_ready)])
async def download(request: Request, body: Optional[DownloadRequest] = None):
    settings: Settings = request.app.state.settings
    downloader: Downloader = request.app.state.downloader

    url = validate_url(body.url if body else None)
    options = body.options(settings)
    mode = body.delivery or settings.delivery_mode
    logger.info("Received download request for URL: %s (delivery=%s)", url, mode)

    try:
        artifact = await downloader.fetch(url, options)
        return await deliver(artifact, mode)
    except VidrelayError:
        raise
    except Exception as e:
        logger.exception("Server error for url=%s", url)
        raise VidrelayError(details=str(e)) from e


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="vidrelay", version=__version__, lifespan=_lifespan)
    app.state.settings = settings
    app.state.downloader = Downloader(settings)
    app.state.gate = ReadinessGate()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials="*" not in settings.origins,
        allow_methods=["GET", "HEAD", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept"],
    )
    app.add_exception_handler(VidrelayError, _handle_vidrelay_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings: Settings = app.state.settings
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Opt-in reload by setting environment variable RELOAD=1
    reload_enabled = os.getenv("RELOAD", "0") in ("1", "true", "TRUE", "True")

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=reload_enabled,
        log_level=settings.log_level.lower(),
        # in-flight downloads are cancelled (child killed, file deleted) after this
        timeout_graceful_shutdown=settings.shutdown_grace_seconds,
    )

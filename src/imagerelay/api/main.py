"""Image Relay — FastAPI Application.

This module defines the application factory, every REST route, and the
``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- **Image generation** is delegated to Replicate through
  :class:`~imagerelay.core.orchestrator.PredictionOrchestrator`.
- **Uploads** are short-lived reference images served from ``/uploads``.
- **Thumbnails** are durable local copies of generated images served from
  ``/ThumbnailImages`` and described by ``thumbnails.json``.
- **Usage** of billable endpoints is written to a SQLite log.
- **Background sweeps** (upload expiry, thumbnail revalidation) run as
  asyncio tasks owned by the application lifespan.

Services are built in the lifespan and stored on ``app.state``; route
handlers reach them through ``request.app.state``.

Endpoints
---------
========  ==============================  ====================================
Method    Path                            Purpose
========  ==============================  ====================================
GET       ``/health``                     Liveness and configured models
GET       ``/api/models``                 Model families
POST      ``/api/generate-image``         Synchronous generation
POST      ``/api/generate-illustration``  Start an illustration job
GET       ``/api/prediction/{id}``        Job status
POST      ``/api/replicate-webhook``      Remote status callback
POST      ``/api/upload``                 Multipart image upload
DELETE    ``/api/delete-file``            Delete an upload
GET       ``/api/thumbnails``             List archived thumbnails
POST      ``/api/thumbnails``             Archive a thumbnail
DELETE    ``/api/thumbnails/{url}``       Delete a thumbnail by URL
GET       ``/api/logs``                   Caller's usage log rows
========  ==============================  ====================================

Usage
-----
CLI (installed entry point)::

    imagerelay

Direct invocation::

    python -m imagerelay.api.main
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import APIRouter, Body, Depends, FastAPI, File, Header, HTTPException, Request
from fastapi import UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from imagerelay import __version__
from imagerelay.api.models import (
    DeleteFileRequest,
    GenerationRequest,
    IllustrationRequest,
    IllustrationStarted,
    UploadResponse,
)
from imagerelay.core.archiver import ThumbnailArchiver
from imagerelay.core.config import RelayConfig, config
from imagerelay.core.errors import (
    ArchiveError,
    GenerationError,
    InputValidationError,
    ReplicateError,
)
from imagerelay.core.model_families import ReferenceResolver, family_registry
from imagerelay.core.orchestrator import PredictionOrchestrator
from imagerelay.core.publisher import ImagePublisher
from imagerelay.core.records import UserIdentity
from imagerelay.core.replicate_client import ReplicateClient
from imagerelay.core.result_store import ResultStore
from imagerelay.core.uploads import UploadStore
from imagerelay.core.usage_log import UsageLog

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Background sweeps.
# ---------------------------------------------------------------------------


async def run_periodically(
    name: str,
    interval: float,
    job: Callable[[], Awaitable[Any]],
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> None:
    """Run *job* now and then every *interval* seconds until cancelled.

    A failing run is logged and the sweep continues with the next one.
    """
    while True:
        try:
            result = await job()
            logger.info(f"{name} finished: {result}")
        except Exception as e:
            logger.error(f"{name} failed: {e}")
        await sleep(interval)


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    app_config: RelayConfig = config,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    background_sweeps: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        app_config: Configuration to use; defaults to the global instance.
        transport: Optional httpx transport for all outbound requests (tests
            pass an ``httpx.MockTransport``).
        sleep: Awaitable sleep used by polling and retry loops.
        background_sweeps: Start the upload-expiry and thumbnail
            revalidation tasks.

    Returns:
        The configured application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build services on startup, stop sweeps and close the client on shutdown."""
        # --- Startup -------------------------------------------------------
        client = httpx.AsyncClient(transport=transport)
        uploads = UploadStore(
            app_config.uploads_dir, app_config.public_base_url, app_config.upload_max_bytes
        )
        publisher = ImagePublisher(client, app_config)
        usage_log = UsageLog(app_config.usage_db_path)
        results = ResultStore(retention_seconds=app_config.result_retention_seconds)

        app.state.config = app_config
        app.state.http_client = client
        app.state.uploads = uploads
        app.state.usage_log = usage_log
        app.state.results = results
        app.state.orchestrator = PredictionOrchestrator(
            ReplicateClient(client, app_config),
            ReferenceResolver(uploads, publisher),
            results,
            usage_log,
            app_config,
            sleep=sleep,
        )
        app.state.archiver = ThumbnailArchiver(client, app_config, usage_log, sleep=sleep)

        if not app_config.replicate_api_token:
            logger.warning("IMAGERELAY_REPLICATE_API_TOKEN is not set; generation will fail.")
        logger.info(f"Upload directory: {app_config.uploads_dir}")
        logger.info(f"Thumbnail directory: {app_config.thumbnails_dir}")

        tasks: list[asyncio.Task] = []
        if background_sweeps:
            tasks.append(
                asyncio.create_task(
                    run_periodically(
                        "Thumbnail revalidation",
                        app_config.thumbnail_revalidate_interval_seconds,
                        app.state.archiver.revalidate_all,
                    )
                )
            )
            tasks.append(
                asyncio.create_task(
                    run_periodically(
                        "Upload cleanup",
                        app_config.upload_cleanup_interval_seconds,
                        lambda: asyncio.to_thread(
                            uploads.cleanup_expired, app_config.upload_max_age_seconds
                        ),
                    )
                )
            )

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await client.aclose()
        logger.info("Image relay shut down.")

    app = FastAPI(
        title="Image Relay",
        description="Replicate image generation proxy with upload and thumbnail storage.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "x-user-id", "x-user-email", "x-user-name"],
    )

    app.add_exception_handler(InputValidationError, _input_error_handler)
    app.add_exception_handler(GenerationError, _remote_error_handler)
    app.add_exception_handler(ReplicateError, _remote_error_handler)
    app.add_exception_handler(ArchiveError, _archive_error_handler)

    app.include_router(router)

    app.mount("/uploads", StaticFiles(directory=str(app_config.uploads_dir)), name="uploads")
    app.mount(
        "/ThumbnailImages",
        StaticFiles(directory=str(app_config.thumbnails_dir)),
        name="thumbnails",
    )
    return app


# ---------------------------------------------------------------------------
# Error translation.
# ---------------------------------------------------------------------------


async def _input_error_handler(request: Request, exc: InputValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


async def _remote_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=500, content={"error": "Internal server error", "details": str(exc)}
    )


async def _archive_error_handler(request: Request, exc: ArchiveError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=500, content={"error": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies.
# ---------------------------------------------------------------------------


def get_user(
    x_user_id: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
) -> UserIdentity:
    """Read the caller from ``x-user-*`` headers, defaulting to anonymous."""
    user = UserIdentity()
    return UserIdentity(
        id=x_user_id or user.id,
        name=x_user_name or user.name,
        email=x_user_email or user.email,
    )


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


@router.get("/health")
async def health(request: Request) -> dict:
    """Report liveness, version and the configured model families."""
    return {
        "status": "ok",
        "version": __version__,
        "models": family_registry.list_available(),
        "replicateConfigured": bool(request.app.state.config.replicate_api_token),
    }


@router.get("/api/models")
async def list_models() -> list[dict]:
    return family_registry.list_info()


@router.post("/api/generate-image")
async def generate_image(
    body: GenerationRequest, request: Request, user: UserIdentity = Depends(get_user)
) -> dict:
    """Generate images synchronously.

    Returns:
        ``imageUrl``, ``imageUrls``, ``predictionId`` and ``metadata``.
    """
    result = await request.app.state.orchestrator.generate(body, user)
    return result.to_json()


@router.post("/api/generate-illustration")
@router.post("/api/generate-skoda-illustration", include_in_schema=False)
async def generate_illustration(
    body: IllustrationRequest, request: Request, user: UserIdentity = Depends(get_user)
) -> dict:
    """Start an asynchronous illustration job and return its id immediately."""
    record = await request.app.state.orchestrator.submit_async(body, user)
    return IllustrationStarted(prediction_id=record.id).model_dump(by_alias=True)


@router.get("/api/prediction/{prediction_id}")
async def get_prediction(prediction_id: str, request: Request) -> dict:
    """Return the status of an asynchronous job.

    Raises:
        HTTPException: 404 if the job is unknown or has been evicted.
    """
    record = await request.app.state.orchestrator.refresh(prediction_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Prediction not found")
    return {
        "predictionId": prediction_id,
        **record.model_dump(by_alias=True, mode="json", exclude={"id"}),
    }


@router.post("/api/replicate-webhook")
async def replicate_webhook(request: Request, payload: dict[str, Any] = Body(...)) -> dict:
    """Apply a Replicate status callback. Unknown predictions are acknowledged."""
    record = await request.app.state.orchestrator.apply_webhook(payload)
    return {"received": True, "known": record is not None}


@router.post("/api/upload")
async def upload_image(request: Request, image: UploadFile | None = File(default=None)) -> dict:
    """Store an uploaded reference image.

    Raises:
        UploadRejected: Missing file, unsupported type or too large (400).
    """
    if image is None:
        raise InputValidationError("No file uploaded")

    uploads: UploadStore = request.app.state.uploads
    # One byte over the limit is enough to reject the file.
    content = await image.read(uploads.max_bytes + 1)
    filename = await asyncio.to_thread(
        uploads.save, content, image.filename, image.content_type
    )
    return UploadResponse(
        image_path=uploads.public_url(filename),
        local_file_path=filename,
        filename=filename,
    ).model_dump(by_alias=True)


@router.delete("/api/delete-file")
async def delete_file(body: DeleteFileRequest, request: Request) -> dict:
    """Delete an uploaded file.

    Raises:
        HTTPException: 404 if the file does not exist.
    """
    if not body.filename:
        raise InputValidationError("Filename is required")
    if not request.app.state.uploads.delete(body.filename):
        raise HTTPException(status_code=404, detail="File not found")
    return {"message": "File deleted successfully"}


@router.get("/api/thumbnails")
async def list_thumbnails(request: Request) -> list[dict]:
    return await asyncio.to_thread(request.app.state.archiver.list_records)


@router.post("/api/thumbnails")
async def store_thumbnail(
    request: Request,
    payload: dict[str, Any] = Body(...),
    user: UserIdentity = Depends(get_user),
) -> dict:
    """Archive a generated image locally and record it.

    Returns:
        The stored thumbnail record; ``url`` is the local copy and
        ``originalUrl`` the submitted URL.
    """
    record = await request.app.state.archiver.store(payload, user)
    return record.to_json()


@router.delete("/api/thumbnails/{url:path}")
async def delete_thumbnail(url: str, request: Request) -> dict:
    """Delete a thumbnail record by its (URL-encoded) local URL.

    Raises:
        HTTPException: 404 if no record has this URL.
    """
    if not await request.app.state.archiver.delete(url):
        raise HTTPException(status_code=404, detail="Thumbnail not found")
    return {"message": "Thumbnail deleted successfully"}


@router.get("/api/logs")
async def get_logs(request: Request, user: UserIdentity = Depends(get_user)) -> list[dict]:
    return await asyncio.to_thread(request.app.state.usage_log.get_user_logs, user.id)


# ---------------------------------------------------------------------------
# FastAPI application instance.
# ---------------------------------------------------------------------------
app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~imagerelay.core.config.config` (which
    loads from ``IMAGERELAY_SERVER_HOST`` and ``IMAGERELAY_SERVER_PORT``
    environment variables). Defaults to ``0.0.0.0:5000``.

    This function is registered as the ``imagerelay`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "imagerelay.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()

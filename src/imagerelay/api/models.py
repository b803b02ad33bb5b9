"""Pydantic request and response models for the Image Relay API.

Generation request bodies live in :mod:`imagerelay.core.requests` because
the orchestrator and the model families consume them directly; they are
re-exported here next to the models used only by the HTTP layer.

Models
------
GenerationRequest
    Payload for ``POST /api/generate-image``.
IllustrationRequest
    Payload for ``POST /api/generate-illustration``.
DeleteFileRequest
    Payload for ``DELETE /api/delete-file``.
UploadResponse
    Response of ``POST /api/upload``.
IllustrationStarted
    Response of ``POST /api/generate-illustration``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from imagerelay.core.requests import GenerationRequest, GenerationSettings, IllustrationRequest


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeleteFileRequest(BaseModel):
    """Request body for ``DELETE /api/delete-file``.

    ``filename`` is optional at the schema level so a missing value is
    reported as a 400 error.
    """

    filename: str | None = None


class UploadResponse(_CamelModel):
    """Response of a successful upload.

    Attributes:
        image_path: Public URL of the stored file.
        local_file_path: Stored filename (kept for frontend compatibility).
        filename: Stored filename.
        message: Human-readable status.
    """

    image_path: str
    local_file_path: str
    filename: str
    message: str = "File uploaded successfully"


class IllustrationStarted(_CamelModel):
    prediction_id: str
    status: str = "processing"
    message: str = "Image generation started"


__all__ = [
    "DeleteFileRequest",
    "GenerationRequest",
    "GenerationSettings",
    "IllustrationRequest",
    "IllustrationStarted",
    "UploadResponse",
]

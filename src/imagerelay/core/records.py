"""Pydantic data models shared across the relay.

Models
------
UserIdentity
    Caller attributes forwarded by the frontend in ``x-user-*`` headers.
JobRecord
    Last-known state of one asynchronous generation job.
ThumbnailRecord
    Metadata for one archived output image.
GenerationResult
    Response of a synchronous generation, with its ``GenerationMetadata``.

Records are serialised with camelCase aliases because that is the shape the
frontend reads and the shape stored in ``thumbnails.json``.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class UserIdentity(BaseModel):
    """Originating user of a request.

    Attributes:
        id: User identifier, ``"anonymous"`` when not supplied.
        name: Display name, ``"Anonymous User"`` when not supplied.
        email: E-mail address, ``"anonymous"`` when not supplied.
    """

    id: str = "anonymous"
    name: str = "Anonymous User"
    email: str = "anonymous"


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobRecord(BaseModel):
    """Tracks the lifecycle of an asynchronous prediction."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    status: JobStatus = JobStatus.PROCESSING
    image_url: str | None = None
    image_urls: list[str] = Field(default_factory=list)
    error: str | None = None
    created_at: float = Field(default_factory=time.time)
    completed_at: float | None = None
    user: UserIdentity | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


class ThumbnailRecord(BaseModel):
    """Metadata of one archived thumbnail.

    ``url`` always refers to a local durable copy once the record is stored;
    ``original_url`` keeps the remote delivery URL so the file can be
    re-downloaded. Extra keys sent by the frontend are preserved.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    url: str
    prompt: str
    original_url: str | None = None
    local_path: str | None = None
    settings: dict[str, Any] | None = None
    timestamp: str | None = None
    user_id: str | None = None
    user_name: str | None = None
    user_email: str | None = None

    def to_json(self) -> dict[str, Any]:
        """Serialise with camelCase keys for the metadata file and API responses."""
        return self.model_dump(by_alias=True, mode="json")


class GenerationMetadata(BaseModel):
    """Echo of the normalised generation parameters."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    engine: str
    aspect_ratio: str | None = None
    prompt: str
    width: int
    height: int
    generation_time: str
    settings: dict[str, Any] = Field(default_factory=dict)


class GenerationResult(BaseModel):
    """Response of a synchronous generation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    image_url: str
    image_urls: list[str]
    prediction_id: str
    metadata: GenerationMetadata

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

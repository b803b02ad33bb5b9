"""Shared pytest fixtures for Image Relay tests."""

from __future__ import annotations

import io
import json
import shutil
import tempfile
from collections.abc import Generator
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from imagerelay.api.main import create_app
from imagerelay.core.config import RelayConfig

DELIVERY_URL = "https://replicate.delivery/pbxt/abc/out-0.png"


class FakeRemote:
    """``httpx.MockTransport`` handler standing in for Replicate and image CDNs.

    Predictions are numbered ``pred-1``, ``pred-2``, ...; every status fetch
    answers with ``prediction_state``. Any other GET is served ``image_bytes``
    unless its path is listed in ``missing``.
    """

    def __init__(self, image_bytes: bytes) -> None:
        self.image_bytes = image_bytes
        self.prediction_state: dict = {"status": "succeeded", "output": [DELIVERY_URL]}
        self.create_status = 201
        self.missing: set[str] = set()
        self.created: list[dict] = []
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "api.replicate.test":
            return self._replicate(request)
        if request.method == "GET" and request.url.path not in self.missing:
            return httpx.Response(200, content=self.image_bytes)
        return httpx.Response(404)

    def _replicate(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            if self.create_status >= 400:
                return httpx.Response(self.create_status, json={"detail": "Invalid token"})
            body = json.loads(request.content)
            self.created.append(body)
            prediction_id = f"pred-{len(self.created)}"
            return httpx.Response(201, json={"id": prediction_id, "status": "starting"})
        prediction_id = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(200, json={"id": prediction_id, **self.prediction_state})


class SleepRecorder:
    """Awaitable stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> RelayConfig:
    """Create a test configuration with every storage path under *temp_dir*.

    Image hosts are disabled (no ImgBB key, no secondary host) so tests only
    see the hosts they configure explicitly.
    """
    return RelayConfig(
        _env_file=None,
        data_dir=temp_dir / "data",
        replicate_api_token="r8_test_token",
        replicate_api_base="https://api.replicate.test/v1",
        imgbb_api_key="",
        secondary_host_url="",
        public_base_url="http://localhost:5000",
        webhook_base_url=None,
        poll_interval_seconds=1.0,
        max_poll_attempts=300,
        download_backoff_seconds=2.0,
    )


@pytest.fixture
def no_sleep() -> SleepRecorder:
    """Sleep replacement that returns immediately."""
    return SleepRecorder()


@pytest.fixture
def png_bytes() -> bytes:
    """A small but real PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (16, 12), (200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def uploaded_png(test_config: RelayConfig, png_bytes: bytes) -> Path:
    """A PNG already present in the uploads directory."""
    path = test_config.uploads_dir / "1700000000000-123456789.png"
    path.write_bytes(png_bytes)
    return path


@pytest.fixture
def fake_remote(png_bytes: bytes) -> FakeRemote:
    return FakeRemote(png_bytes)


@pytest.fixture
def test_client(
    test_config: RelayConfig, fake_remote: FakeRemote, no_sleep: SleepRecorder
) -> Generator[TestClient, None, None]:
    """TestClient running the full lifespan against :class:`FakeRemote`.

    Background sweeps are disabled and every sleep returns immediately.
    """
    app = create_app(
        test_config,
        transport=httpx.MockTransport(fake_remote),
        sleep=no_sleep,
        background_sweeps=False,
    )
    with TestClient(app) as client:
        yield client

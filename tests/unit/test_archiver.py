"""Tests for imagerelay.core.archiver — durable thumbnail archiving."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from imagerelay.core.archiver import ThumbnailArchiver, verify_image_file
from imagerelay.core.errors import ArchiveError, InputValidationError
from imagerelay.core.records import ThumbnailRecord, UserIdentity
from imagerelay.core.thumbnail_store import save_thumbnail_records
from imagerelay.core.usage_log import UsageLog

REMOTE_URL = "https://cdn.example.test/outputs/out-0.png"
DELIVERY_URL = "https://replicate.delivery/pbxt/abc/out-0.png"
LOCAL_PREFIX = "http://localhost:5000/ThumbnailImages/"


@pytest.fixture
def usage_log(test_config) -> UsageLog:
    return UsageLog(test_config.usage_db_path)


@pytest.fixture
def user() -> UserIdentity:
    return UserIdentity(id="u-7", name="Grace", email="grace@example.com")


@pytest.fixture
def run(test_config, usage_log, no_sleep):
    """Run ``action(archiver)`` against an archiver backed by a mock transport."""

    def runner(handler, action):
        async def scenario():
            transport = httpx.MockTransport(handler)
            async with httpx.AsyncClient(transport=transport) as client:
                archiver = ThumbnailArchiver(client, test_config, usage_log, sleep=no_sleep)
                return await action(archiver)

        return asyncio.run(scenario())

    return runner


def serve(png_bytes, requests=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return httpx.Response(200, content=png_bytes)

    return handler


def archived_files(test_config):
    return sorted(path.name for path in test_config.thumbnails_dir.iterdir())


class TestVerifyImageFile:
    def test_valid_png(self, uploaded_png):
        verify_image_file(uploaded_png)

    def test_missing_file(self, temp_dir):
        with pytest.raises(ArchiveError, match="does not exist"):
            verify_image_file(temp_dir / "nope.png")

    def test_empty_file(self, temp_dir):
        path = temp_dir / "empty.png"
        path.write_bytes(b"")
        with pytest.raises(ArchiveError, match="is empty"):
            verify_image_file(path)

    def test_not_an_image(self, temp_dir):
        path = temp_dir / "fake.png"
        path.write_bytes(b"<html>error</html>")
        with pytest.raises(ArchiveError, match="not an image"):
            verify_image_file(path)


class TestDownloadAndSave:
    def test_retries_after_failures(self, run, png_bytes, test_config, no_sleep):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, content=png_bytes)

        local_url = run(handler, lambda archiver: archiver.download_and_save(REMOTE_URL))

        assert local_url.startswith(LOCAL_PREFIX)
        filename = local_url.rsplit("/", 1)[-1]
        assert filename.startswith("thumbnail_") and filename.endswith(".png")
        assert (test_config.thumbnails_dir / filename).read_bytes() == png_bytes
        assert len(calls) == 3
        assert no_sleep.calls == [2.0, 2.0]

    def test_gives_up_after_all_attempts(self, run, test_config, no_sleep):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        with pytest.raises(ArchiveError, match="Failed to download image after 3 attempts"):
            run(handler, lambda archiver: archiver.download_and_save(REMOTE_URL))
        assert archived_files(test_config) == []
        assert no_sleep.calls == [2.0, 2.0]

    def test_alternate_delivery_host_on_transport_error(self, run, png_bytes, no_sleep):
        hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            if request.url.host == "replicate.delivery":
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, content=png_bytes)

        local_url = run(handler, lambda archiver: archiver.download_and_save(DELIVERY_URL))

        assert local_url.startswith(LOCAL_PREFIX)
        assert hosts == ["replicate.delivery", "replicate.com"]
        assert no_sleep.calls == []

    def test_non_image_content_is_removed(self, run, test_config):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>expired</html>")

        with pytest.raises(ArchiveError, match="not an image"):
            run(handler, lambda archiver: archiver.download_and_save(REMOTE_URL))
        assert archived_files(test_config) == []

    def test_already_archived_url_is_returned_unchanged(self, run, png_bytes, test_config):
        (test_config.thumbnails_dir / "thumbnail_1_abcdef.png").write_bytes(png_bytes)
        local_url = f"{LOCAL_PREFIX}thumbnail_1_abcdef.png"
        requests = []

        result = run(serve(png_bytes, requests), lambda a: a.download_and_save(local_url))

        assert result == local_url
        assert requests == []


class TestStore:
    def test_missing_fields_are_rejected(self, run, png_bytes, user):
        requests = []

        with pytest.raises(InputValidationError, match="Missing required fields"):
            run(serve(png_bytes, requests), lambda a: a.store({"url": REMOTE_URL}, user))
        assert requests == []

    def test_store_archives_and_records(self, run, png_bytes, test_config, usage_log, user):
        payload = {
            "url": REMOTE_URL,
            "prompt": "a red square",
            "settings": {"steps": 30},
            "engine": "standard",
        }

        record = run(serve(png_bytes), lambda archiver: archiver.store(payload, user))

        assert record.url.startswith(LOCAL_PREFIX)
        assert record.original_url == REMOTE_URL
        assert record.local_path == record.url.rsplit("/", 1)[-1]
        assert record.user_id == "u-7"
        assert record.timestamp

        stored = json.loads(test_config.thumbnails_file.read_text(encoding="utf-8"))
        assert stored[0]["url"] == record.url
        assert stored[0]["originalUrl"] == REMOTE_URL
        assert stored[0]["engine"] == "standard"
        assert stored[0]["userEmail"] == "grace@example.com"

        logs = usage_log.get_user_logs("u-7")
        assert [row["endpoint"] for row in logs] == ["/api/thumbnails"]

    def test_newest_record_first(self, run, png_bytes, user):
        async def action(archiver):
            await archiver.store({"url": REMOTE_URL, "prompt": "first"}, user)
            await archiver.store({"url": REMOTE_URL, "prompt": "second"}, user)
            return archiver.list_records()

        records = run(serve(png_bytes), action)

        assert [record["prompt"] for record in records] == ["second", "first"]
        assert records[0]["url"] != records[1]["url"]

    def test_unarchivable_image_is_not_recorded(self, run, test_config, user):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"not an image")

        with pytest.raises(ArchiveError, match="Failed to save image after multiple attempts"):
            run(handler, lambda archiver: archiver.store({"url": REMOTE_URL, "prompt": "p"}, user))
        assert not test_config.thumbnails_file.exists()

    def test_corrupt_metadata_is_not_overwritten(self, run, png_bytes, test_config, user):
        corrupt = '[{"url": "http://localhost:5000/ThumbnailImages/thumbnail_1_a.png"'
        test_config.thumbnails_file.write_text(corrupt, encoding="utf-8")

        with pytest.raises(ArchiveError, match="unreadable"):
            run(serve(png_bytes), lambda a: a.store({"url": REMOTE_URL, "prompt": "p"}, user))

        assert test_config.thumbnails_file.read_text(encoding="utf-8") == corrupt
        assert archived_files(test_config) == []


class TestDelete:
    def test_delete_removes_record_and_file(self, run, png_bytes, test_config, user):
        async def action(archiver):
            record = await archiver.store({"url": REMOTE_URL, "prompt": "p"}, user)
            first = await archiver.delete(record.url)
            second = await archiver.delete(record.url)
            return first, second, archiver.list_records()

        first, second, remaining = run(serve(png_bytes), action)

        assert (first, second) == (True, False)
        assert remaining == []
        assert archived_files(test_config) == []


class TestRevalidate:
    def test_repairs_and_drops(self, run, png_bytes, test_config):
        (test_config.thumbnails_dir / "thumbnail_1_keep00.png").write_bytes(png_bytes)
        records = [
            ThumbnailRecord(url=f"{LOCAL_PREFIX}thumbnail_1_keep00.png", prompt="valid"),
            ThumbnailRecord(
                url=f"{LOCAL_PREFIX}thumbnail_2_gone00.png",
                original_url="https://cdn.example.test/repairable.png",
                prompt="repairable",
            ),
            ThumbnailRecord(url=f"{LOCAL_PREFIX}thumbnail_3_lost00.png", prompt="lost"),
            ThumbnailRecord(url="https://cdn.example.test/remote.png", prompt="remote"),
            ThumbnailRecord(url=f"{LOCAL_PREFIX}thumbnail_1_keep00.png", prompt="duplicate"),
            ThumbnailRecord(url="https://cdn.example.test/broken.png", prompt="broken"),
        ]
        save_thumbnail_records(test_config.thumbnails_file, records)

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/broken.png":
                return httpx.Response(404)
            return httpx.Response(200, content=png_bytes)

        async def action(archiver):
            kept = await archiver.revalidate_all()
            return kept, archiver.list_records()

        kept, stored = run(handler, action)

        assert kept == 3
        assert [record["prompt"] for record in stored] == ["valid", "repairable", "remote"]
        assert stored[0]["url"] == f"{LOCAL_PREFIX}thumbnail_1_keep00.png"
        assert stored[1]["url"].startswith(LOCAL_PREFIX)
        assert stored[1]["url"] != f"{LOCAL_PREFIX}thumbnail_2_gone00.png"
        assert stored[1]["originalUrl"] == "https://cdn.example.test/repairable.png"
        assert stored[2]["url"].startswith(LOCAL_PREFIX)
        assert stored[2]["originalUrl"] == "https://cdn.example.test/remote.png"

    def test_empty_archive(self, run, png_bytes):
        assert run(serve(png_bytes), lambda archiver: archiver.revalidate_all()) == 0

    def test_corrupt_metadata_is_left_untouched(self, run, png_bytes, test_config):
        corrupt = '[{"url": "https://cdn.example.test/remote.png", "prompt": "remote"}'
        test_config.thumbnails_file.write_text(corrupt, encoding="utf-8")
        requests = []

        kept = run(serve(png_bytes, requests), lambda archiver: archiver.revalidate_all())

        assert kept == 0
        assert requests == []
        assert test_config.thumbnails_file.read_text(encoding="utf-8") == corrupt

    def test_store_during_sweep_is_kept(self, run, png_bytes, test_config, user):
        save_thumbnail_records(
            test_config.thumbnails_file,
            [ThumbnailRecord(url="https://cdn.example.test/slow.png", prompt="remote")],
        )
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/slow.png":
                started.set()
                await release.wait()
            return httpx.Response(200, content=png_bytes)

        async def action(archiver):
            sweep = asyncio.create_task(archiver.revalidate_all())
            await started.wait()
            payload = {"url": REMOTE_URL, "prompt": "new"}
            await asyncio.wait_for(archiver.store(payload, user), timeout=5)
            release.set()
            kept = await sweep
            return kept, archiver.list_records()

        kept, stored = run(handler, action)

        assert kept == 2
        assert [record["prompt"] for record in stored] == ["new", "remote"]
        assert all(record["url"].startswith(LOCAL_PREFIX) for record in stored)
        assert len(archived_files(test_config)) == 2

    def test_delete_during_sweep_stays_deleted(self, run, png_bytes, test_config):
        (test_config.thumbnails_dir / "thumbnail_1_keep00.png").write_bytes(png_bytes)
        save_thumbnail_records(
            test_config.thumbnails_file,
            [
                ThumbnailRecord(url="https://cdn.example.test/slow.png", prompt="remote"),
                ThumbnailRecord(url=f"{LOCAL_PREFIX}thumbnail_1_keep00.png", prompt="keep"),
            ],
        )
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/slow.png":
                started.set()
                await release.wait()
            return httpx.Response(200, content=png_bytes)

        async def action(archiver):
            sweep = asyncio.create_task(archiver.revalidate_all())
            await started.wait()
            deleted = await asyncio.wait_for(
                archiver.delete("https://cdn.example.test/slow.png"), timeout=5
            )
            release.set()
            kept = await sweep
            return deleted, kept, archiver.list_records()

        deleted, kept, stored = run(handler, action)

        assert deleted is True
        assert kept == 1
        assert [record["prompt"] for record in stored] == ["keep"]
        assert archived_files(test_config) == ["thumbnail_1_keep00.png"]

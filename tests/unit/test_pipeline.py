import asyncio
import json

import httpx
import pytest
from prometheus_client import REGISTRY

from brickai.core.storage import IStorage, LocalStorage, make_asset_key
from brickai.modules.imagery.models import ImageStatus
from tests.conftest import PNG_BYTES, RESULT_BYTES, RESULT_URL, sse_body

SUBJECT = "apple-sub-1"


class RecordingStorage(IStorage):
    """LocalStorage that remembers every key written."""

    def __init__(self, inner: LocalStorage):
        self.inner = inner
        self.writes = []

    async def put(self, data, key, content_type):
        self.writes.append(key)
        return await self.inner.put(data, key, content_type)

    def public_url(self, key):
        return self.inner.public_url(key)

    async def exists(self, key):
        return await self.inner.exists(key)


@pytest.fixture
def storage(container):
    recording = RecordingStorage(container.storage)
    container.pipeline.storage = recording
    return recording


async def uploaded_record(container):
    key = make_asset_key(SUBJECT, "image/png")
    await container.storage.put(PNG_BYTES, key, "image/png")
    record = await container.images.create(SUBJECT, key)
    return record, container.storage.public_url(key)


async def test_stream_with_result_link_completes(container, storage, upstream):
    upstream.stream_chunks = sse_body("Here is your LEGO build: ", f"![LEGO]({RESULT_URL})")
    record, original_url = await uploaded_record(container)

    outcome = await container.pipeline.run(record.id, SUBJECT, original_url)

    assert outcome.status == ImageStatus.COMPLETED
    saved = await container.images.get(record.id)
    assert saved.status == ImageStatus.COMPLETED.value
    assert saved.processed_s3_key == outcome.processed_key
    assert saved.processed_s3_key.startswith(f"processed/{SUBJECT}/")
    assert saved.original_s3_key == record.original_s3_key
    assert storage.writes == [saved.processed_s3_key]
    assert await storage.exists(saved.processed_s3_key)
    assert (container.storage.base_path / saved.processed_s3_key).read_bytes() == RESULT_BYTES


async def test_request_carries_original_url_and_directive(container, storage, upstream, settings):
    upstream.stream_chunks = sse_body(f"![LEGO]({RESULT_URL})")
    record, original_url = await uploaded_record(container)

    await container.pipeline.run(record.id, SUBJECT, original_url)

    body = upstream.transform_requests[0]
    assert body["stream"] is True
    assert body["model"] == settings.TRANSFORM_MODEL
    content = body["messages"][0]["content"]
    assert content[0] == {"type": "text", "text": settings.TRANSFORM_DIRECTIVE}
    assert content[1]["image_url"]["url"] == original_url

    saved = await container.images.get(record.id)
    assert saved.prompt == settings.TRANSFORM_DIRECTIVE


async def test_stream_without_link_fails(container, storage, upstream):
    upstream.stream_chunks = sse_body("Sorry, ", "I could not build that.")
    record, original_url = await uploaded_record(container)

    outcome = await container.pipeline.run(record.id, SUBJECT, original_url)

    assert outcome.status == ImageStatus.FAILED
    saved = await container.images.get(record.id)
    assert saved.status == ImageStatus.FAILED.value
    assert saved.processed_s3_key is None
    assert saved.error_message
    assert storage.writes == []


async def test_stream_error_mid_read_fails_with_reason(container, storage, upstream):
    upstream.stream_chunks = sse_body("partial output ", done=False) + [httpx.ReadError("connection reset")]
    record, original_url = await uploaded_record(container)

    outcome = await container.pipeline.run(record.id, SUBJECT, original_url)

    assert outcome.status == ImageStatus.FAILED
    saved = await container.images.get(record.id)
    assert saved.status == ImageStatus.FAILED.value
    assert "ReadError" in saved.error_message
    assert saved.processed_s3_key is None


async def test_malformed_frames_do_not_abort(container, storage, upstream):
    upstream.stream_chunks = [
        b"data: {broken\n\n",
        b"data: " + json.dumps({"choices": [{"delta": {"content": f"![x]({RESULT_URL})"}}]}).encode() + b"\n\n",
        b"data: [DONE]\n\n",
    ]
    record, original_url = await uploaded_record(container)

    outcome = await container.pipeline.run(record.id, SUBJECT, original_url)

    assert outcome.status == ImageStatus.COMPLETED


async def test_upstream_error_payload_fails(container, storage, upstream):
    upstream.stream_chunks = [b'data: {"error": {"message": "content policy"}}\n\n']
    record, original_url = await uploaded_record(container)

    outcome = await container.pipeline.run(record.id, SUBJECT, original_url)

    assert outcome.status == ImageStatus.FAILED
    assert "content policy" in (await container.images.get(record.id)).error_message


async def test_non_2xx_stream_response_fails(container, storage, upstream):
    upstream.stream_status = 429
    record, original_url = await uploaded_record(container)

    outcome = await container.pipeline.run(record.id, SUBJECT, original_url)

    assert outcome.status == ImageStatus.FAILED
    assert "429" in outcome.error


@pytest.mark.parametrize("status, content", [(404, b"missing"), (200, b"")])
async def test_failed_download_fails(container, storage, upstream, status, content):
    upstream.stream_chunks = sse_body(f"![LEGO]({RESULT_URL})")
    upstream.downloads[RESULT_URL] = (status, content, "image/png")
    record, original_url = await uploaded_record(container)

    outcome = await container.pipeline.run(record.id, SUBJECT, original_url)

    assert outcome.status == ImageStatus.FAILED
    saved = await container.images.get(record.id)
    assert saved.processed_s3_key is None
    assert storage.writes == []


async def test_store_failure_fails(container, storage, upstream):
    upstream.stream_chunks = sse_body(f"![LEGO]({RESULT_URL})")
    record, original_url = await uploaded_record(container)

    async def broken_put(data, key, content_type):
        raise OSError("disk full")

    storage.put = broken_put

    outcome = await container.pipeline.run(record.id, SUBJECT, original_url)

    assert outcome.status == ImageStatus.FAILED
    assert "disk full" in (await container.images.get(record.id)).error_message


async def test_pipeline_timeout_fails(settings_factory, container_factory, upstream):
    container = await container_factory(settings_factory(PIPELINE_TIMEOUT_SECONDS=0.2))

    async def stall():
        await asyncio.sleep(5)

    upstream.stream_chunks = sse_body("thinking...", done=False) + [stall]
    record, original_url = await uploaded_record(container)

    outcome = await container.pipeline.run(record.id, SUBJECT, original_url)

    assert outcome.status == ImageStatus.FAILED
    assert (await container.images.get(record.id)).error_message == "Processing timed out"


async def test_record_not_in_uploaded_is_left_alone(container, storage, upstream):
    record, original_url = await uploaded_record(container)
    await container.images.mark_failed(record.id, "cancelled")

    outcome = await container.pipeline.run(record.id, SUBJECT, original_url)

    assert outcome.status == ImageStatus.FAILED
    assert upstream.transform_requests == []
    assert (await container.images.get(record.id)).error_message == "cancelled"


async def test_failure_write_error_is_swallowed(container, storage, upstream, monkeypatch):
    upstream.stream_chunks = sse_body("no link")
    record, original_url = await uploaded_record(container)

    async def broken_mark_failed(image_id, reason):
        raise RuntimeError("database is gone")

    monkeypatch.setattr(container.images, "mark_failed", broken_mark_failed)

    outcome = await container.pipeline.run(record.id, SUBJECT, original_url)

    assert outcome.status == ImageStatus.FAILED
    # Accepted limitation: the row stays in PROCESSING
    assert (await container.images.get(record.id)).status == ImageStatus.PROCESSING.value


async def test_cancelled_run_is_recorded_as_failed(container, storage, upstream):
    async def stall():
        await asyncio.sleep(5)

    upstream.stream_chunks = sse_body("thinking...", done=False) + [stall]
    record, original_url = await uploaded_record(container)
    active_before = REGISTRY.get_sample_value("active_pipelines")

    task = asyncio.create_task(container.pipeline.run(record.id, SUBJECT, original_url))
    for _ in range(100):
        if upstream.transform_requests:
            break
        await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    saved = await container.images.get(record.id)
    assert saved.status == ImageStatus.FAILED.value
    assert saved.error_message == "Processing cancelled"
    assert REGISTRY.get_sample_value("active_pipelines") == active_before

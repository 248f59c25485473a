import httpx
import pytest

from chunked_upload.errors import DestinationError, UploadStateError
from chunked_upload.models.upload_models import PartDestination
from chunked_upload.services.batch_coordinator import (
    ParallelBatchCoordinator,
    batches,
    scaled_upload_progress,
)
from chunked_upload.services.chunk_planner import ChunkPlanner
from chunked_upload.services.destination_client import DestinationClient
from chunked_upload.services.part_uploader import PartUploader
from chunked_upload.services.upload_source import BytesSource

from conftest import API_URL, TOKEN, FakeDestination


def coordinator_for(destination, sleep_recorder):
    http = httpx.AsyncClient(transport=httpx.MockTransport(destination))
    client = DestinationClient(API_URL, TOKEN, http_client=http)
    uploader = PartUploader(http, sleep=sleep_recorder)
    return ParallelBatchCoordinator(client, uploader, sleep=sleep_recorder), client


def test_batches_preserve_order():
    assert batches([1, 2, 3, 4, 5, 6, 7], 3) == [[1, 2, 3], [4, 5, 6], [7]]
    assert batches([], 3) == []


def test_upload_share_stops_at_ninety_percent():
    assert scaled_upload_progress(0, 4) == 0.0
    assert scaled_upload_progress(2, 4) == 45.0
    assert scaled_upload_progress(4, 4) == 90.0
    assert scaled_upload_progress(0, 0) == 0.0


@pytest.mark.asyncio
async def test_uploads_only_pending_parts_and_acknowledges_each_batch(sleep_recorder):
    destination = FakeDestination()
    coordinator, _ = coordinator_for(destination, sleep_recorder)
    source = BytesSource("a.mp4", bytes(range(256)) * 24, "video/mp4")  # 6144 bytes
    planner = ChunkPlanner(source.size, 1024)
    results = {}

    await coordinator.run("sess-1", planner, source, [6, 2, 4, 5], results.__setitem__)

    assert [b["partNumbers"] for b in destination.bodies("/chunk-urls")] == [[2, 4, 5], [6]]
    acknowledged = [sorted(p["partNumber"] for p in b["parts"]) for b in destination.bodies("/mark-uploaded")]
    assert acknowledged == [[2, 4, 5], [6]]
    assert results == {n: f'"etag-{n}"' for n in (2, 4, 5, 6)}


@pytest.mark.asyncio
async def test_mismatched_upload_urls_fail(sleep_recorder):
    destination = FakeDestination()
    coordinator, client = coordinator_for(destination, sleep_recorder)

    async def wrong_parts(session_id, part_numbers):
        return [PartDestination(part_number=9, upload_url="https://storage.test/part/9")]

    client.chunk_urls = wrong_parts
    planner = ChunkPlanner(2048, 1024)

    with pytest.raises(DestinationError, match="expected"):
        await coordinator.run("sess-1", planner, BytesSource("a.mp4", b"x" * 2048), [1, 2], lambda n, t: None)
    assert destination.puts == []


@pytest.mark.asyncio
async def test_stops_between_batches_when_told(sleep_recorder):
    destination = FakeDestination()
    coordinator, _ = coordinator_for(destination, sleep_recorder)
    planner = ChunkPlanner(4096, 1024)
    uploaded = []

    with pytest.raises(UploadStateError):
        await coordinator.run(
            "sess-1",
            planner,
            BytesSource("a.mp4", b"x" * 4096),
            [1, 2, 3, 4],
            lambda n, t: uploaded.append(n),
            should_continue=lambda: not uploaded,
        )

    assert sorted(uploaded) == [1, 2, 3]
    assert len(destination.bodies("/chunk-urls")) == 1

# services/batch_coordinator.py
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from chunked_upload.errors import DestinationError, UploadStateError
from chunked_upload.models.upload_models import PartDestination, PartToken
from chunked_upload.services.chunk_planner import ChunkPlanner
from chunked_upload.services.destination_client import DestinationClient
from chunked_upload.services.part_uploader import PartUploader
from chunked_upload.services.retry import retry_with_backoff

logger = logging.getLogger(__name__)

MAX_PARALLEL_UPLOADS = 3
UPLOAD_PROGRESS_SHARE = 90.0  # remaining 10% covers finalize + processing


def scaled_upload_progress(uploaded_count: int, total_parts: int) -> float:
    if total_parts <= 0:
        return 0.0
    return uploaded_count * UPLOAD_PROGRESS_SHARE / total_parts


def batches(part_numbers: List[int], width: int) -> List[List[int]]:
    return [part_numbers[i:i + width] for i in range(0, len(part_numbers), width)]


class ParallelBatchCoordinator:
    """Uploads pending parts in batches of at most ``batch_width``.

    Each batch fetches fresh pre-signed URLs for exactly its parts, uploads
    them concurrently and acknowledges the resulting ETags before the next
    batch starts. Results are handed to ``on_part_uploaded`` from the calling
    task as they arrive; workers never touch session state.
    """

    def __init__(
        self,
        destination: DestinationClient,
        uploader: PartUploader,
        batch_width: int = MAX_PARALLEL_UPLOADS,
        control_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.destination = destination
        self.uploader = uploader
        self.batch_width = batch_width
        self.control_attempts = control_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep

    async def run(
        self,
        session_id: str,
        planner: ChunkPlanner,
        source,
        pending_parts: List[int],
        on_part_uploaded: Callable[[int, str], None],
        on_part_started: Optional[Callable[[int], None]] = None,
        should_continue: Callable[[], bool] = lambda: True,
    ):
        for batch in batches(sorted(pending_parts), self.batch_width):
            if not should_continue():
                raise UploadStateError("Upload stopped before all parts were sent")

            destinations = await self._fetch_destinations(session_id, batch)
            tokens = await self._upload_batch(
                session_id, planner, source, destinations, on_part_uploaded, on_part_started
            )
            await self._acknowledge(session_id, tokens)

    async def _fetch_destinations(self, session_id: str, batch: List[int]) -> List[PartDestination]:
        destinations = await self._with_retries(
            lambda: self.destination.chunk_urls(session_id, batch),
            f"Fetching upload URLs for parts {batch}",
        )
        returned = sorted(d.part_number for d in destinations)
        if returned != sorted(batch):
            raise DestinationError(f"Upload URLs returned for parts {returned}, expected {batch}")
        return destinations

    async def _acknowledge(self, session_id: str, tokens: List[PartToken]):
        if not tokens:
            return
        await self._with_retries(
            lambda: self.destination.mark_uploaded(session_id, tokens),
            f"Marking parts {[t.part_number for t in tokens]} uploaded",
        )

    async def _upload_batch(
        self,
        session_id: str,
        planner: ChunkPlanner,
        source,
        destinations: List[PartDestination],
        on_part_uploaded: Callable[[int, str], None],
        on_part_started: Optional[Callable[[int], None]],
    ) -> List[PartToken]:
        tasks = [
            asyncio.create_task(self._upload_part(planner, source, d, on_part_started))
            for d in destinations
        ]
        uploaded: List[PartToken] = []
        try:
            for next_done in asyncio.as_completed(tasks):
                part_number, token = await next_done
                on_part_uploaded(part_number, token)
                uploaded.append(PartToken(part_number=part_number, token=token))
        except Exception:
            await self._cancel_all(tasks)
            # Keep what did succeed acknowledged so a resume can skip it
            if uploaded:
                try:
                    await self.destination.mark_uploaded(session_id, uploaded)
                except DestinationError as e:
                    logger.warning(f"Could not acknowledge parts before failing: {e}")
            raise
        except asyncio.CancelledError:
            await self._cancel_all(tasks)
            raise
        return uploaded

    async def _upload_part(
        self,
        planner: ChunkPlanner,
        source,
        destination: PartDestination,
        on_part_started: Optional[Callable[[int], None]],
    ) -> Tuple[int, str]:
        part_number = destination.part_number
        if on_part_started:
            on_part_started(part_number)
        start, end = planner.byte_range(part_number)
        data = await source.read_range(start, end)
        token = await self.uploader.upload(destination.upload_url, data, part_number)
        return part_number, token

    async def _with_retries(self, operation, label: str):
        return await retry_with_backoff(
            operation,
            attempts=self.control_attempts,
            base_delay=self.retry_delay,
            sleep=self._sleep,
            retry_on=(DestinationError,),
            retry_if=lambda e: e.is_transient,
            label=label,
        )

    @staticmethod
    async def _cancel_all(tasks: List[asyncio.Task]):
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

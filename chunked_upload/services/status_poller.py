# services/status_poller.py
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from chunked_upload.errors import DestinationError, PollTimeoutError
from chunked_upload.models.upload_models import RemoteStatus, StatusResponse
from chunked_upload.services.destination_client import DestinationClient

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 3.0
POLL_TIMEOUT_SECONDS = 30 * 60

TERMINAL_REMOTE_STATUSES = {RemoteStatus.COMPLETED, RemoteStatus.FAILED, RemoteStatus.CANCELLED}


class StatusPoller:
    """Polls the destination until post-processing reaches a terminal state"""

    def __init__(
        self,
        destination: DestinationClient,
        interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = POLL_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.destination = destination
        self.interval = interval
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    async def poll(
        self,
        session_id: str,
        on_tick: Optional[Callable[[StatusResponse], None]] = None,
    ) -> StatusResponse:
        """Return the first terminal status; raise PollTimeoutError past the deadline.

        A failed status request only costs one tick.
        """
        deadline = self._clock() + self.timeout
        while True:
            await self._sleep(self.interval)
            if self._clock() >= deadline:
                raise PollTimeoutError(
                    f"Processing did not finish within {int(self.timeout // 60)} minutes"
                )

            try:
                status = await self.destination.status(session_id)
            except DestinationError as e:
                logger.warning(f"Status check for {session_id} failed, retrying next tick: {e}")
                continue

            if status.status in TERMINAL_REMOTE_STATUSES:
                return status
            if on_tick:
                on_tick(status)

# services/session_controller.py
import asyncio
import logging
import time
from fnmatch import fnmatch
from typing import Awaitable, Callable, Iterable, List, Optional

import httpx

from chunked_upload.config import UploadConfig
from chunked_upload.errors import (
    DestinationError,
    UploadError,
    UploadStateError,
    UploadValidationError,
)
from chunked_upload.models.upload_models import (
    InitiateRequest,
    ProgressView,
    RemoteStatus,
    StatusResponse,
    UploadEvent,
    UploadEventType,
    UploadOutcome,
    UploadSession,
    UploadStatus,
)
from chunked_upload.services.batch_coordinator import (
    ParallelBatchCoordinator,
    scaled_upload_progress,
)
from chunked_upload.services.chunk_planner import ChunkPlanner
from chunked_upload.services.destination_client import DestinationClient
from chunked_upload.services.part_uploader import PartUploader
from chunked_upload.services.progress_projector import (
    ProgressProjector,
    ThroughputWindow,
    format_bytes,
)
from chunked_upload.services.status_poller import StatusPoller

logger = logging.getLogger(__name__)

COMPLETING_PROGRESS = 92.0
PROCESSING_PROGRESS = 95.0
PROCESSING_PROGRESS_CAP = 99.0

UploadListener = Callable[[UploadEvent], None]


class UploadSessionController:
    """Drives one upload session from initiation to a terminal state.

    The controller is the only writer of its ``UploadSession``. Part workers
    and the status poller report back through callbacks that run on the
    controller's task, and every change is published to listeners as an
    ``UploadEvent`` with a strictly increasing ``sequence``.
    """

    def __init__(
        self,
        destination: DestinationClient,
        uploader: PartUploader,
        config: Optional[UploadConfig] = None,
        *,
        coordinator: Optional[ParallelBatchCoordinator] = None,
        poller: Optional[StatusPoller] = None,
        session: Optional[UploadSession] = None,
        listeners: Iterable[UploadListener] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or UploadConfig()
        self.destination = destination
        self.uploader = uploader
        self.coordinator = coordinator or ParallelBatchCoordinator(
            destination,
            uploader,
            batch_width=self.config.batch_width,
            control_attempts=self.config.max_part_attempts,
            retry_delay=self.config.retry_delay_seconds,
            sleep=sleep,
        )
        self.poller = poller or StatusPoller(
            destination,
            interval=self.config.poll_interval_seconds,
            timeout=self.config.poll_timeout_seconds,
            sleep=sleep,
            clock=clock,
        )
        self._session = session
        self._planner: Optional[ChunkPlanner] = None
        self._listeners: List[UploadListener] = list(listeners)
        self._sequence = 0
        self._run_task: Optional[asyncio.Task] = None
        self._cancel_requested = False
        self._clock = clock
        self._window = ThroughputWindow()
        self._projector = ProgressProjector()

    @classmethod
    def from_config(
        cls,
        config: UploadConfig,
        access_token: Optional[str] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        session: Optional[UploadSession] = None,
        listeners: Iterable[UploadListener] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> "UploadSessionController":
        destination = DestinationClient(
            config.api_base_url,
            access_token or config.access_token,
            http_client=http_client,
            timeout=config.request_timeout_seconds,
        )
        uploader = PartUploader(
            destination.http_client,
            max_attempts=config.max_part_attempts,
            retry_delay=config.retry_delay_seconds,
            sleep=sleep,
        )
        return cls(
            destination,
            uploader,
            config,
            session=session,
            listeners=listeners,
            sleep=sleep,
            clock=clock,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        if self.is_running:
            await self.cancel()
        await self.destination.aclose()

    # Public API

    @property
    def session(self) -> Optional[UploadSession]:
        """A snapshot of the session, suitable for persisting and resuming"""
        return self._session.model_copy(deep=True) if self._session else None

    @property
    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    def add_listener(self, listener: UploadListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: UploadListener):
        self._listeners.remove(listener)

    def progress(self) -> ProgressView:
        return self._projector.project(self._session, self._window.samples)

    def validate(self, source):
        """Reject files that must never reach the network"""
        if source.size <= 0:
            raise UploadValidationError(f"File {source.name} is empty")
        if source.size > self.config.max_file_size_bytes:
            raise UploadValidationError(
                f"File size exceeds maximum limit of {format_bytes(self.config.max_file_size_bytes)}"
            )
        accepted = self.config.accepted_mime_types
        if accepted and not any(fnmatch(source.mime_type, pattern) for pattern in accepted):
            raise UploadValidationError(
                f"Invalid file type {source.mime_type}. Please upload: {', '.join(accepted)}"
            )

    async def start_upload(self, source) -> UploadOutcome:
        """Upload ``source`` (or resume the known session) until a terminal state"""
        if self.is_running:
            raise UploadStateError("An upload is already in progress")
        self.validate(source)
        self._planner = ChunkPlanner(source.size, self.config.chunk_size_bytes)
        self._session = self._prepare_session(source)
        self._cancel_requested = False
        self._window.clear()
        self._window.add(self._clock(), self._planner.bytes_for(self._session.uploaded_parts))

        self._run_task = asyncio.create_task(self._run(source))
        try:
            return await self._run_task
        except asyncio.CancelledError:
            if self._cancel_requested:
                return self._outcome()
            raise
        finally:
            self._run_task = None

    async def cancel(self):
        """Abort transfers and polling, then ask the destination to discard the session"""
        session = self._session
        if session is None or session.is_terminal:
            return

        self._cancel_requested = True
        self._transition(UploadStatus.CANCELLED)

        task = self._run_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})

        if session.session_id:
            try:
                await self.destination.cancel(session.session_id)
            except DestinationError as e:
                logger.warning(f"Cancel request for session {session.session_id} failed: {e}")

    def reset(self):
        if self.is_running:
            raise UploadStateError("Cannot reset while an upload is running; cancel it first")
        self._session = None
        self._planner = None
        self._cancel_requested = False
        self._window.clear()

    # Lifecycle

    def _prepare_session(self, source) -> UploadSession:
        existing = self._session
        if existing is not None and existing.is_terminal:
            raise UploadStateError(
                f"Session {existing.session_id} is {existing.status.value}; reset() before uploading again"
            )

        if existing is not None and existing.session_id:
            if (existing.file_name, existing.file_size_bytes, existing.chunk_size_bytes) != (
                source.name, source.size, self.config.chunk_size_bytes
            ):
                raise UploadValidationError(
                    f"{source.name} does not match session {existing.session_id} being resumed"
                )
            existing.error_detail = None
            return existing

        return UploadSession(
            file_name=source.name,
            file_size_bytes=source.size,
            mime_type=source.mime_type,
            chunk_size_bytes=self.config.chunk_size_bytes,
            total_parts=self._planner.total_parts,
            folder=self.config.folder,
        )

    async def _run(self, source) -> UploadOutcome:
        session = self._session
        try:
            if session.session_id is None:
                await self._initiate()
            elif session.status in (UploadStatus.IDLE, UploadStatus.INITIATING):
                logger.info(
                    f"Resuming session {session.session_id}: "
                    f"{len(session.uploaded_parts)}/{session.total_parts} parts already uploaded"
                )
                self._transition(UploadStatus.UPLOADING)

            if session.status == UploadStatus.UPLOADING:
                await self.coordinator.run(
                    session.session_id,
                    self._planner,
                    source,
                    session.pending_parts,
                    self._on_part_uploaded,
                    on_part_started=self._on_part_started,
                    should_continue=lambda: not session.is_terminal,
                )
                self._transition(UploadStatus.COMPLETING)
                self._advance(COMPLETING_PROGRESS)

            if session.status == UploadStatus.COMPLETING:
                await self.destination.complete(session.session_id, session.ordered_tokens())
                self._transition(UploadStatus.PROCESSING)
                self._advance(PROCESSING_PROGRESS)

            if session.status == UploadStatus.PROCESSING:
                await self._await_processing()
        except UploadError as e:
            self._fail(str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in session {session.session_id}")
            self._fail(f"Upload failed: {e}")
        return self._outcome()

    async def _initiate(self):
        session = self._session
        self._transition(UploadStatus.INITIATING)
        request = asyncio.ensure_future(
            self.destination.initiate(
                InitiateRequest(
                    file_name=session.file_name,
                    file_size_bytes=session.file_size_bytes,
                    mime_type=session.mime_type,
                    total_parts=session.total_parts,
                    chunk_size_bytes=session.chunk_size_bytes,
                    folder=session.folder,
                )
            )
        )
        try:
            response = await asyncio.shield(request)
        except asyncio.CancelledError:
            # The server may already hold a multipart upload; keep its id so cancel() can abort it
            if not request.cancelled():
                try:
                    session.session_id = (await request).session_id
                except DestinationError as e:
                    logger.warning(f"Initiate interrupted by cancellation failed: {e}")
            raise
        session.session_id = response.session_id
        logger.info(
            f"Initiated session {session.session_id} for {session.file_name} "
            f"({format_bytes(session.file_size_bytes)}, {session.total_parts} parts)"
        )
        self._transition(UploadStatus.UPLOADING)

    async def _await_processing(self):
        session = self._session
        result = await self.poller.poll(session.session_id, on_tick=self._on_processing_tick)

        if result.status == RemoteStatus.COMPLETED:
            session.outputs = dict(result.outputs or {})
            session.duration = result.duration
            session.thumbnail = result.thumbnail
            self._advance(100.0)
            self._transition(UploadStatus.COMPLETED)
        elif result.status == RemoteStatus.FAILED:
            self._fail(result.error_message or "Processing failed")
        else:
            self._fail("Upload session was cancelled by the destination")

    # Callbacks from workers and the poller

    def _on_part_started(self, part_number: int):
        if not self._session.is_terminal:
            self._session.current_part = part_number

    def _on_part_uploaded(self, part_number: int, token: str):
        session = self._session
        if session.is_terminal:
            return
        session.record_part(part_number, token)
        self._window.add(self._clock(), self._planner.bytes_for(session.uploaded_parts))
        self._emit(UploadEventType.PART_UPLOADED, part_number=part_number)
        self._advance(scaled_upload_progress(len(session.uploaded_parts), session.total_parts))

    def _on_processing_tick(self, status: StatusResponse):
        session = self._session
        if session.is_terminal:
            return
        # Creep toward, never reach, 100% while the transcoder works
        self._advance(min(session.progress_percent + 1, PROCESSING_PROGRESS_CAP))

    # State changes

    def _transition(self, status: UploadStatus):
        session = self._session
        previous = session.status
        session.set_status(status)
        logger.info(f"Session {session.session_id}: {previous.value} -> {status.value}")
        self._emit(UploadEventType.STATUS_CHANGED)

        if status == UploadStatus.COMPLETED:
            self._emit(UploadEventType.COMPLETED, outputs=dict(session.outputs))
        elif status == UploadStatus.FAILED:
            self._emit(UploadEventType.FAILED, error_detail=session.error_detail)
        elif status == UploadStatus.CANCELLED:
            self._emit(UploadEventType.CANCELLED)

    def _fail(self, detail: str):
        session = self._session
        if session.is_terminal:
            return
        session.error_detail = detail
        logger.error(f"Session {session.session_id} failed: {detail}")
        self._transition(UploadStatus.FAILED)

    def _advance(self, percent: float):
        if self._session.advance_progress(percent):
            self._emit(UploadEventType.PROGRESS)

    def _emit(self, event_type: UploadEventType, **fields):
        session = self._session
        self._sequence += 1
        event = UploadEvent(
            sequence=self._sequence,
            type=event_type,
            session_id=session.session_id,
            status=session.status,
            progress_percent=session.progress_percent,
            **fields,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Upload listener failed on {event_type.value} event")

    def _outcome(self) -> UploadOutcome:
        session = self._session
        return UploadOutcome(
            session_id=session.session_id,
            status=session.status,
            outputs=dict(session.outputs),
            error_detail=session.error_detail,
            duration=session.duration,
            thumbnail=session.thumbnail,
        )

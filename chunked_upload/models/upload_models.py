# models/upload_models.py
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Dict, List, Optional, Set
from enum import Enum

from chunked_upload.config import CHUNK_SIZE
from chunked_upload.errors import UploadFailedError, UploadStateError


class UploadStatus(str, Enum):
    IDLE = "idle"
    INITIATING = "initiating"
    UPLOADING = "uploading"
    COMPLETING = "completing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {UploadStatus.COMPLETED, UploadStatus.FAILED, UploadStatus.CANCELLED}

# Allowed status transitions; any non-terminal state may also move to
# FAILED or CANCELLED.
_TRANSITIONS = {
    UploadStatus.IDLE: {UploadStatus.INITIATING, UploadStatus.UPLOADING},
    UploadStatus.INITIATING: {UploadStatus.UPLOADING},
    UploadStatus.UPLOADING: {UploadStatus.COMPLETING},
    UploadStatus.COMPLETING: {UploadStatus.PROCESSING},
    UploadStatus.PROCESSING: {UploadStatus.COMPLETED},
}


class RemoteStatus(str, Enum):
    """Status values reported by the destination service"""
    PENDING = "PENDING"
    UPLOADING = "UPLOADING"
    TRANSCODING = "TRANSCODING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Wire payloads exchanged with the destination service

class InitiateRequest(CamelModel):
    file_name: str
    file_size_bytes: int
    mime_type: str
    total_parts: int
    chunk_size_bytes: int = CHUNK_SIZE
    folder: Optional[str] = None


class InitiateResponse(CamelModel):
    session_id: str
    key: Optional[str] = None
    expires_at: Optional[str] = None


class ChunkUrlsRequest(CamelModel):
    session_id: str
    part_numbers: List[int]


class PartDestination(CamelModel):
    part_number: int
    upload_url: str


class ChunkUrlsResponse(CamelModel):
    parts: List[PartDestination]


class PartToken(CamelModel):
    part_number: int
    token: str


class MarkUploadedRequest(CamelModel):
    session_id: str
    parts: List[PartToken]


class CompleteRequest(CamelModel):
    session_id: str
    parts: List[PartToken] = []


class SessionRef(CamelModel):
    session_id: str


class StatusResponse(CamelModel):
    status: RemoteStatus
    error_message: Optional[str] = None
    outputs: Optional[Dict[str, str]] = None
    duration: Optional[float] = None
    thumbnail: Optional[str] = None


class ProcessingReport(CamelModel):
    """Result reported by the external transcoding worker"""
    status: RemoteStatus
    outputs: Dict[str, str] = {}
    error_message: Optional[str] = None
    duration: Optional[float] = None
    thumbnail: Optional[str] = None


# Client-side session state

class UploadSession(BaseModel):
    session_id: Optional[str] = None
    file_name: str
    file_size_bytes: int
    mime_type: str
    chunk_size_bytes: int = CHUNK_SIZE
    total_parts: int
    folder: Optional[str] = None
    uploaded_parts: Set[int] = Field(default_factory=set)
    part_tokens: Dict[int, str] = Field(default_factory=dict)
    status: UploadStatus = UploadStatus.IDLE
    progress_percent: float = 0.0
    current_part: Optional[int] = None
    error_detail: Optional[str] = None
    outputs: Dict[str, str] = Field(default_factory=dict)
    duration: Optional[float] = None
    thumbnail: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def pending_parts(self) -> List[int]:
        return [n for n in range(1, self.total_parts + 1) if n not in self.uploaded_parts]

    @property
    def all_parts_uploaded(self) -> bool:
        return len(self.uploaded_parts) == self.total_parts

    @property
    def upload_ratio(self) -> float:
        if self.total_parts <= 0:
            return 0.0
        return len(self.uploaded_parts) / self.total_parts

    def ordered_tokens(self) -> List[PartToken]:
        """Completion tokens in ascending part-number order"""
        return [
            PartToken(part_number=n, token=self.part_tokens[n])
            for n in sorted(self.uploaded_parts)
        ]

    def record_part(self, part_number: int, token: str):
        if self.is_terminal:
            raise UploadStateError(f"Session is {self.status.value}; part {part_number} rejected")
        if not 1 <= part_number <= self.total_parts:
            raise UploadStateError(f"Part {part_number} is outside 1..{self.total_parts}")
        self.uploaded_parts.add(part_number)
        self.part_tokens[part_number] = token

    def set_status(self, status: UploadStatus):
        if status == self.status:
            return
        if self.is_terminal:
            raise UploadStateError(f"Session is already {self.status.value}")
        allowed = _TRANSITIONS.get(self.status, set()) | {UploadStatus.FAILED, UploadStatus.CANCELLED}
        if status not in allowed:
            raise UploadStateError(f"Cannot move from {self.status.value} to {status.value}")
        if status == UploadStatus.COMPLETING and not self.all_parts_uploaded:
            raise UploadStateError(
                f"Only {len(self.uploaded_parts)} of {self.total_parts} parts uploaded"
            )
        self.status = status

    def advance_progress(self, percent: float) -> bool:
        """Raise the visual progress; returns False when nothing changed"""
        percent = min(max(percent, 0.0), 100.0)
        if percent <= self.progress_percent:
            return False
        self.progress_percent = percent
        return True


class UploadEventType(str, Enum):
    STATUS_CHANGED = "status_changed"
    PROGRESS = "progress"
    PART_UPLOADED = "part_uploaded"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class UploadEvent(BaseModel):
    sequence: int
    type: UploadEventType
    session_id: Optional[str] = None
    status: UploadStatus
    progress_percent: float
    part_number: Optional[int] = None
    error_detail: Optional[str] = None
    outputs: Dict[str, str] = {}

    @property
    def master_url(self) -> Optional[str]:
        return self.outputs.get("master")


class UploadOutcome(BaseModel):
    session_id: Optional[str] = None
    status: UploadStatus
    outputs: Dict[str, str] = {}
    error_detail: Optional[str] = None
    duration: Optional[float] = None
    thumbnail: Optional[str] = None

    @property
    def master_url(self) -> Optional[str]:
        return self.outputs.get("master")

    def raise_for_status(self):
        if self.status == UploadStatus.FAILED:
            raise UploadFailedError(self.error_detail or "Upload failed")
        return self


class ProgressView(BaseModel):
    """Display-ready progress fields"""
    status: UploadStatus = UploadStatus.IDLE
    percentage: float = 0.0
    uploaded_bytes: int = 0
    total_bytes: int = 0
    uploaded_size: str = "0 Bytes"
    total_size: str = "0 Bytes"
    uploaded_parts: int = 0
    total_parts: int = 0
    current_part: int = 0
    speed_bytes_per_second: Optional[float] = None
    speed: str = "unknown"
    eta_seconds: Optional[float] = None
    time_remaining: str = "unknown"
    is_uploading: bool = False
    is_completed: bool = False
    has_error: bool = False
    error: Optional[str] = None

# services/progress_projector.py
import math
from collections import deque
from typing import Iterable, Optional, Sequence, Tuple

from chunked_upload.models.upload_models import ProgressView, UploadSession, UploadStatus

UNKNOWN = "unknown"

Sample = Tuple[float, int]  # (timestamp in seconds, bytes uploaded so far)


def format_bytes(num_bytes: float) -> str:
    """Human readable size: '0 Bytes', '512 Bytes', '1.5 KB', '10 MB'"""
    if not isinstance(num_bytes, (int, float)) or not math.isfinite(num_bytes) or num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    index, value = 0, float(num_bytes)
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    value = round(value, 2)
    if value == int(value):
        value = int(value)
    return f"{value} {units[index]}"


def format_time_remaining(seconds: Optional[float]) -> str:
    if seconds is None or not math.isfinite(seconds) or seconds < 0:
        return UNKNOWN
    total = round(seconds)
    if total < 60:
        return f"{total}s"
    if total < 3600:
        minutes, secs = divmod(total, 60)
        return f"{minutes}m {secs}s"
    hours, rest = divmod(total, 3600)
    return f"{hours}h {rest // 60}m"


class ThroughputWindow:
    """Keeps the most recent (timestamp, bytes uploaded) samples"""

    def __init__(self, size: int = 5):
        self._samples = deque(maxlen=size)

    def add(self, timestamp: float, bytes_uploaded: int):
        self._samples.append((timestamp, bytes_uploaded))

    def clear(self):
        self._samples.clear()

    @property
    def samples(self) -> Tuple[Sample, ...]:
        return tuple(self._samples)


def throughput(samples: Sequence[Sample]) -> Optional[float]:
    """Average bytes/second across the window, or None when it cannot be known"""
    if len(samples) < 2:
        return None
    (first_time, first_bytes), (last_time, last_bytes) = samples[0], samples[-1]
    elapsed = last_time - first_time
    if elapsed <= 0:
        return None
    rate = (last_bytes - first_bytes) / elapsed
    if not math.isfinite(rate) or rate <= 0:
        return None
    return rate


def _uploaded_bytes(session: UploadSession) -> int:
    total, chunk = session.file_size_bytes, session.chunk_size_bytes
    if total <= 0 or chunk <= 0:
        return 0
    uploaded = 0
    for n in session.uploaded_parts:
        uploaded += max(0, min(n * chunk, total) - (n - 1) * chunk)
    return min(uploaded, total)


class ProgressProjector:
    """Read-only view over session state for presentation layers"""

    def project(
        self,
        session: Optional[UploadSession],
        samples: Iterable[Sample] = (),
    ) -> ProgressView:
        if session is None:
            return ProgressView()

        total_bytes = max(session.file_size_bytes, 0)
        uploaded_bytes = _uploaded_bytes(session)
        percentage = session.progress_percent if math.isfinite(session.progress_percent) else 0.0

        rate = throughput(list(samples))
        remaining = total_bytes - uploaded_bytes
        eta = remaining / rate if rate and remaining > 0 else None
        if rate and remaining == 0:
            eta = 0.0

        return ProgressView(
            status=session.status,
            percentage=round(min(max(percentage, 0.0), 100.0), 2),
            uploaded_bytes=uploaded_bytes,
            total_bytes=total_bytes,
            uploaded_size=format_bytes(uploaded_bytes),
            total_size=format_bytes(total_bytes),
            uploaded_parts=len(session.uploaded_parts),
            total_parts=max(session.total_parts, 0),
            current_part=session.current_part or 0,
            speed_bytes_per_second=rate,
            speed=f"{format_bytes(rate)}/s" if rate else UNKNOWN,
            eta_seconds=eta,
            time_remaining=format_time_remaining(eta),
            is_uploading=session.status in (UploadStatus.INITIATING, UploadStatus.UPLOADING),
            is_completed=session.status == UploadStatus.COMPLETED,
            has_error=session.status == UploadStatus.FAILED,
            error=session.error_detail,
        )

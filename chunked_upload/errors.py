# errors.py
from typing import Optional


class UploadError(Exception):
    """Base class for every upload pipeline error"""


class UploadValidationError(UploadError, ValueError):
    """Raised before any network call when a file cannot be uploaded"""


class UploadStateError(UploadError):
    """Raised when an operation is not allowed in the session's current state"""


class DestinationError(UploadError):
    """The destination service rejected a request or could not be reached"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        """True for transport failures, 5xx and 429; other statuses will not change on retry"""
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429


class PartUploadError(UploadError):
    """A single part could not be stored"""

    def __init__(self, part_number: int, message: str):
        super().__init__(message)
        self.part_number = part_number


class PollTimeoutError(UploadError):
    """Post-processing did not finish within the polling window"""


class UploadFailedError(UploadError):
    """Raised by UploadOutcome.raise_for_status() for a failed session"""

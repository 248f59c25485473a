# models/destination_models.py
from pydantic import BaseModel
from typing import Dict, List, Optional
from datetime import datetime

from chunked_upload.models.upload_models import RemoteStatus


class UploadedPart(BaseModel):
    part_number: int
    token: str
    uploaded_at: datetime


class DestinationSession(BaseModel):
    id: str
    filename: str
    s3_key: str
    upload_id: str
    file_size: int
    chunk_size: int
    total_parts: int
    content_type: str
    folder: str
    status: RemoteStatus
    uploaded_parts: List[UploadedPart] = []
    created_at: datetime
    completed_at: Optional[datetime] = None
    expires_at: datetime
    error_message: Optional[str] = None
    outputs: Dict[str, str] = {}
    duration: Optional[float] = None
    thumbnail: Optional[str] = None

    def part_numbers(self) -> List[int]:
        return sorted(p.part_number for p in self.uploaded_parts)

    def missing_parts(self) -> List[int]:
        uploaded = set(self.part_numbers())
        return [n for n in range(1, self.total_parts + 1) if n not in uploaded]

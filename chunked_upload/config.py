# config.py
import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

MiB = 1024 * 1024
CHUNK_SIZE = 10 * MiB  # 10MB parts


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class UploadConfig(BaseModel):
    """Caller-facing settings for the upload pipeline"""

    api_base_url: str = "http://localhost:8080"
    access_token: Optional[str] = None
    folder: str = "course-videos"
    chunk_size_bytes: int = Field(CHUNK_SIZE, gt=0)
    max_file_size_bytes: int = Field(500 * MiB, gt=0)
    accepted_mime_types: List[str] = ["video/*"]
    batch_width: int = Field(3, gt=0)
    max_part_attempts: int = Field(3, gt=0)
    retry_delay_seconds: float = 1.0
    poll_interval_seconds: float = 3.0
    poll_timeout_seconds: float = 30 * 60
    request_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "UploadConfig":
        values = {}
        if os.getenv("UPLOAD_API_URL"):
            values["api_base_url"] = os.getenv("UPLOAD_API_URL")
        if os.getenv("UPLOAD_API_TOKEN"):
            values["access_token"] = os.getenv("UPLOAD_API_TOKEN")
        if os.getenv("UPLOAD_FOLDER"):
            values["folder"] = os.getenv("UPLOAD_FOLDER")
        if os.getenv("UPLOAD_MAX_FILE_SIZE_MB"):
            values["max_file_size_bytes"] = int(os.getenv("UPLOAD_MAX_FILE_SIZE_MB")) * MiB
        accepted = _split(os.getenv("UPLOAD_ACCEPTED_TYPES"))
        if accepted:
            values["accepted_mime_types"] = accepted
        return cls(**values)


class ServiceSettings(BaseModel):
    """Settings for the destination service (S3 + Redis)"""

    bucket_name: Optional[str] = None
    aws_region: str = "us-east-1"
    aws_access_key: Optional[str] = None
    aws_secret_key: Optional[str] = None
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_password: str = ""
    key_prefix: str = "uploads"
    api_tokens: List[str] = []
    transcode_queue: str = "transcode_jobs"
    session_ttl_days: int = 7
    presigned_url_expiry: int = 3600
    cleanup_enabled: bool = True

    @classmethod
    def from_env(cls) -> "ServiceSettings":
        return cls(
            bucket_name=os.getenv("BUCKET_NAME"),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            aws_access_key=os.getenv("AWS_ACCESS_KEY"),
            aws_secret_key=os.getenv("AWS_SECRET_KEY"),
            redis_host=os.getenv("REDIS_HOST", "redis"),
            redis_port=int(os.getenv("REDIS_PORT", "6379")),
            redis_password=os.getenv("REDIS_PASSWORD", ""),
            key_prefix=os.getenv("UPLOAD_KEY_PREFIX", "uploads"),
            api_tokens=_split(os.getenv("UPLOAD_API_TOKENS")),
            transcode_queue=os.getenv("TRANSCODE_QUEUE", "transcode_jobs"),
            cleanup_enabled=os.getenv("UPLOAD_CLEANUP_ENABLED", "true").lower() != "false",
        )

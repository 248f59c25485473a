# services/cleanup_service.py
import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from chunked_upload.config import ServiceSettings
from chunked_upload.services.upload_service import (
    SESSION_KEY_PREFIX,
    build_redis_client,
    build_s3_client,
)

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 6 * 60 * 60
ERROR_BACKOFF_SECONDS = 60
FINISHED_STATUSES = {"completed", "cancelled", "failed"}


class CleanupService:
    def __init__(self, settings: Optional[ServiceSettings] = None, s3_client=None, redis_client=None):
        self.settings = settings or ServiceSettings.from_env()
        self.s3_client = s3_client or build_s3_client(self.settings)
        self.redis_client = redis_client or build_redis_client(self.settings)
        self.bucket_name = self.settings.bucket_name
        self.max_age = timedelta(days=self.settings.session_ttl_days)
        self.finished_max_age = timedelta(hours=48)

    async def start_cleanup_scheduler(self):
        """Run cleanup every 6 hours until cancelled"""
        while True:
            try:
                await self.cleanup_expired_sessions()
                await self.cleanup_incomplete_uploads()
                await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
            except asyncio.CancelledError:
                logger.info("Cleanup scheduler cancelled")
                raise
            except Exception as e:
                logger.error(f"Error in cleanup scheduler: {e}")
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    async def cleanup_expired_sessions(self, now: Optional[datetime] = None) -> int:
        """Delete sessions older than the TTL, or finished ones older than 48 hours"""
        now = now or datetime.now()
        cleaned = 0

        for key in self.redis_client.keys(f"{SESSION_KEY_PREFIX}*"):
            session_data = self.redis_client.get(key)
            if not session_data:
                continue
            try:
                data = json.loads(session_data)
                created_at = datetime.fromisoformat(data["created_at"]).replace(tzinfo=None)
                status = str(data.get("status", "")).lower()
            except (ValueError, KeyError, TypeError) as e:
                # Unreadable record; drop it only if Redis will not expire it
                logger.warning(f"Corrupted session {key!r}: {e}")
                if self.redis_client.ttl(key) == -1:
                    self.redis_client.delete(key)
                    cleaned += 1
                continue

            age = now - created_at
            if age > self.max_age or (age > self.finished_max_age and status in FINISHED_STATUSES):
                self.redis_client.delete(key)
                cleaned += 1
                logger.info(f"Removed session {key!r} (status: {status}, age: {age})")

        logger.info(f"Session cleanup completed. Cleaned {cleaned} sessions")
        return cleaned

    async def cleanup_incomplete_uploads(self, now: Optional[datetime] = None) -> int:
        """Abort multipart uploads abandoned for longer than the session TTL"""
        cutoff = (now or datetime.now()) - self.max_age
        response = self.s3_client.list_multipart_uploads(
            Bucket=self.bucket_name,
            Prefix=f"{self.settings.key_prefix}/",
        )

        aborted = 0
        for upload in response.get("Uploads", []):
            initiated = upload["Initiated"].replace(tzinfo=None)
            if initiated >= cutoff:
                continue
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=upload["Key"],
                    UploadId=upload["UploadId"],
                )
                aborted += 1
                logger.info(f"Aborted stale upload: {upload['Key']}")
            except Exception as e:
                logger.error(f"Failed to abort upload {upload['UploadId']}: {e}")

        logger.info(f"Cleaned up {aborted} incomplete S3 uploads")
        return aborted

# services/upload_service.py
import asyncio
import boto3
import redis
import json
import logging
from datetime import datetime, timedelta
from uuid import uuid4
from typing import Optional, List

from chunked_upload.config import ServiceSettings
from chunked_upload.models.destination_models import DestinationSession, UploadedPart
from chunked_upload.models.upload_models import (
    InitiateRequest,
    PartDestination,
    PartToken,
    ProcessingReport,
    RemoteStatus,
    StatusResponse,
)

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "upload_session:"
OPEN_STATUSES = {RemoteStatus.PENDING, RemoteStatus.UPLOADING}


class SessionNotFound(LookupError):
    pass


def build_s3_client(settings: ServiceSettings):
    return boto3.client(
        "s3",
        region_name=settings.aws_region,
        aws_access_key_id=settings.aws_access_key,
        aws_secret_access_key=settings.aws_secret_key,
        config=boto3.session.Config(signature_version="s3v4"),
    )


def build_redis_client(settings: ServiceSettings):
    return redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password or None,
        decode_responses=False,
        socket_connect_timeout=5,
        health_check_interval=30,
        db=0,
    )


class UploadService:
    def __init__(self, settings: Optional[ServiceSettings] = None, s3_client=None, redis_client=None):
        self.settings = settings or ServiceSettings.from_env()
        self.s3_client = s3_client or build_s3_client(self.settings)
        self.redis_client = redis_client or build_redis_client(self.settings)
        self.bucket_name = self.settings.bucket_name

        # Session expiration (7 days by default)
        self.session_ttl = timedelta(days=self.settings.session_ttl_days)

    async def create_session(self, request: InitiateRequest) -> DestinationSession:
        """Create a new multipart upload session"""
        if request.file_size_bytes <= 0:
            raise ValueError("File is empty")
        if request.chunk_size_bytes <= 0:
            raise ValueError("Chunk size must be positive")
        expected_parts = -(-request.file_size_bytes // request.chunk_size_bytes)
        if request.total_parts != expected_parts:
            raise ValueError(f"Expected {expected_parts} parts, got {request.total_parts}")

        session_id = str(uuid4())
        folder = request.folder or "default"
        s3_key = f"{self.settings.key_prefix}/{folder}/{session_id}_{request.file_name}"

        # Initialize multipart upload on S3
        response = await asyncio.to_thread(
            self.s3_client.create_multipart_upload,
            Bucket=self.bucket_name,
            Key=s3_key,
            ContentType=request.mime_type,
            Metadata={
                "session-id": session_id,
                "original-filename": request.file_name,
                "file-size": str(request.file_size_bytes),
            },
        )

        now = datetime.now()
        session = DestinationSession(
            id=session_id,
            filename=request.file_name,
            s3_key=s3_key,
            upload_id=response["UploadId"],
            file_size=request.file_size_bytes,
            chunk_size=request.chunk_size_bytes,
            total_parts=request.total_parts,
            content_type=request.mime_type,
            folder=folder,
            status=RemoteStatus.PENDING,
            created_at=now,
            expires_at=now + self.session_ttl,
        )

        await self._store_session(session)
        logger.info(f"Created upload session {session_id} ({request.total_parts} parts) at {s3_key}")
        return session

    def generate_presigned_urls(self, session: DestinationSession, part_numbers: List[int]) -> List[PartDestination]:
        """Generate presigned PUT URLs for the requested parts"""
        if session.status not in OPEN_STATUSES:
            raise ValueError(f"Session is {session.status.value}; no more parts accepted")
        invalid = [n for n in part_numbers if not 1 <= n <= session.total_parts]
        if invalid:
            raise ValueError(f"Part numbers {invalid} are outside 1..{session.total_parts}")

        urls = []
        for part_number in part_numbers:
            url = self.s3_client.generate_presigned_url(
                "upload_part",
                Params={
                    "Bucket": self.bucket_name,
                    "Key": session.s3_key,
                    "UploadId": session.upload_id,
                    "PartNumber": part_number,
                },
                ExpiresIn=self.settings.presigned_url_expiry,
                HttpMethod="PUT",
            )
            urls.append(PartDestination(part_number=part_number, upload_url=url))
        return urls

    async def mark_parts_uploaded(self, session_id: str, parts: List[PartToken]) -> DestinationSession:
        """Record the ETags of successfully uploaded parts"""
        session = await self.require_session(session_id)
        if session.status not in OPEN_STATUSES:
            raise ValueError(f"Session is {session.status.value}; no more parts accepted")

        self._merge_parts(session, parts)
        session.status = RemoteStatus.UPLOADING
        await self._store_session(session)
        return session

    async def complete_upload(self, session_id: str, parts: List[PartToken]) -> DestinationSession:
        """Assemble the multipart object and hand it to the transcoder"""
        session = await self.require_session(session_id)
        if session.status in (RemoteStatus.TRANSCODING, RemoteStatus.COMPLETED):
            return session
        if session.status not in OPEN_STATUSES:
            raise ValueError(f"Cannot complete a {session.status.value} session")

        self._merge_parts(session, parts)
        missing = session.missing_parts()
        if missing:
            raise ValueError(f"Parts {missing} have not been uploaded")

        # Sort parts by part number
        sorted_parts = [
            {"PartNumber": p.part_number, "ETag": p.token}
            for p in sorted(session.uploaded_parts, key=lambda p: p.part_number)
        ]

        await asyncio.to_thread(
            self.s3_client.complete_multipart_upload,
            Bucket=self.bucket_name,
            Key=session.s3_key,
            UploadId=session.upload_id,
            MultipartUpload={"Parts": sorted_parts},
        )

        session.status = RemoteStatus.TRANSCODING
        session.completed_at = datetime.now()
        await self._store_session(session)

        self.redis_client.rpush(
            self.settings.transcode_queue,
            json.dumps({"session_id": session.id, "bucket": self.bucket_name, "key": session.s3_key}),
        )
        logger.info(f"Session {session.id} assembled; queued for transcoding")
        return session

    async def record_processing_result(self, session_id: str, report: ProcessingReport) -> DestinationSession:
        """Store the transcoder's verdict"""
        session = await self.require_session(session_id)
        if session.status != RemoteStatus.TRANSCODING:
            raise ValueError(f"Session is {session.status.value}, not transcoding")

        if report.status == RemoteStatus.COMPLETED:
            session.outputs = dict(report.outputs)
            session.duration = report.duration
            session.thumbnail = report.thumbnail
        elif report.status == RemoteStatus.FAILED:
            session.error_message = report.error_message or "Transcoding failed"
        else:
            raise ValueError(f"Processing result must be COMPLETED or FAILED, got {report.status.value}")

        session.status = report.status
        await self._store_session(session)
        return session

    async def abort_upload(self, session_id: str) -> DestinationSession:
        """Abort an upload session"""
        session = await self.require_session(session_id)
        if session.status == RemoteStatus.COMPLETED:
            raise ValueError("Cannot cancel a completed upload")
        if session.status == RemoteStatus.CANCELLED:
            return session

        # Only an unassembled multipart upload can be aborted on S3
        if session.status in OPEN_STATUSES:
            await asyncio.to_thread(
                self.s3_client.abort_multipart_upload,
                Bucket=self.bucket_name,
                Key=session.s3_key,
                UploadId=session.upload_id,
            )

        session.status = RemoteStatus.CANCELLED
        await self._store_session(session)
        logger.info(f"Session {session.id} cancelled")
        return session

    async def get_status(self, session_id: str) -> StatusResponse:
        session = await self.require_session(session_id)
        return StatusResponse(
            status=session.status,
            error_message=session.error_message,
            outputs=session.outputs or None,
            duration=session.duration,
            thumbnail=session.thumbnail,
        )

    async def require_session(self, session_id: str) -> DestinationSession:
        session = await self.get_session(session_id)
        if not session:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    async def get_session(self, session_id: str) -> Optional[DestinationSession]:
        """Get session by ID"""
        session_data = self.redis_client.get(f"{SESSION_KEY_PREFIX}{session_id}")
        if not session_data:
            return None
        return DestinationSession.model_validate_json(session_data)

    async def get_active_sessions(self) -> List[DestinationSession]:
        """Get all sessions still accepting parts or being processed"""
        sessions = []
        for key in self.redis_client.keys(f"{SESSION_KEY_PREFIX}*"):
            session_data = self.redis_client.get(key)
            if session_data:
                session = DestinationSession.model_validate_json(session_data)
                if session.status in OPEN_STATUSES or session.status == RemoteStatus.TRANSCODING:
                    sessions.append(session)
        return sessions

    def _merge_parts(self, session: DestinationSession, parts: List[PartToken]):
        invalid = [p.part_number for p in parts if not 1 <= p.part_number <= session.total_parts]
        if invalid:
            raise ValueError(f"Part numbers {invalid} are outside 1..{session.total_parts}")

        by_number = {p.part_number: p for p in session.uploaded_parts}
        now = datetime.now()
        for part in parts:
            by_number[part.part_number] = UploadedPart(
                part_number=part.part_number, token=part.token, uploaded_at=now
            )
        session.uploaded_parts = [by_number[n] for n in sorted(by_number)]

    async def _store_session(self, session: DestinationSession):
        """Store session in Redis"""
        self.redis_client.setex(
            f"{SESSION_KEY_PREFIX}{session.id}",
            int(self.session_ttl.total_seconds()),
            session.model_dump_json(),
        )

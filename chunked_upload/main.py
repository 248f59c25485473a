import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from botocore.exceptions import ClientError
from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chunked_upload.config import ServiceSettings
from chunked_upload.models.upload_models import *
from chunked_upload.services.upload_service import SessionNotFound, UploadService
from chunked_upload.services.cleanup_service import CleanupService

load_dotenv()
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

settings = ServiceSettings.from_env()
_upload_service: Optional[UploadService] = None


def get_settings() -> ServiceSettings:
    return settings


def get_upload_service() -> UploadService:
    global _upload_service
    if _upload_service is None:
        _upload_service = UploadService(settings)
    return _upload_service


bearer_scheme = HTTPBearer(auto_error=False)


def require_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    current_settings: ServiceSettings = Depends(get_settings),
) -> str:
    """Token issuance lives in the auth subsystem; only presence (and the allow-list, if set) is checked here"""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if current_settings.api_tokens and credentials.credentials not in current_settings.api_tokens:
        raise HTTPException(status_code=401, detail="Invalid bearer token")
    return credentials.credentials


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    cleanup_task = None
    if settings.cleanup_enabled:
        cleanup_service = CleanupService(settings)
        cleanup_task = asyncio.create_task(cleanup_service.start_cleanup_scheduler())

    yield

    # Shutdown
    if cleanup_task:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass


app = FastAPI(title="Chunked Upload Service", lifespan=lifespan)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SessionNotFound)
async def session_not_found_handler(request: Request, exc: SessionNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def invalid_request_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ClientError)
async def storage_error_handler(request: Request, exc: ClientError):
    logger.error(f"S3 error on {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content={"detail": f"Storage error: {exc}"})


def ok(data) -> dict:
    return {"success": True, "data": data}


router = APIRouter(prefix="/upload/chunked", dependencies=[Depends(require_token)])


@router.post("/initiate")
async def initiate_upload(
    request: InitiateRequest,
    upload_service: UploadService = Depends(get_upload_service),
):
    """Initialize a new multipart upload session"""
    session = await upload_service.create_session(request)
    return ok(
        InitiateResponse(
            session_id=session.id,
            key=session.s3_key,
            expires_at=session.expires_at.isoformat(),
        ).model_dump(by_alias=True)
    )


@router.post("/chunk-urls")
async def get_chunk_urls(
    request: ChunkUrlsRequest,
    upload_service: UploadService = Depends(get_upload_service),
):
    """Generate presigned URLs for a batch of parts"""
    session = await upload_service.require_session(request.session_id)
    parts = upload_service.generate_presigned_urls(session, request.part_numbers)
    return ok(ChunkUrlsResponse(parts=parts).model_dump(by_alias=True))


@router.post("/mark-uploaded")
async def mark_parts_uploaded(
    request: MarkUploadedRequest,
    upload_service: UploadService = Depends(get_upload_service),
):
    """Record the ETags of uploaded parts"""
    session = await upload_service.mark_parts_uploaded(request.session_id, request.parts)
    return ok({"sessionId": session.id, "uploadedParts": session.part_numbers()})


@router.post("/complete")
async def complete_upload(
    request: CompleteRequest,
    upload_service: UploadService = Depends(get_upload_service),
):
    """Complete the multipart upload and queue transcoding"""
    session = await upload_service.complete_upload(request.session_id, request.parts)
    return ok({"sessionId": session.id, "status": session.status.value, "key": session.s3_key})


@router.post("/{session_id}/processing-result")
async def report_processing_result(
    session_id: str,
    report: ProcessingReport,
    upload_service: UploadService = Depends(get_upload_service),
):
    """Called by the transcoding worker when it finishes"""
    session = await upload_service.record_processing_result(session_id, report)
    return ok({"sessionId": session.id, "status": session.status.value})


@router.get("/status/{session_id}")
async def get_upload_status(
    session_id: str,
    upload_service: UploadService = Depends(get_upload_service),
):
    status = await upload_service.get_status(session_id)
    return ok(status.model_dump(by_alias=True, exclude_none=True))


@router.post("/cancel")
async def cancel_upload(
    request: SessionRef,
    upload_service: UploadService = Depends(get_upload_service),
):
    """Abort an ongoing upload"""
    session = await upload_service.abort_upload(request.session_id)
    return ok({"sessionId": session.id, "status": session.status.value})


@router.get("/session/{session_id}")
async def get_session(
    session_id: str,
    upload_service: UploadService = Depends(get_upload_service),
):
    """Get upload session details"""
    session = await upload_service.require_session(session_id)
    return ok(session.model_dump(mode="json"))


@router.get("/sessions/active")
async def get_active_sessions(upload_service: UploadService = Depends(get_upload_service)):
    """Get all active upload sessions"""
    sessions = await upload_service.get_active_sessions()
    return ok({"sessions": [s.model_dump(mode="json") for s in sessions]})


app.include_router(router)

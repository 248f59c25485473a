# services/destination_client.py
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ValidationError

from chunked_upload.errors import DestinationError
from chunked_upload.models.upload_models import (
    ChunkUrlsRequest,
    ChunkUrlsResponse,
    CompleteRequest,
    InitiateRequest,
    InitiateResponse,
    MarkUploadedRequest,
    PartDestination,
    PartToken,
    SessionRef,
    StatusResponse,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/upload/chunked"


class DestinationClient:
    """Bearer-authorized client for the chunked upload API"""

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str],
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        if self._owns_client:
            await self.http_client.aclose()

    async def initiate(self, request: InitiateRequest) -> InitiateResponse:
        data = await self._request("POST", "/initiate", "initiate upload", request)
        return self._parse(InitiateResponse, data, "initiate upload")

    async def chunk_urls(self, session_id: str, part_numbers: List[int]) -> List[PartDestination]:
        request = ChunkUrlsRequest(session_id=session_id, part_numbers=part_numbers)
        data = await self._request("POST", "/chunk-urls", "get upload URLs", request)
        return self._parse(ChunkUrlsResponse, data, "get upload URLs").parts

    async def mark_uploaded(self, session_id: str, parts: List[PartToken]):
        request = MarkUploadedRequest(session_id=session_id, parts=parts)
        await self._request("POST", "/mark-uploaded", "mark parts uploaded", request)

    async def complete(self, session_id: str, parts: List[PartToken]):
        # Assembly is order-sensitive
        ordered = sorted(parts, key=lambda p: p.part_number)
        request = CompleteRequest(session_id=session_id, parts=ordered)
        await self._request("POST", "/complete", "complete upload", request)

    async def status(self, session_id: str) -> StatusResponse:
        data = await self._request("GET", f"/status/{session_id}", "get upload status")
        return self._parse(StatusResponse, data, "get upload status")

    async def cancel(self, session_id: str):
        await self._request("POST", "/cancel", "cancel upload", SessionRef(session_id=session_id))

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _request(
        self, method: str, path: str, action: str, payload: Optional[BaseModel] = None
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{API_PREFIX}{path}"
        body = payload.model_dump(by_alias=True, exclude_none=True) if payload else None
        try:
            response = await self.http_client.request(method, url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise DestinationError(f"Failed to {action}: {e}") from e

        if response.is_error:
            raise DestinationError(
                f"Failed to {action}: {self._error_detail(response)}",
                status_code=response.status_code,
            )

        try:
            content = response.json()
        except ValueError:
            raise DestinationError(f"Failed to {action}: invalid JSON response", response.status_code)

        # Unwrap {"success": ..., "data": ...} envelopes
        if isinstance(content, dict) and "success" in content:
            if not content["success"]:
                raise DestinationError(
                    f"Failed to {action}: {content.get('message') or 'request was not successful'}",
                    status_code=response.status_code,
                )
            content = content.get("data") or {}
        return content if isinstance(content, dict) else {}

    @staticmethod
    def _parse(model, data: Dict[str, Any], action: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise DestinationError(f"Failed to {action}: unexpected response ({e.error_count()} errors)")

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            content = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(content, dict):
            detail = content.get("detail") or content.get("message")
            if detail:
                return str(detail)
        return response.text or response.reason_phrase

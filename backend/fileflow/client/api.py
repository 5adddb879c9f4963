"""
Files API client (httpx)

Thin async wrapper over the /api/v1/files endpoints used by the client
state cache. Non-2xx responses raise ApiError carrying the server's
ErrorResponse code and message.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Callable
from uuid import UUID

import httpx
from pydantic import ValidationError

from fileflow.core.config import settings
from fileflow.schemas.files import FileRecord, FileStatus, FileUploadResponse, StreamEvent

logger = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(self, status_code: int, error_code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code  = error_code
        self.message     = message

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        try:
            body = response.json()
        except ValueError:
            body = {}
        return cls(
            status_code=response.status_code,
            error_code=body.get("error_code", "HTTP_ERROR"),
            message=body.get("message") or f"Request failed with HTTP {response.status_code}",
        )


class FilesApiClient:
    """
    client = FilesApiClient(token="<jwt>")
    records = await client.list_files()

    Pass `transport=httpx.ASGITransport(app=app)` to talk to an in-process app.
    """

    def __init__(
        self,
        base_url:  str | None = None,
        token:     str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout:   float = 30.0,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._http = httpx.AsyncClient(
            base_url=(base_url or settings.api_base_url).rstrip("/"),
            headers=headers,
            transport=transport,
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "FilesApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Bulk reads / mutations
    # ------------------------------------------------------------------

    async def list_files(self, status: FileStatus | None = None) -> list[FileRecord]:
        params = {"status": status.value} if status else None
        resp = await self._http.get("/files", params=params)
        self._raise_for_status(resp)
        return [FileRecord.model_validate(item) for item in resp.json()["files"]]

    async def get_file(self, record_id: UUID) -> FileRecord | None:
        resp = await self._http.get(f"/files/{record_id}")
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp)
        return FileRecord.model_validate(resp.json())

    async def upload(
        self,
        data:         bytes,
        filename:     str,
        content_type: str = "application/octet-stream",
    ) -> FileUploadResponse:
        resp = await self._http.post(
            "/files/upload",
            files={"file": (filename, data, content_type)},
        )
        self._raise_for_status(resp)
        return FileUploadResponse.model_validate(resp.json())

    async def delete(self, record_id: UUID) -> None:
        resp = await self._http.delete(f"/files/{record_id}")
        self._raise_for_status(resp)

    # ------------------------------------------------------------------
    # Event stream
    # ------------------------------------------------------------------

    async def stream_events(self, on_open: Callable[[], None] | None = None) -> AsyncIterator[StreamEvent]:
        """
        Yield StreamEvents until the server closes the stream.
        on_open fires once the server has accepted the stream (HTTP 200).
        Raises ApiError when the stream cannot be opened (e.g. 401).
        """
        async with self._http.stream(
            "GET",
            "/files/events",
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(None, connect=10.0),
        ) as resp:
            if resp.status_code != 200:
                await resp.aread()
                raise ApiError.from_response(resp)

            if on_open is not None:
                on_open()

            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                payload = line[len("data:"):].strip()
                try:
                    yield StreamEvent.model_validate_json(payload)
                except ValidationError as exc:
                    logger.warning("Unparseable stream event dropped | error=%s", exc)

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.is_success:
            return
        raise ApiError.from_response(resp)

"""
HTTP client for confirmable operations.
"""
from typing import Any, Dict, Optional

import httpx

from clubsync.core.logging import get_logger
from clubsync.engine.errors import ApiError, NetworkUnavailable, RateLimited
from clubsync.engine.rate_limit import RateLimiter

logger = get_logger(__name__)


class ApiClient:
    """
    JSON request helper.

    Failure is always distinct from a well-formed empty success: transport
    problems raise `NetworkUnavailable`, non-2xx or non-JSON answers raise
    `ApiError`, and a 2xx JSON body (possibly empty) is returned as-is.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        token: Optional[str] = None,
        limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.token = token
        self._limiter = limiter
        self._transport = transport

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        path: str,
        method: str = "GET",
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        limit_key: Optional[str] = None,
    ) -> Any:
        key = limit_key or f"api:{method.upper()}:{path}"
        if self._limiter is not None and not self._limiter.allow(key):
            raise RateLimited(key)

        logger.debug("API request", extra={"extra_data": {"method": method, "path": path}})
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json, headers=self._headers(headers))
        except httpx.TransportError as e:
            logger.warning(f"API request failed: {path} - {e}")
            raise NetworkUnavailable(str(e)) from e

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            logger.error(f"Non-JSON response from {path}: {response.status_code}")
            raise ApiError(response.status_code, "Server returned non-JSON response")

        try:
            data = response.json()
        except ValueError as e:
            raise ApiError(response.status_code, "Malformed JSON response") from e

        if response.is_error:
            detail = data.get("message") if isinstance(data, dict) else None
            logger.error(f"API {path} failed: {detail or response.reason_phrase}")
            raise ApiError(response.status_code, detail or response.reason_phrase)

        return data

    async def confirm_edit(self, room_id: str, message_id: str, body: str, op_id: str) -> Any:
        return await self.request(
            f"/api/clubs/{room_id}/messages/{message_id}",
            method="PUT",
            json={"body": body, "opId": op_id},
            limit_key=f"api:PUT:{room_id}",
        )

    async def confirm_delete(self, room_id: str, message_id: str, op_id: str) -> Any:
        return await self.request(
            f"/api/clubs/{room_id}/messages/{message_id}",
            method="DELETE",
            headers={"X-Op-Id": op_id},
            limit_key=f"api:DELETE:{room_id}",
        )

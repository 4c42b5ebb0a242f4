"""
Transports between the sync client and the sync server.

The only contract is: send a SyncRequest, receive a SyncResponse, or raise
TransportError. HttpTransport talks to the aiohttp endpoint over the
network; LocalTransport hands the request to an in-process SyncServer.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import aiohttp

from ..exceptions import TransportError
from ..protocol import SyncRequest, SyncResponse

if TYPE_CHECKING:
    from .server import SyncServer

logger = logging.getLogger(__name__)

SYNC_PATH = "/api/sync"
HEALTH_PATH = "/health"


class Transport(ABC):
    """Authenticated request/response channel to the sync server."""

    @abstractmethod
    async def send(self, request: SyncRequest) -> SyncResponse:
        """Run one sync exchange.

        Raises:
            TransportError: If the server is unreachable or answers with an error
        """
        ...

    async def check_health(self) -> bool:
        """Whether the server is reachable right now."""
        return True

    async def close(self) -> None:
        """Release resources."""
        return None


class HttpTransport(Transport):
    """Sync transport over HTTP using aiohttp.

    Example:
        >>> transport = HttpTransport("https://firewood.example.com", api_token="...")
        >>> response = await transport.send(request)
        >>> await transport.close()
    """

    def __init__(
        self,
        api_url: str,
        api_token: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the transport.

        Args:
            api_url: Base URL of the sync server
            api_token: Bearer token identifying the user
            timeout: Total timeout per request in seconds
        """
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def _request(
        self, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        url = f"{self.api_url}{path}"
        try:
            async with self._get_session().request(
                method, url, json=payload, headers=self._headers()
            ) as response:
                if response.status != 200:
                    reason = await self._error_reason(response)
                    raise TransportError(url, status=response.status, reason=reason)
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as e:
            raise TransportError(url, cause=e) from e

    @staticmethod
    async def _error_reason(response: aiohttp.ClientResponse) -> str:
        try:
            body = await response.json(content_type=None)
        except (aiohttp.ClientError, json.JSONDecodeError, UnicodeDecodeError):
            return response.reason or "API request failed"
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return response.reason or "API request failed"

    async def send(self, request: SyncRequest) -> SyncResponse:
        data = await self._request("POST", SYNC_PATH, request.to_dict())
        return SyncResponse.from_dict(data)

    async def check_health(self) -> bool:
        try:
            data = await self._request("GET", HEALTH_PATH)
        except TransportError as e:
            logger.debug(f"Health check failed: {e}")
            return False
        return data.get("status") == "ok"

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


class LocalTransport(Transport):
    """Transport that calls an in-process SyncServer.

    Requests and responses still go through a JSON round trip, so the
    client sees exactly what it would receive over HTTP. Setting
    ``online`` to False makes every send fail like a dropped network.
    """

    def __init__(self, server: SyncServer, user_id: str, online: bool = True) -> None:
        self.server = server
        self.user_id = user_id
        self.online = online

    async def send(self, request: SyncRequest) -> SyncResponse:
        if not self.online:
            raise TransportError("local", reason="offline")

        payload = json.loads(json.dumps(request.to_dict()))
        result = await self.server.handle_sync(self.user_id, payload)
        return SyncResponse.from_dict(json.loads(json.dumps(result)))

    async def check_health(self) -> bool:
        return self.online

"""
Remote Ledger Gateway

HTTP client for the remote ledger service's per-collection REST endpoints:

- GET    /api/<collection>                 -> list of records
- POST   /api/<collection>                 -> created record with server identity
- POST   /api/<collection>/<id>/<action>   -> updated record
- DELETE /api/<collection>/<id>

Every failure (network error, non-2xx status, undecodable body) is raised
as GatewayError so callers can catch one type per call.
"""

import logging
from typing import Any

import httpx

from ledger_sync.contracts import Collection, get_spec

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Transport failure talking to the remote ledger service."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status_code: int | None = None,
        details: Any = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.details = details
        self.retryable = retryable


class LedgerGateway:
    """
    Async client for the remote ledger service.

    The underlying httpx client is created lazily and reused.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self.headers,
                transport=self.transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def send(self, method: str, path: str, body: Any = None) -> Any:
        """Make a request and return the decoded JSON payload (None for empty bodies)."""
        client = await self._get_client()
        method = method.upper()

        try:
            if method == "GET":
                response = await client.get(path)
            elif method == "DELETE":
                response = await client.delete(path)
            else:
                response = await client.request(method, path, json=body if body is not None else {})
        except httpx.RequestError as e:
            logger.debug(f"HTTP request failed: {e}", extra={"method": method, "path": path})
            raise GatewayError(
                message=f"{method} {path} failed: {e}",
                code="HTTP_ERROR",
                retryable=True,
            ) from e

        if response.status_code >= 400:
            logger.debug(
                f"{method} {path} answered {response.status_code}",
                extra={"method": method, "path": path, "status_code": response.status_code},
            )
            raise GatewayError(
                message=f"{method} {path} failed ({response.status_code}): {response.text or response.reason_phrase}",
                code=str(response.status_code),
                status_code=response.status_code,
                details=response.text,
                retryable=response.status_code >= 500 or response.status_code in (408, 429),
            )

        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(
                message=f"{method} {path} returned a non-JSON body",
                code="DECODE_ERROR",
                status_code=response.status_code,
                retryable=True,
            ) from e

    async def get(self, path: str) -> Any:
        return await self.send("GET", path)

    async def post(self, path: str, body: Any = None) -> Any:
        return await self.send("POST", path, body)

    async def delete(self, path: str) -> Any:
        return await self.send("DELETE", path)

    async def fetch_collection(self, collection: Collection) -> list[Any]:
        """Fetch a whole collection. Raises GatewayError if the payload is not a list."""
        spec = get_spec(collection)
        payload = await self.get(spec.path)
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise GatewayError(
                message=f"GET {spec.path} returned {type(payload).__name__}, expected a list",
                code="BAD_PAYLOAD",
                retryable=False,
            )
        return payload

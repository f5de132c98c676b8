"""Async client for a Redis REST API (Upstash / Vercel KV wire format).

Every command is sent as a JSON array, e.g. ``["GET", "key"]``, and the
server answers ``{"result": ...}`` or ``{"error": "..."}``. Batches go to
``/pipeline`` and return one such object per command.
"""

from typing import Any

import httpx
import structlog

from cv_chat_api.config import get_settings

logger = structlog.get_logger()


class KVError(Exception):
    """Base exception for durable store errors."""

    pass


class KVConnectionError(KVError):
    """Raised when the store cannot be reached."""

    pass


class KVCommandError(KVError):
    """Raised when the store rejects a command."""

    pass


class KVClient:
    """Minimal async Redis REST client."""

    def __init__(
        self,
        url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            url: REST endpoint. Defaults to config value.
            token: Bearer token. Defaults to config value.
            timeout: Request timeout in seconds. Defaults to config value.
            transport: Optional httpx transport (used by tests).
        """
        settings = get_settings()
        self._url = (url or settings.kv_rest_api_url).rstrip("/")
        self._token = token or settings.kv_rest_api_token
        self._timeout = timeout or settings.kv_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def connect(self) -> httpx.AsyncClient:
        """Create the HTTP client, or return the one already open."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._url,
                headers={"Authorization": f"Bearer {self._token}"},
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
            logger.info("KV client connected", url=self._url)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("KV client closed")

    async def _post(self, path: str, body: list[Any]) -> Any:
        client = await self.connect()

        try:
            response = await client.post(path, json=body)
        except httpx.HTTPError as e:
            raise KVConnectionError(f"KV request failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise KVCommandError(
                f"KV returned non-JSON response ({response.status_code})"
            ) from e

        if response.status_code >= 400:
            detail = data.get("error") if isinstance(data, dict) else None
            raise KVCommandError(f"KV error ({response.status_code}): {detail or data}")
        return data

    async def execute(self, *command: Any) -> Any:
        """Run a single command and return its ``result``."""
        data = await self._post("", [str(part) for part in command])
        if "error" in data:
            raise KVCommandError(data["error"])
        return data.get("result")

    async def pipeline(self, commands: list[list[Any]]) -> list[Any]:
        """Run several commands in one round trip.

        Raises:
            KVCommandError: If any command in the batch failed.
        """
        if not commands:
            return []
        body = [[str(part) for part in command] for command in commands]
        data = await self._post("/pipeline", body)
        results = []
        for item in data:
            if "error" in item:
                raise KVCommandError(item["error"])
            results.append(item.get("result"))
        return results

    async def get(self, key: str) -> str | None:
        return await self.execute("GET", key)

    async def smembers(self, key: str) -> list[str]:
        return list(await self.execute("SMEMBERS", key) or [])

    async def srem(self, key: str, *members: str) -> int:
        return int(await self.execute("SREM", key, *members) or 0)

"""Text-completion client for an OpenAI-compatible /completions endpoint."""

from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from cv_chat_api.config import get_settings

logger = structlog.get_logger()


class ProviderError(Exception):
    """Base exception for completion provider errors."""

    pass


class ProviderMisconfiguredError(ProviderError):
    """Raised when no API key is configured and mock mode is off."""

    pass


class ProviderAuthError(ProviderError):
    """Raised when authentication fails."""

    pass


class ProviderRateLimitError(ProviderError):
    """Raised when rate limit or quota is exceeded."""

    pass


@dataclass
class CompletionResult:
    """Response from the completion endpoint."""

    content: str
    tokens_used: int
    finish_reason: str | None = None


@dataclass
class CompletionUsage:
    """Token usage information."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CompletionClient:
    """Async client for OpenAI-style text completions."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the completion client.

        Args:
            api_key: Provider API key. Defaults to config value.
            base_url: API base URL. Defaults to config value.
            model: Model ID to use. Defaults to config value.
            timeout: Read timeout in seconds. Defaults to config value.
            transport: Optional httpx transport (used by tests).
        """
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.openai_api_key
        self._base_url = base_url or settings.openai_base_url
        self._model = model or settings.completion_model
        self._timeout = timeout or settings.completion_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.last_usage = CompletionUsage()

    async def __aenter__(self) -> "CompletionClient":
        """Enter async context."""
        await self.connect()
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        """Exit async context."""
        await self.close()

    @property
    def model(self) -> str:
        return self._model

    @property
    def is_configured(self) -> bool:
        """Check if the client is properly configured with an API key."""
        return bool(self._api_key and self._api_key.startswith("sk-"))

    @property
    def is_available(self) -> bool:
        """True when a request can be served, by the provider or by mock mode."""
        return self.is_configured or get_settings().mock_completions

    async def connect(self) -> None:
        """Create the HTTP client.

        Without an API key there is nothing to connect to; mock mode and the
        misconfiguration error are handled per call.
        """
        if not self.is_configured:
            logger.info("Completion client has no API key, skipping HTTP client creation")
            return
        self._open_client()

    def _open_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self._timeout, connect=10.0),
                transport=self._transport,
            )
            logger.info("Completion client connected", model=self._model)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Completion client closed")

    async def complete(
        self,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> CompletionResult:
        """Send a completion request.

        Args:
            prompt: Full instruction prompt.
            max_tokens: Maximum tokens in the reply. Defaults to config value.
            temperature: Sampling temperature. Defaults to config value.

        Returns:
            Completion text (stripped) and token usage.

        Raises:
            ProviderMisconfiguredError: If no API key and MOCK_COMPLETIONS=false.
            ProviderAuthError: On HTTP 401.
            ProviderRateLimitError: On HTTP 429.
            ProviderError: On any other HTTP or network failure.
        """
        settings = get_settings()

        if not self.is_configured:
            if settings.mock_completions:
                logger.info("MOCK_COMPLETIONS=true: Using mock completion")
                return self._mock_complete(prompt)
            error_msg = (
                "Completion provider API key not configured with MOCK_COMPLETIONS=false. "
                "Either set OPENAI_API_KEY or set MOCK_COMPLETIONS=true for testing."
            )
            logger.error(error_msg)
            raise ProviderMisconfiguredError(error_msg)

        client = self._open_client()

        payload = {
            "model": self._model,
            "prompt": prompt,
            "max_tokens": max_tokens if max_tokens is not None else settings.completion_max_tokens,
            "temperature": (
                temperature if temperature is not None else settings.completion_temperature
            ),
        }

        try:
            response = await client.post("/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            self._handle_http_error(e)
            raise  # _handle_http_error always raises
        except httpx.HTTPError as e:
            logger.error("Completion request failed", error=str(e))
            raise ProviderError(f"Request failed: {e}") from e

        try:
            choice = data["choices"][0]
            content = choice["text"].strip()
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ProviderError("Malformed completion response") from e

        usage = data.get("usage") or {}
        self.last_usage = CompletionUsage(
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            total_tokens=usage.get("total_tokens", 0),
        )
        finish_reason = choice.get("finish_reason")

        logger.info(
            "Completion received",
            tokens=self.last_usage.total_tokens,
            finish_reason=finish_reason,
        )

        return CompletionResult(
            content=content,
            tokens_used=self.last_usage.total_tokens,
            finish_reason=finish_reason,
        )

    def _handle_http_error(self, error: httpx.HTTPStatusError) -> None:
        """Translate HTTP errors from the provider."""
        status = error.response.status_code
        try:
            detail = error.response.json().get("error", {}).get("message", str(error))
        except Exception:
            detail = str(error)

        logger.error("Completion API error", status=status, detail=detail)

        if status == 401:
            raise ProviderAuthError(f"Authentication failed: {detail}")
        elif status == 429:
            raise ProviderRateLimitError(f"Rate limit exceeded: {detail}")
        else:
            raise ProviderError(f"API error ({status}): {detail}")

    def _mock_complete(self, prompt: str) -> CompletionResult:
        """Return a canned completion for testing."""
        question = prompt.rsplit("Pregunta actual:", 1)[-1].split("\n", 1)[0].strip()
        mock_content = (
            "Respuesta simulada (MOCK_COMPLETIONS=true) a: "
            f"'{question[:50]}'. Configura OPENAI_API_KEY para respuestas reales."
        )
        self.last_usage = CompletionUsage(total_tokens=len(mock_content.split()))
        return CompletionResult(
            content=mock_content,
            tokens_used=self.last_usage.total_tokens,
            finish_reason="stop",
        )

"""Reference text extraction from web pages and PDF uploads."""

import asyncio
import io
import re
from typing import Any

import httpx
import structlog
from bs4 import BeautifulSoup
from pypdf import PdfReader

from cv_chat_api.config import get_settings

logger = structlog.get_logger()

_WHITESPACE = re.compile(r"\s+")


class ExtractionError(Exception):
    """Base exception for content extraction errors."""

    pass


class FetchError(ExtractionError):
    """Raised when a URL cannot be retrieved."""

    pass


class ParseError(ExtractionError):
    """Raised when retrieved content cannot be turned into text."""

    pass


def html_to_text(html: str) -> str:
    """Return the visible text of the page body with whitespace collapsed."""
    soup = BeautifulSoup(html, "html.parser")
    root = soup.body or soup
    return _WHITESPACE.sub(" ", root.get_text(" ")).strip()


def pdf_to_text(data: bytes) -> str:
    """Concatenate the text of every page of a PDF document."""
    reader = PdfReader(io.BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n".join(page for page in pages if page).strip()


class ContentExtractor:
    """Turns a URL or a PDF payload into bounded plain text."""

    def __init__(
        self,
        max_chars: int | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self._max_chars = max_chars or settings.max_context_chars
        self._timeout = timeout or settings.fetch_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "ContentExtractor":
        await self.connect()
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        await self.close()

    async def connect(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _truncate(self, text: str) -> str:
        return text[: self._max_chars]

    async def extract_from_url(self, url: str) -> str:
        """Download a page and return its body text.

        Raises:
            FetchError: On network failure or a non-2xx status.
            ParseError: If the page cannot be parsed.
        """
        client = await self.connect()

        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Failed to fetch source page", url=url, error=str(e))
            raise FetchError(f"Could not fetch {url}: {e}") from e

        try:
            text = html_to_text(response.text)
        except Exception as e:
            logger.warning("Failed to parse source page", url=url, error=str(e))
            raise ParseError(f"Could not parse {url}: {e}") from e

        if not text:
            raise ParseError(f"No text found at {url}")

        logger.info("Extracted text from URL", url=url, chars=len(text))
        return self._truncate(text)

    async def extract_from_pdf(self, data: bytes) -> str:
        """Return the text of an uploaded PDF.

        Raises:
            ParseError: If the payload is not a readable PDF.
        """
        try:
            text = await asyncio.to_thread(pdf_to_text, data)
        except Exception as e:
            logger.warning("Failed to parse PDF", size=len(data), error=str(e))
            raise ParseError(f"Could not read PDF: {e}") from e

        if not text:
            raise ParseError("PDF contains no extractable text")

        logger.info("Extracted text from PDF", size=len(data), chars=len(text))
        return self._truncate(text)

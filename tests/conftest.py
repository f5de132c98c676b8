"""Pytest configuration and fixtures."""

import os
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from cv_chat_api.config import Settings
from cv_chat_api.extractor import FetchError, ParseError
from cv_chat_api.kv_client import KVConnectionError

# Set test environment variables before importing app modules
os.environ.setdefault("OPENAI_API_KEY", "")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("KV_REST_API_URL", "")
os.environ.setdefault("KV_REST_API_TOKEN", "")
os.environ.setdefault("UPSTASH_REDIS_REST_URL", "")
os.environ.setdefault("UPSTASH_REDIS_REST_TOKEN", "")


@pytest.fixture(autouse=True)
def reset_caches() -> Iterator[None]:
    """Reset cached settings before each test."""
    from cv_chat_api.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def mock_settings(monkeypatch: pytest.MonkeyPatch) -> Callable[..., Settings]:
    """Fixture to set test settings."""

    def _mock_settings(**kwargs: str) -> Settings:
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        from cv_chat_api.config import get_settings

        get_settings.cache_clear()
        return get_settings()

    return _mock_settings


class FakeExtractor:
    """Content extractor that records calls instead of doing I/O."""

    def __init__(self, pages: dict[str, str] | None = None, pdf_text: str = "PDF CV text"):
        self.pages = pages or {}
        self.pdf_text = pdf_text
        self.url_calls: list[str] = []
        self.pdf_calls = 0

    async def extract_from_url(self, url: str) -> str:
        self.url_calls.append(url)
        if url not in self.pages:
            raise FetchError(f"Could not fetch {url}")
        return self.pages[url]

    async def extract_from_pdf(self, data: bytes) -> str:
        self.pdf_calls += 1
        if not data.startswith(b"%PDF"):
            raise ParseError("Could not read PDF")
        return self.pdf_text


class FakeKV:
    """In-memory stand-in for KVClient with a switchable outage."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.down = False
        self.pipelines: list[list[list[Any]]] = []
        self.closed = False

    def _check(self) -> None:
        if self.down:
            raise KVConnectionError("KV unreachable")

    async def _run(self, command: list[Any]) -> Any:
        name, *args = command
        if name == "GET":
            return self.values.get(args[0])
        if name == "SET":
            self.values[args[0]] = args[1]
            return "OK"
        if name == "DEL":
            return sum(1 for key in args if self.values.pop(key, None) is not None)
        if name == "SADD":
            members = self.sets.setdefault(args[0], set())
            before = len(members)
            members.update(args[1:])
            return len(members) - before
        if name == "SREM":
            members = self.sets.setdefault(args[0], set())
            removed = [m for m in args[1:] if m in members]
            members.difference_update(removed)
            return len(removed)
        if name == "SMEMBERS":
            return sorted(self.sets.get(args[0], set()))
        raise AssertionError(f"unexpected command {name}")

    async def pipeline(self, commands: list[list[Any]]) -> list[Any]:
        self._check()
        self.pipelines.append(commands)
        return [await self._run(command) for command in commands]

    async def get(self, key: str) -> str | None:
        self._check()
        return await self._run(["GET", key])

    async def smembers(self, key: str) -> list[str]:
        self._check()
        return await self._run(["SMEMBERS", key])

    async def srem(self, key: str, *members: str) -> int:
        self._check()
        return await self._run(["SREM", key, *members])

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_extractor() -> FakeExtractor:
    return FakeExtractor(
        pages={
            "https://juanulisespv.github.io/cv-es/": "Uli trabaja en Vitoria como programador full stack.",
            "https://example.com/cv": "Ejemplo de CV con experiencia en marketing.",
        }
    )


@pytest.fixture
def fake_kv() -> FakeKV:
    return FakeKV()

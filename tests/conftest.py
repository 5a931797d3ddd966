from __future__ import annotations

from pathlib import Path

import pytest

from assetmigrate.canonical import AssetHost
from assetmigrate.errors import TransferError

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class FakeResponse:
    def __init__(self, status: int = 200, body: bytes = b"", content_type: str | None = None) -> None:
        self.status = status
        self._body = body
        self.headers = {"Content-Type": content_type} if content_type else {}

    async def read(self) -> bytes:
        return self._body

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc) -> bool:
        return False


class FakeSession:
    """Serves queued responses per URL; the last queued item repeats."""

    def __init__(self, routes: dict) -> None:
        self.routes = {url: list(items) for url, items in routes.items()}
        self.calls: list[str] = []

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, *exc) -> bool:
        return False

    def get(self, url: str):
        self.calls.append(url)
        queue = self.routes.get(url)
        if not queue:
            return FakeResponse(404)
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item


class MemoryStore:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.objects: dict[str, dict] = {}
        self.failing = failing or set()

    def put_object(self, key: str, body: bytes, content_type: str, cache_control: str) -> None:
        if key in self.failing:
            raise TransferError(f"put_object failed for {key}", reason="put-failed")
        self.objects[key] = {"body": body, "content_type": content_type, "cache_control": cache_control}


@pytest.fixture
def asset_host() -> AssetHost:
    return AssetHost(host="cdn.example", account="acct")


@pytest.fixture
def write_file():
    def _write(root: Path, rel: str, content: str | bytes) -> Path:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture
def memory_store():
    return MemoryStore


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES

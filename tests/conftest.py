"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It sets the TESTING environment variable so no .env file is loaded, and
selects the in-memory store so no test needs a Redis server.
"""

import os

# CRITICAL: Set this before any imports that might load settings
# This prevents the .env file from being loaded in tests
os.environ["TESTING"] = "true"

# Set default env vars that all tests might need
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("ORIGIN_BASE_URL", "http://origin.test")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from typing import Any  # noqa: E402

import pytest  # noqa: E402

from kvguard.adapters.origin.base import AbstractOriginClient  # noqa: E402
from kvguard.adapters.store.in_memory import InMemorySharedStore  # noqa: E402
from kvguard.core.errors import OriginAppError  # noqa: E402


class FakeClock:
    """Deterministic clock used for store expiries and bucket refills."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FakeOrigin(AbstractOriginClient):
    """Origin serving an in-memory document map and counting fetches."""

    def __init__(self, documents: dict[str, Any] | None = None) -> None:
        self.documents = documents or {}
        self.calls: list[str] = []
        self.closed = False

    async def fetch_json(self, path: str) -> Any:
        self.calls.append(path)
        if path not in self.documents:
            raise OriginAppError(
                code="origin_not_found",
                message="Resource not found at origin",
                details={"operation": "fetch_json", "url": f"/{path}", "http_status": 404},
            )
        return self.documents[path]

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemorySharedStore:
    return InMemorySharedStore()


@pytest.fixture
def clocked_store(clock: FakeClock) -> InMemorySharedStore:
    return InMemorySharedStore(clock=clock)


@pytest.fixture
def origin() -> FakeOrigin:
    return FakeOrigin({"posts/42": {"id": 42, "title": "Hello"}})

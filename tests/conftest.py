"""
tests/conftest.py -- Shared fixtures for Portcullis tests.

This module provides:
  - make_store(): an isolated named in-memory IdentityStore
  - RecordingMailer: a real Mailer (unconfigured, so it only logs) that also
    records every link it was asked to send
  - _patch_lifespan(): wires a test store + mailer into app.state through
    api.main.wire_state, bypassing the real database
  - client: TestClient with follow_redirects=False for route tests
  - frozen_time: controls the clock of limits' in-memory rate-limit storage

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY instead of raising ValueError.
"""

from __future__ import annotations

import asyncio
import itertools
import os
import time
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_state
from auth.store import IdentityStore
from core.breaker import CircuitBreaker
from core.config import get_settings
from core.mailer import Mailer

_db_counter = itertools.count()


def make_store(prefix: str = "test") -> IdentityStore:
    """Fresh named shared-memory store; a new name per call keeps tests isolated."""
    name = f"{prefix}_{next(_db_counter)}"
    return IdentityStore(f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")


class RecordingMailer(Mailer):
    """Mailer with no API key (it logs instead of posting) that remembers what it sent."""

    def __init__(self) -> None:
        super().__init__("", "noreply@example.com", CircuitBreaker("email", threshold=3, timeout=30.0))
        self.sent: list[tuple[str, str, str]] = []

    def send_with_retry(self, to: str, url: str, kind: str) -> None:
        self.sent.append((to, url, kind))
        super().send_with_retry(to, url, kind)

    def last_link(self, kind: str) -> dict[str, str]:
        """Query parameters of the most recent link of `kind`."""
        url = next(url for _, url, sent_kind in reversed(self.sent) if sent_kind == kind)
        return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


def _patch_lifespan(store: IdentityStore, mailer: Mailer):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine so shutdown can .cancel() a
    real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_state(app, get_settings(), store, mailer=mailer)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = make_store("unit")
    yield s
    s.close()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def client(mailer) -> Generator[TestClient, None, None]:
    """TestClient on the real app with an isolated store.

    follow_redirects=False: tests assert on redirect locations, which are
    invisible once the client follows them.
    """
    s = make_store("api")
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(s, mailer)
    with TestClient(app, follow_redirects=False) as c:
        yield c
    s.close()


class FrozenTime:
    """Stands in for the time module inside limits' memory storage; only time() is frozen."""

    def __init__(self, start: float) -> None:
        self.start = start
        self.now = start

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __getattr__(self, name):
        return getattr(time, name)


@pytest.fixture
def frozen_time() -> Generator[FrozenTime, None, None]:
    """Freeze the clock rate-limit windows are measured against."""
    fake = FrozenTime(time.time())
    with patch("limits.storage.memory.time", fake):
        yield fake

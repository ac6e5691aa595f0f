"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import sys
import threading
import time
from pathlib import Path
from typing import List

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_relay.models import MulticastResult, PushNotification, TokenResult  # noqa: E402


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for stored messages / users during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in ["CHAT_RELAY_CONFIG", "FIREBASE_SERVICE_ACCOUNT"]:
        monkeypatch.delenv(var, raising=False)
    for var in [k for k in os.environ if k.startswith("CHAT_RELAY__")]:
        monkeypatch.delenv(var, raising=False)
    yield


class FakeTransport:
    """Records frames sent to one session; can be told to fail."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: List[str] = []
        self.fail = fail

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(data)


class FakePushProvider:
    """Push provider double; ``errors`` maps token -> error code."""

    def __init__(self, errors=None, raise_exc: Exception | None = None, delay: float = 0.0) -> None:
        self.errors = dict(errors or {})
        self.raise_exc = raise_exc
        self.delay = delay
        self.sent: List[PushNotification] = []
        self._lock = threading.Lock()

    def send_multicast(self, notification: PushNotification) -> MulticastResult:
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.sent.append(notification)
        if self.raise_exc is not None:
            raise self.raise_exc
        results = [
            TokenResult(success=t not in self.errors, error_code=self.errors.get(t))
            for t in notification.tokens
        ]
        return MulticastResult(failure_count=sum(not r.success for r in results), results=results)


@pytest.fixture
def fake_provider() -> FakePushProvider:
    return FakePushProvider()


@pytest.fixture
def make_provider():
    return FakePushProvider


@pytest.fixture
def make_transport():
    return FakeTransport

# tests/conftest.py
"""Pytest configuration and fixtures"""
import asyncio
import sys
from collections import deque
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from consult_dispatch.core.dispatch import DispatchEngine, SendResult  # noqa: E402
from consult_dispatch.infra.metrics import get_metrics_collector  # noqa: E402
from consult_dispatch.infra.responder_directory import (  # noqa: E402
    InMemoryResponderDirectory,
    Responder,
)


class RecordingSender:
    """
    NotificationSender fake.

    Records every send.  ``results`` is consumed in order (a SendResult
    or an exception to raise); when it runs dry every send succeeds.
    When ``gate`` is set, sends block until it is released.
    """

    name = "recording"

    def __init__(self, results=None):
        self.calls: list[tuple[str, dict]] = []
        self.results = deque(results or [])
        self.default = SendResult.success()
        self.gate: asyncio.Event | None = None

    async def send(self, address, payload):
        self.calls.append((address, dict(payload)))
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.popleft() if self.results else self.default
        if isinstance(result, BaseException):
            raise result
        return result

    @property
    def invited(self) -> list[str]:
        return [payload["candidateId"] for _, payload in self.calls]


class FixedCredentialIssuer:
    """Deterministic CredentialIssuer fake"""

    def __init__(self):
        self.issued: list[str] = []

    async def issue_credential(self, session_id):
        self.issued.append(session_id)
        return f"cred-{session_id}"


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield


@pytest.fixture
def responders():
    return [
        Responder(id="doc-a", name="Dr. Adler", language="en", push_token="tok-a"),
        Responder(id="doc-b", name="Dr. Brown", language="en", push_token="tok-b"),
        Responder(id="doc-c", name="Dr. Cohen", language="EN", push_token="tok-c"),
        Responder(id="doc-h", name="Dr. Halevi", language="he", push_token="tok-h"),
    ]


@pytest.fixture
def directory(responders):
    return InMemoryResponderDirectory(responders)


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def credentials():
    return FixedCredentialIssuer()


@pytest.fixture
def make_engine(directory, sender, credentials):
    """Engine factory; long default timeout so watchdogs never fire on their own."""
    def _make(**kwargs):
        kwargs.setdefault("response_timeout", 30.0)
        kwargs.setdefault("max_extra_cycles", 1)
        return DispatchEngine(directory, sender, credentials, **kwargs)
    return _make

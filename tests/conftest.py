from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import List, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakeTransport:
    """In-memory stand-in for a websocket transport."""

    def __init__(self, *, fail: bool = False) -> None:
        self.sent: List[str] = []
        self.closed: List[Tuple[int, str]] = []
        self.fail = fail
        self.writable = True

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed.append((code, reason))
        self.writable = False

    def messages(self) -> List[dict]:
        return [json.loads(item) for item in self.sent]

    def of_type(self, msg_type: str) -> List[dict]:
        return [item for item in self.messages() if item.get("type") == msg_type]


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_transport():
    def _make(**kwargs) -> FakeTransport:
        return FakeTransport(**kwargs)

    return _make

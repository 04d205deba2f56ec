from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Tuple

import pytest

from roomrelay.core.router import Router
from roomrelay.core.sessions import Session
from roomrelay.core.store import MemoryStore

FIXED_TS = 1700000000000


class RecordingChannel:
    """Stands in for a client socket; keeps every frame sent to it."""

    def __init__(self) -> None:
        self.frames: List[Dict[str, Any]] = []

    def send(self, frame: Dict[str, Any]) -> None:
        self.frames.append(frame)

    def types(self) -> List[str]:
        return [f["type"] for f in self.frames]

    def of_type(self, type_: str) -> List[Dict[str, Any]]:
        return [f for f in self.frames if f["type"] == type_]

    def clear(self) -> None:
        self.frames.clear()


class BrokenChannel(RecordingChannel):
    def send(self, frame: Dict[str, Any]) -> None:
        raise ConnectionResetError("peer went away")


def raw(**event: Any) -> str:
    return json.dumps(event)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def router(store):
    return Router(store, now=lambda: FIXED_TS)


@pytest.fixture
def connect(router) -> Callable[..., Tuple[Session, RecordingChannel]]:
    def _connect(channel: RecordingChannel | None = None) -> Tuple[Session, RecordingChannel]:
        channel = channel or RecordingChannel()
        return router.connect(channel), channel
    return _connect


@pytest.fixture
def login(router, connect):
    """Connect + log in; returns (session, channel) with the channel cleared."""
    async def _login(name: str) -> Tuple[Session, RecordingChannel]:
        session, channel = connect()
        await router.handle(session, raw(type="login", username=name))
        channel.clear()
        return session, channel
    return _login

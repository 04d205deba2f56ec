from __future__ import annotations

from typing import Any, Dict

from . import proto
from .router import RelayState
from .store import DMS, ROOMS, MessageStore

# Read-only views backing the HTTP endpoints. Nothing here mutates state.


def list_rooms(state: RelayState) -> Dict[str, Any]:
    return {"rooms": state.rooms.names()}


def list_users(state: RelayState) -> Dict[str, Any]:
    return {"users": state.sessions.snapshot()}


async def room_history(store: MessageStore, room: str) -> Dict[str, Any]:
    return {"room": room, "messages": await store.read(ROOMS, room)}


async def dm_history(store: MessageStore, user_a: str, user_b: str) -> Dict[str, Any]:
    key = proto.dm_key(user_a, user_b)
    return {"key": key, "messages": await store.read(DMS, key)}

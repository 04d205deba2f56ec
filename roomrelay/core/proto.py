from __future__ import annotations

import time
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator


# ---------------------------------------------------------------------------
# Inbound events (client -> server)
# ---------------------------------------------------------------------------

def _as_text(value: Any) -> str:
    # falsy scalars count as absent
    if not isinstance(value, str) and not value:
        return ""
    if isinstance(value, (dict, list)):
        raise ValueError("expected a scalar")
    if isinstance(value, bool):
        return "true"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class _Event(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Login(_Event):
    type: Literal["login"]
    username: str = ""

    @field_validator("username", mode="before")
    @classmethod
    def coerce_username(cls, value: Any) -> str:
        return _as_text(value)


class CreateRoom(_Event):
    type: Literal["create_room"]
    room: str = ""

    @field_validator("room", mode="before")
    @classmethod
    def coerce_room(cls, value: Any) -> str:
        return _as_text(value)


class JoinRoom(_Event):
    type: Literal["join_room"]
    room: str = ""

    @field_validator("room", mode="before")
    @classmethod
    def coerce_room(cls, value: Any) -> str:
        return _as_text(value)


class LeaveRoom(_Event):
    type: Literal["leave_room"]


class RoomMessage(_Event):
    """A room post; ``room`` falls back to the sender's current room."""

    type: Literal["message"]
    room: Optional[str] = None
    text: str = ""

    @field_validator("room", mode="before")
    @classmethod
    def coerce_room(cls, value: Any) -> Optional[str]:
        return _as_text(value) or None

    @field_validator("text", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return _as_text(value)


class DirectMessage(_Event):
    type: Literal["dm"]
    to: str = ""
    text: str = ""

    @field_validator("to", "text", mode="before")
    @classmethod
    def coerce_fields(cls, value: Any) -> str:
        return _as_text(value)


class Typing(_Event):
    type: Literal["typing"]
    room: Optional[str] = None
    is_typing: bool = Field(default=False, alias="isTyping")

    @field_validator("room", mode="before")
    @classmethod
    def coerce_room(cls, value: Any) -> Optional[str]:
        return _as_text(value) or None

    @field_validator("is_typing", mode="before")
    @classmethod
    def coerce_flag(cls, value: Any) -> bool:
        return bool(value)


class HistoryRequest(_Event):
    type: Literal["history"]
    room: Optional[str] = None

    @field_validator("room", mode="before")
    @classmethod
    def coerce_room(cls, value: Any) -> Optional[str]:
        return _as_text(value) or None


InboundEvent = Annotated[
    Union[Login, CreateRoom, JoinRoom, LeaveRoom, RoomMessage, DirectMessage, Typing, HistoryRequest],
    Field(discriminator="type"),
]

_inbound = TypeAdapter(InboundEvent)


class MalformedEvent(ValueError):
    """Raised for payloads that are not a known, well-formed client event."""


def parse_event(raw: Union[str, bytes]) -> InboundEvent:
    """Decode one client frame. Raises MalformedEvent on anything unusable."""

    try:
        return _inbound.validate_json(raw)
    except ValidationError as exc:
        raise MalformedEvent(str(exc)) from exc


# ---------------------------------------------------------------------------
# Error strings sent back in ``error`` frames
# ---------------------------------------------------------------------------

E_LOGIN_REQUIRED = "Please login first."
E_NOT_IN_ROOM = "Not in a room"
E_ROOM_REQUIRED = "room required"
E_RECIPIENT_REQUIRED = "recipient required"

WELCOME_TEXT = "Welcome! Please send {type:'login', username}"


# ---------------------------------------------------------------------------
# Outbound frames (server -> client)
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def welcome() -> Dict[str, Any]:
    return {"type": "welcome", "message": WELCOME_TEXT}


def login_success(username: str, users: List[dict], rooms: List[str], room: str) -> Dict[str, Any]:
    return {"type": "login_success", "username": username, "users": users, "rooms": rooms, "room": room}


def history(room: str, messages: List[dict]) -> Dict[str, Any]:
    return {"type": "history", "room": room, "messages": messages}


def presence(users: List[dict]) -> Dict[str, Any]:
    return {"type": "presence", "users": users}


def room_list(rooms: List[str]) -> Dict[str, Any]:
    return {"type": "room_list", "rooms": rooms}


def notification(text: str) -> Dict[str, Any]:
    return {"type": "notification", "text": text}


def room_message(room: str, username: str, text: str, ts: int) -> Dict[str, Any]:
    return {"type": "room_message", "room": room, "username": username, "text": text, "ts": ts}


def dm_message(from_: str, to: str, text: str, ts: int) -> Dict[str, Any]:
    return {"type": "dm_message", "from": from_, "to": to, "text": text, "ts": ts}


def typing(room: str, username: str, is_typing: bool) -> Dict[str, Any]:
    return {"type": "typing", "room": room, "username": username, "isTyping": is_typing}


def error(message: str) -> Dict[str, Any]:
    return {"type": "error", "message": message}


# ---------------------------------------------------------------------------
# Store keys
# ---------------------------------------------------------------------------

def dm_key(user_a: str, user_b: str) -> str:
    """Canonical key shared by both directions of a conversation."""

    return "|".join(sorted((user_a, user_b)))


__all__ = [
    "InboundEvent",
    "Login",
    "CreateRoom",
    "JoinRoom",
    "LeaveRoom",
    "RoomMessage",
    "DirectMessage",
    "Typing",
    "HistoryRequest",
    "MalformedEvent",
    "parse_event",
    "E_LOGIN_REQUIRED",
    "E_NOT_IN_ROOM",
    "E_ROOM_REQUIRED",
    "E_RECIPIENT_REQUIRED",
    "now_ms",
    "welcome",
    "login_success",
    "history",
    "presence",
    "room_list",
    "notification",
    "room_message",
    "dm_message",
    "typing",
    "error",
    "dm_key",
]

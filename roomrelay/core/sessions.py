from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol

log = logging.getLogger("roomrelay.sessions")


class Channel(Protocol):
    """Outbound half of a client connection. ``send`` must not block."""

    def send(self, frame: Dict[str, Any]) -> None: ...


@dataclass(eq=False)
class Session:
    channel: Channel
    id: int
    username: Optional[str] = None
    room: Optional[str] = None
    typing: bool = False

    @property
    def identified(self) -> bool:
        return bool(self.username)

    @property
    def label(self) -> str:
        return self.username or f"User{self.id}"


@dataclass
class SessionRegistry:
    """Owns every live session, in connect order, plus a display-name index.

    Display names are not unique. ``find_by_name`` returns the earliest
    connected session carrying the name.
    """

    _sessions: Dict[int, Session] = field(default_factory=dict)
    _by_name: Dict[str, List[Session]] = field(default_factory=dict)
    _ids: Iterator[int] = field(default_factory=lambda: itertools.count(1))

    def register(self, channel: Channel) -> Session:
        session = Session(channel=channel, id=next(self._ids))
        self._sessions[session.id] = session
        return session

    def set_identity(self, session: Session, name: Optional[str]) -> str:
        username = (name or "").strip() or f"User{session.id}"
        if session.username != username:
            self._unindex(session)
            session.username = username
            bucket = self._by_name.setdefault(username, [])
            bucket.append(session)
            bucket.sort(key=lambda s: s.id)
        return username

    def remove(self, session: Session) -> None:
        self._unindex(session)
        self._sessions.pop(session.id, None)

    def find_by_name(self, name: str) -> Optional[Session]:
        bucket = self._by_name.get(name)
        return bucket[0] if bucket else None

    def snapshot(self) -> List[dict]:
        return [
            {"username": s.username, "room": s.room}
            for s in self._sessions.values()
            if s.identified
        ]

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def __contains__(self, session: object) -> bool:
        return isinstance(session, Session) and self._sessions.get(session.id) is session

    def __len__(self) -> int:
        return len(self._sessions)

    def _unindex(self, session: Session) -> None:
        if not session.username:
            return
        bucket = self._by_name.get(session.username)
        if not bucket:
            return
        try:
            bucket.remove(session)
        except ValueError:
            log.debug("session %d missing from name index", session.id)
        if not bucket:
            del self._by_name[session.username]

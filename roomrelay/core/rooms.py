from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set

from .sessions import Session

log = logging.getLogger("roomrelay.rooms")


class RoomDirectory:
    """Room name -> sessions currently joined.

    Rooms are never deleted once created. Every mutation keeps
    ``session.room`` in step with the membership sets; a session is a member
    of at most one room.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[Session]] = {}

    def ensure(self, room: str) -> bool:
        """Create ``room`` if unknown. Returns True when it was created."""
        if room in self._rooms:
            return False
        self._rooms[room] = set()
        log.info("Room created: %s", room)
        return True

    def join(self, room: str, session: Session) -> Optional[str]:
        """Move ``session`` into ``room``.

        Returns the room it had to leave on the way, or None.
        """
        self.ensure(room)
        previous = session.room
        if previous == room and session in self._rooms[room]:
            return None
        if previous is not None and previous != room:
            self.leave(previous, session)
        else:
            previous = None
        self._rooms[room].add(session)
        session.room = room
        return previous

    def leave(self, room: str, session: Session) -> bool:
        members = self._rooms.get(room)
        removed = members is not None and session in members
        if removed:
            members.discard(session)
        if session.room == room:
            session.room = None
        return removed

    def evict(self, session: Session) -> Optional[str]:
        """Drop ``session`` from whatever room it is in; returns that room."""
        room = session.room
        if room is not None:
            self.leave(room, session)
        return room

    def members(self, room: Optional[str]) -> List[Session]:
        if room is None:
            return []
        return sorted(self._rooms.get(room, ()), key=lambda s: s.id)

    def names(self) -> List[str]:
        return list(self._rooms)

    def __contains__(self, room: object) -> bool:
        return room in self._rooms

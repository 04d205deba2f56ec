from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from . import proto
from .rooms import RoomDirectory
from .sessions import Session, SessionRegistry

"""
Presence & fan-out
------------------
Pushes state changes to connected clients:
  • presence / room_list go to every registered channel, logged in or not
  • notification / typing / room_message go to one room's members
Room membership is read at send time, so a broadcast always reflects the
directory as it is after the mutation that triggered it.

A failing channel is logged and skipped; it never stops delivery to the
remaining recipients.
"""

log = logging.getLogger("roomrelay.presence")


def safe_send(session: Session, frame: Dict[str, Any]) -> bool:
    try:
        session.channel.send(frame)
    except Exception:
        log.debug("Send of %s to session %d failed", frame.get("type"), session.id, exc_info=True)
        return False
    return True


class PresenceNotifier:
    def __init__(self, sessions: SessionRegistry, rooms: RoomDirectory) -> None:
        self.sessions = sessions
        self.rooms = rooms

    def fanout(self, targets: Iterable[Session], frame: Dict[str, Any]) -> int:
        return sum(1 for s in targets if safe_send(s, frame))

    def broadcast(self, frame: Dict[str, Any]) -> int:
        return self.fanout(self.sessions.sessions(), frame)

    def broadcast_presence(self) -> int:
        return self.broadcast(proto.presence(self.sessions.snapshot()))

    def broadcast_rooms(self) -> int:
        return self.broadcast(proto.room_list(self.rooms.names()))

    def room_cast(self, room: Optional[str], frame: Dict[str, Any], *, exclude: Optional[Session] = None) -> int:
        return self.fanout((s for s in self.rooms.members(room) if s is not exclude), frame)

    def notify_room(self, room: Optional[str], text: str) -> int:
        return self.room_cast(room, proto.notification(text))

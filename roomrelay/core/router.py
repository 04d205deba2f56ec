from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

from . import proto
from .presence import PresenceNotifier, safe_send
from .rooms import RoomDirectory
from .sessions import Channel, Session, SessionRegistry
from .store import DEFAULT_CAP, DMS, ROOMS, MessageStore, StoreError

log = logging.getLogger("roomrelay.router")

DEFAULT_ROOM = "lobby"
HISTORY_LIMIT = 200

NowFn = Callable[[], int]


@dataclass
class RelayState:
    """Live sessions and room membership. Only the event worker mutates it."""

    sessions: SessionRegistry = field(default_factory=SessionRegistry)
    rooms: RoomDirectory = field(default_factory=RoomDirectory)


class Router:
    """Applies client events to the relay state and fans out the results.

    Events must be fed one at a time (see ``server.runtime``); the store is
    read-modify-write and the handlers assume nothing else runs between
    their awaits.
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        state: Optional[RelayState] = None,
        default_room: str = DEFAULT_ROOM,
        history_limit: int = HISTORY_LIMIT,
        max_messages: int = DEFAULT_CAP,
        now: NowFn = proto.now_ms,
    ) -> None:
        self.store = store
        self.state = state or RelayState()
        self.default_room = default_room
        self.history_limit = history_limit
        self.max_messages = max_messages
        self.now = now
        self.presence = PresenceNotifier(self.state.sessions, self.state.rooms)

    @property
    def sessions(self) -> SessionRegistry:
        return self.state.sessions

    @property
    def rooms(self) -> RoomDirectory:
        return self.state.rooms

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, channel: Channel) -> Session:
        session = self.sessions.register(channel)
        log.info("New connection %d", session.id)
        safe_send(session, proto.welcome())
        return session

    def disconnect(self, session: Session) -> None:
        if session not in self.sessions:
            return
        name = session.label
        room = self.rooms.evict(session)
        self.sessions.remove(session)
        self.presence.broadcast_presence()
        if room is not None:
            self.presence.notify_room(room, f"{name} disconnected")
        log.info("Connection closed %s", name)

    async def handle(self, session: Session, raw: Union[str, bytes]) -> None:
        """Parse and dispatch one raw client frame."""
        if session not in self.sessions:
            return
        try:
            event = proto.parse_event(raw)
        except proto.MalformedEvent:
            log.debug("Dropped malformed frame from session %d", session.id)
            return
        await self.dispatch(session, event)

    async def dispatch(self, session: Session, event: proto.InboundEvent) -> None:
        type_ = event.type
        if type_ == "login":
            await self._handle_login(session, event)
            return
        if not session.identified:
            self._reply_error(session, proto.E_LOGIN_REQUIRED)
            return

        if type_ == "create_room":
            await self._handle_create_room(session, event)
        elif type_ == "join_room":
            await self._handle_join_room(session, event)
        elif type_ == "leave_room":
            self._handle_leave_room(session)
        elif type_ == "message":
            await self._handle_message(session, event)
        elif type_ == "dm":
            await self._handle_dm(session, event)
        elif type_ == "typing":
            self._handle_typing(session, event)
        elif type_ == "history":
            await self._handle_history(session, event)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_login(self, session: Session, event: proto.Login) -> None:
        username = self.sessions.set_identity(session, event.username)
        room = self.default_room

        previous = self.rooms.join(room, session)
        if previous is not None:
            self.presence.notify_room(previous, f"{username} left {previous}")
        await self._ensure_room(room)

        safe_send(
            session,
            proto.login_success(username, self.sessions.snapshot(), self.rooms.names(), room),
        )
        safe_send(session, proto.history(room, await self._read_history(room, self.history_limit)))

        self.presence.broadcast_presence()
        self.presence.notify_room(room, f"{username} joined {room}")
        log.info("Session %d logged in as %s", session.id, username)

    async def _handle_create_room(self, session: Session, event: proto.CreateRoom) -> None:
        room = event.room.strip()
        if not room:
            self._reply_error(session, proto.E_ROOM_REQUIRED)
            return
        self.rooms.ensure(room)
        await self._ensure_room(room)
        self.presence.broadcast_rooms()

    async def _handle_join_room(self, session: Session, event: proto.JoinRoom) -> None:
        room = event.room.strip()
        if not room:
            self._reply_error(session, proto.E_ROOM_REQUIRED)
            return
        if session.room == room:
            safe_send(session, proto.history(room, await self._read_history(room, self.history_limit)))
            return

        previous = self.rooms.join(room, session)
        if previous is not None:
            self.presence.notify_room(previous, f"{session.username} left {previous}")
        await self._ensure_room(room)

        safe_send(session, proto.history(room, await self._read_history(room, self.history_limit)))
        self.presence.notify_room(room, f"{session.username} joined {room}")
        self.presence.broadcast_rooms()
        self.presence.broadcast_presence()

    def _handle_leave_room(self, session: Session) -> None:
        room = self.rooms.evict(session)
        if room is not None:
            self.presence.notify_room(room, f"{session.username} left {room}")
        self.presence.broadcast_presence()

    async def _handle_message(self, session: Session, event: proto.RoomMessage) -> None:
        room = event.room or session.room
        if not room:
            self._reply_error(session, proto.E_NOT_IN_ROOM)
            return
        ts = self.now()
        entry = {"username": session.username, "text": event.text, "ts": ts}
        await self._append(ROOMS, room, entry)
        self.presence.room_cast(room, proto.room_message(room, session.username, event.text, ts))

    async def _handle_dm(self, session: Session, event: proto.DirectMessage) -> None:
        to = event.to.strip()
        if not to:
            self._reply_error(session, proto.E_RECIPIENT_REQUIRED)
            return
        target = self.sessions.find_by_name(to)
        ts = self.now()
        entry = {"from": session.username, "to": to, "text": event.text, "ts": ts}
        await self._append(DMS, proto.dm_key(session.username, to), entry)

        frame = proto.dm_message(session.username, to, event.text, ts)
        if target is not None and target is not session:
            safe_send(target, frame)
        safe_send(session, frame)

    def _handle_typing(self, session: Session, event: proto.Typing) -> None:
        session.typing = event.is_typing
        if session.room is None:
            return
        self.presence.room_cast(
            session.room,
            proto.typing(session.room, session.username, event.is_typing),
            exclude=session,
        )

    async def _handle_history(self, session: Session, event: proto.HistoryRequest) -> None:
        if not event.room:
            self._reply_error(session, proto.E_ROOM_REQUIRED)
            return
        safe_send(session, proto.history(event.room, await self._read_history(event.room)))

    # ------------------------------------------------------------------
    # Store access; failures are logged and the in-memory effect stands
    # ------------------------------------------------------------------

    async def _ensure_room(self, room: str) -> None:
        try:
            await self.store.ensure(ROOMS, room)
        except StoreError:
            log.exception("Could not persist room %s", room)

    async def _append(self, bucket: str, key: str, entry: dict) -> None:
        try:
            await self.store.append(bucket, key, entry, self.max_messages)
        except StoreError:
            log.exception("Could not persist %s message under %s", bucket, key)

    async def _read_history(self, room: str, limit: Optional[int] = None) -> List[dict]:
        try:
            return await self.store.read(ROOMS, room, limit)
        except StoreError:
            log.exception("Could not read history for %s", room)
            return []

    @staticmethod
    def _reply_error(session: Session, message: str) -> None:
        safe_send(session, proto.error(message))


__all__ = ["RelayState", "Router", "DEFAULT_ROOM", "HISTORY_LIMIT"]

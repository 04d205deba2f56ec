from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Dict, Optional, Tuple, Union
from urllib.parse import unquote, urlsplit

import orjson
import websockets
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.datastructures import Headers
from websockets.http11 import Request, Response

from roomrelay.core import queries
from roomrelay.core.router import DEFAULT_ROOM, HISTORY_LIMIT, RelayState, Router
from roomrelay.core.sessions import Session
from roomrelay.core.store import DEFAULT_CAP, MessageStore, StoreError, open_store

log = logging.getLogger("roomrelay.server.runtime")

OUTBOX_LIMIT = 256

Event = Tuple[str, "Connection", Optional[Union[str, bytes]]]


@dataclass(slots=True, eq=False)
class Connection:
    """Outbound side of one client socket.

    ``send`` only enqueues; a per-connection writer task drains the queue so
    a slow peer never holds up the event worker. Once OUTBOX_LIMIT frames
    are waiting, further frames are dropped.
    """

    websocket: ServerConnection
    session: Optional[Session] = None
    outbox: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=OUTBOX_LIMIT))
    writer: Optional[asyncio.Task] = None
    closed: bool = False

    def start(self) -> None:
        self.writer = asyncio.create_task(self._drain(), name="writer")

    def send(self, frame: Dict[str, Any]) -> None:
        if self.closed:
            return
        try:
            self.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            log.debug("Outbox full; dropped %s frame", frame.get("type"))

    async def stop(self) -> None:
        self.closed = True
        if self.writer is not None:
            self.writer.cancel()
            await asyncio.gather(self.writer, return_exceptions=True)
            self.writer = None

    async def _drain(self) -> None:
        while True:
            frame = await self.outbox.get()
            try:
                await self.websocket.send(json.dumps(frame, separators=(",", ":")))
            except websockets.ConnectionClosed:
                self.closed = True
                return
            except Exception:
                log.debug("Dropped %s frame", frame.get("type"), exc_info=True)


class ServerRuntime:
    """WebSocket relay plus the read-only HTTP views on the same port."""

    def __init__(self, config: Dict[str, Any], store: Optional[MessageStore] = None) -> None:
        self.cfg = config
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen", "0.0.0.0:3000"))
        self.store_cfg = config.get("store") or {}
        self.default_room = str(config.get("default_room", DEFAULT_ROOM))
        self.history_limit = int(config.get("history_limit", HISTORY_LIMIT))
        self.max_messages = int(config.get("max_messages", DEFAULT_CAP))

        self.state = RelayState()
        self.store = store
        self.router: Optional[Router] = None

        self._inbox: asyncio.Queue[Event] = asyncio.Queue()
        self._connections: list[Connection] = []
        self._ws_server: Optional[Server] = None
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.store is None:
            self.store = await open_store(self.store_cfg)
        self.router = Router(
            self.store,
            state=self.state,
            default_room=self.default_room,
            history_limit=self.history_limit,
            max_messages=self.max_messages,
        )
        self._tasks.append(asyncio.create_task(self._event_worker(), name="event-worker"))

        self._ws_server = await serve(
            self._handle_connection,
            self.listen_host,
            self.listen_port,
            process_request=self._process_request,
        )
        log.info("HTTP + WS server listening on ws://%s:%d", self.listen_host, self.listen_port)

    async def stop(self) -> None:
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        for conn in list(self._connections):
            await conn.stop()
        self._connections.clear()

        if self.store is not None:
            await self.store.close()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        conn = Connection(websocket=websocket)
        conn.start()
        self._connections.append(conn)
        log.debug("Accepted connection from %s", self._fmt_remote(websocket))
        await self._inbox.put(("open", conn, None))
        try:
            async for raw in websocket:
                await self._inbox.put(("message", conn, raw))
        except websockets.ConnectionClosed:
            pass
        finally:
            await self._inbox.put(("close", conn, None))

    async def _event_worker(self) -> None:
        """Single consumer: every state change happens here, in arrival order."""
        while True:
            kind, conn, raw = await self._inbox.get()
            try:
                await self._process(kind, conn, raw)
            except Exception:
                log.exception("Unhandled error while processing %s event", kind)
            finally:
                self._inbox.task_done()

    async def _process(self, kind: str, conn: Connection, raw: Optional[Union[str, bytes]]) -> None:
        if self.router is None:
            raise RuntimeError("runtime not started")
        if kind == "open":
            conn.session = self.router.connect(conn)
        elif kind == "message" and conn.session is not None and raw is not None:
            await self.router.handle(conn.session, raw)
        elif kind == "close":
            if conn.session is not None:
                self.router.disconnect(conn.session)
            await conn.stop()
            try:
                self._connections.remove(conn)
            except ValueError:
                pass

    # ------------------------------------------------------------------
    # HTTP views
    # ------------------------------------------------------------------

    async def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return None
        status, body = await self.http_get(request.path)
        return self._json_response(status, body)

    async def http_get(self, target: str) -> Tuple[HTTPStatus, Dict[str, Any]]:
        parts = [unquote(p) for p in urlsplit(target).path.split("/") if p]
        try:
            if parts == ["rooms"]:
                return HTTPStatus.OK, queries.list_rooms(self.state)
            if parts == ["users"]:
                return HTTPStatus.OK, queries.list_users(self.state)
            if len(parts) == 2 and parts[0] == "history" and self.store is not None:
                return HTTPStatus.OK, await queries.room_history(self.store, parts[1])
            if len(parts) == 3 and parts[0] == "dm" and self.store is not None:
                return HTTPStatus.OK, await queries.dm_history(self.store, parts[1], parts[2])
        except StoreError:
            log.exception("History query failed for %s", target)
            return HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "store unavailable"}
        return HTTPStatus.NOT_FOUND, {"error": "not found"}

    @staticmethod
    def _json_response(status: HTTPStatus, body: Dict[str, Any]) -> Response:
        payload = orjson.dumps(body)
        headers = Headers(
            [
                ("Content-Type", "application/json"),
                ("Content-Length", str(len(payload))),
                ("Access-Control-Allow-Origin", "*"),
            ]
        )
        return Response(status.value, status.phrase, headers, payload)

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    @property
    def bound_port(self) -> int:
        """Actual listening port; differs from the config when it asked for 0."""
        if self._ws_server is not None:
            for sock in self._ws_server.sockets:
                return sock.getsockname()[1]
        return self.listen_port

    @staticmethod
    def _parse_listen(value: str) -> tuple[str, int]:
        host, port = value.rsplit(":", 1)
        return host, int(port)

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["Connection", "ServerRuntime"]

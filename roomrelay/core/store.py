from __future__ import annotations

import abc
import asyncio
import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite
import orjson

"""
Message history store
---------------------
Every room and every DM pair owns one append-only log, addressed by
(bucket, key):

  bucket "rooms" -> key is the room name
  bucket "dms"   -> key is proto.dm_key(a, b), e.g. "alice|bob"

Each log is capped; appending past the cap drops the oldest entries first.

Backends
========
- JsonFileStore: one JSON document {"rooms": {...}, "dms": {...}} rewritten
  whole on each mutation. Not safe with more than one writer process.
- SqliteStore:   one row per entry (aiosqlite), trimmed by row id.
- MemoryStore:   dicts only, for tests and throwaway servers.

All backend failures surface as StoreError.
"""

log = logging.getLogger("roomrelay.store")

ROOMS = "rooms"
DMS = "dms"
BUCKETS = (ROOMS, DMS)

DEFAULT_CAP = 2000


class StoreError(RuntimeError):
    """The durable store could not complete an operation."""


def _empty() -> Dict[str, Dict[str, List[dict]]]:
    return {ROOMS: {}, DMS: {}}


def _check_bucket(bucket: str) -> None:
    if bucket not in BUCKETS:
        raise ValueError(f"unknown bucket: {bucket}")


class MessageStore(abc.ABC):
    """Append log interface shared by the backends."""

    @abc.abstractmethod
    async def read_all(self) -> Dict[str, Dict[str, List[dict]]]: ...

    @abc.abstractmethod
    async def read(self, bucket: str, key: str, limit: Optional[int] = None) -> List[dict]:
        """Entries for ``key``, oldest first; only the last ``limit`` if given."""

    @abc.abstractmethod
    async def ensure(self, bucket: str, key: str) -> None:
        """Create an empty log for ``key`` if it has none."""

    @abc.abstractmethod
    async def append(self, bucket: str, key: str, entry: dict, cap: int = DEFAULT_CAP) -> None: ...

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Document backends (whole structure read, mutated, written back)
# ---------------------------------------------------------------------------

class _DocumentStore(MessageStore):
    """Read-modify-write over a single {"rooms", "dms"} document."""

    @abc.abstractmethod
    def _load(self) -> Dict[str, Dict[str, List[dict]]]: ...

    @abc.abstractmethod
    def _dump(self, doc: Dict[str, Dict[str, List[dict]]]) -> None: ...

    async def _fetch(self) -> Dict[str, Dict[str, List[dict]]]:
        return self._load()

    async def _commit(self, doc: Dict[str, Dict[str, List[dict]]]) -> None:
        self._dump(doc)

    async def read_all(self) -> Dict[str, Dict[str, List[dict]]]:
        return await self._fetch()

    async def read(self, bucket: str, key: str, limit: Optional[int] = None) -> List[dict]:
        _check_bucket(bucket)
        log_ = (await self._fetch())[bucket].get(key, [])
        if limit is not None:
            return log_[-limit:] if limit > 0 else []
        return log_

    async def ensure(self, bucket: str, key: str) -> None:
        _check_bucket(bucket)
        doc = await self._fetch()
        if key in doc[bucket]:
            return
        doc[bucket][key] = []
        await self._commit(doc)

    async def append(self, bucket: str, key: str, entry: dict, cap: int = DEFAULT_CAP) -> None:
        _check_bucket(bucket)
        doc = await self._fetch()
        log_ = doc[bucket].setdefault(key, [])
        log_.append(entry)
        if len(log_) > cap:
            del log_[: len(log_) - cap]
        await self._commit(doc)


class MemoryStore(_DocumentStore):
    def __init__(self, initial: Optional[Dict[str, Dict[str, List[dict]]]] = None) -> None:
        self._doc = _empty()
        for bucket in BUCKETS:
            self._doc[bucket].update(copy.deepcopy((initial or {}).get(bucket, {})))

    def _load(self) -> Dict[str, Dict[str, List[dict]]]:
        return copy.deepcopy(self._doc)

    def _dump(self, doc: Dict[str, Dict[str, List[dict]]]) -> None:
        self._doc = doc


class JsonFileStore(_DocumentStore):
    """The whole history in one JSON file.

    Every operation reads the file, changes one log and writes the file
    back. This is only correct while a single process, handling one event
    at a time, owns the file.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self._dump(_empty())
        except OSError as exc:
            raise StoreError(f"cannot initialise {self.path}: {exc}") from exc

    def _load(self) -> Dict[str, Dict[str, List[dict]]]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return _empty()
        except OSError as exc:
            raise StoreError(f"cannot read {self.path}: {exc}") from exc
        try:
            doc = orjson.loads(raw)
        except orjson.JSONDecodeError:
            log.warning("History file %s is not valid JSON; treating as empty", self.path)
            return _empty()
        if not isinstance(doc, dict):
            return _empty()
        for bucket in BUCKETS:
            logs = doc.get(bucket)
            if not isinstance(logs, dict):
                doc[bucket] = {}
                continue
            for key, entries in logs.items():
                if not isinstance(entries, list):
                    log.warning("History %s/%s in %s is not a list; treating as empty", bucket, key, self.path)
                    logs[key] = []
        return doc

    def _dump(self, doc: Dict[str, Dict[str, List[dict]]]) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            tmp.write_bytes(orjson.dumps(doc, option=orjson.OPT_INDENT_2))
            os.replace(tmp, self.path)
        except (OSError, TypeError) as exc:
            raise StoreError(f"cannot write {self.path}: {exc}") from exc

    # file I/O runs in the default executor so the event loop keeps serving sockets
    async def _fetch(self) -> Dict[str, Dict[str, List[dict]]]:
        return await asyncio.get_running_loop().run_in_executor(None, self._load)

    async def _commit(self, doc: Dict[str, Dict[str, List[dict]]]) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self._dump, doc)


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

SCHEMA = """
CREATE TABLE IF NOT EXISTS logs(
    bucket TEXT NOT NULL,
    key    TEXT NOT NULL,
    PRIMARY KEY (bucket, key)
);
CREATE TABLE IF NOT EXISTS entries(
    id     INTEGER PRIMARY KEY AUTOINCREMENT,
    bucket TEXT NOT NULL,
    key    TEXT NOT NULL,
    body   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS entries_by_key ON entries(bucket, key, id);
"""


class SqliteStore(MessageStore):
    def __init__(self, path: Path | str) -> None:
        self.path = str(path)
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> "SqliteStore":
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(self.path)
            await self._db.executescript(SCHEMA)
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"cannot open {self.path}: {exc}") from exc
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("store is not open")
        return self._db

    async def read_all(self) -> Dict[str, Dict[str, List[dict]]]:
        doc = _empty()
        try:
            async with self.db.execute("SELECT bucket, key FROM logs ORDER BY rowid") as cur:
                async for bucket, key in cur:
                    doc[bucket][key] = []
            async with self.db.execute("SELECT bucket, key, body FROM entries ORDER BY id") as cur:
                async for bucket, key, body in cur:
                    doc[bucket].setdefault(key, []).append(orjson.loads(body))
        except aiosqlite.Error as exc:
            raise StoreError(str(exc)) from exc
        return doc

    async def read(self, bucket: str, key: str, limit: Optional[int] = None) -> List[dict]:
        _check_bucket(bucket)
        if limit is not None and limit <= 0:
            return []
        sql = "SELECT body FROM entries WHERE bucket=? AND key=? ORDER BY id DESC"
        args: tuple = (bucket, key)
        if limit is not None:
            sql += " LIMIT ?"
            args += (limit,)
        try:
            async with self.db.execute(sql, args) as cur:
                rows = await cur.fetchall()
        except aiosqlite.Error as exc:
            raise StoreError(str(exc)) from exc
        return [orjson.loads(body) for (body,) in reversed(rows)]

    async def ensure(self, bucket: str, key: str) -> None:
        _check_bucket(bucket)
        try:
            await self.db.execute("INSERT OR IGNORE INTO logs(bucket, key) VALUES(?, ?)", (bucket, key))
            await self.db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(str(exc)) from exc

    async def append(self, bucket: str, key: str, entry: dict, cap: int = DEFAULT_CAP) -> None:
        _check_bucket(bucket)
        try:
            await self.db.execute("INSERT OR IGNORE INTO logs(bucket, key) VALUES(?, ?)", (bucket, key))
            await self.db.execute(
                "INSERT INTO entries(bucket, key, body) VALUES(?, ?, ?)",
                (bucket, key, orjson.dumps(entry).decode("utf-8")),
            )
            await self.db.execute(
                """DELETE FROM entries WHERE bucket=? AND key=? AND id NOT IN (
                       SELECT id FROM entries WHERE bucket=? AND key=? ORDER BY id DESC LIMIT ?
                   )""",
                (bucket, key, bucket, key, cap),
            )
            await self.db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

async def open_store(config: Optional[Dict[str, Any]] = None) -> MessageStore:
    """Build the backend named by a ``store`` config section."""

    config = config or {}
    backend = str(config.get("backend", "json")).lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "json":
        return JsonFileStore(config.get("path", "data/messages.json"))
    if backend == "sqlite":
        return await SqliteStore(config.get("path", "data/messages.db")).open()
    raise ValueError(f"unknown store backend: {backend}")


__all__ = [
    "ROOMS",
    "DMS",
    "DEFAULT_CAP",
    "StoreError",
    "MessageStore",
    "MemoryStore",
    "JsonFileStore",
    "SqliteStore",
    "open_store",
]

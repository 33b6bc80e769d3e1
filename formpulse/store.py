"""
Boundary to the external event store.

The core only needs an append-only event log keyed by (projectId, receive time)
with a "since" range read; anything satisfying ``EventStore`` will do.
"""
from __future__ import annotations
import json
import logging
import threading
import uuid
from datetime import datetime
from typing import Iterable, List, Protocol, Tuple

import redis

from .config import Settings, settings
from .events import Event, utcnow

logger = logging.getLogger(__name__)


class StoreUnavailable(RuntimeError):
    """The store could not be reached or rejected the operation."""


class EventStore(Protocol):
    def insert(self, events: Iterable[Event]) -> int: ...

    def select(self, project_id: str, since: datetime) -> List[Event]: ...

    def prune(self, before: datetime) -> int: ...

    def ping(self) -> bool: ...


class RedisEventStore:
    """One sorted set per project, scored by server receive time (epoch seconds)."""

    def __init__(self, client: redis.Redis, prefix: str = "formpulse:events"):
        self.r = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "formpulse:events") -> "RedisEventStore":
        return cls(redis.Redis.from_url(url, decode_responses=False), prefix=prefix)

    def _key(self, project_id: str) -> str:
        return f"{self.prefix}:{project_id}"

    def insert(self, events: Iterable[Event]) -> int:
        pipe = self.r.pipeline(transaction=False)
        n = 0
        for ev in events:
            received = ev.received_at or utcnow()
            # random id keeps duplicate deliveries as distinct members
            member = json.dumps({"id": uuid.uuid4().hex,
                                 "event": ev.model_dump(mode="json", by_alias=True)})
            pipe.zadd(self._key(ev.project_id), {member: received.timestamp()})
            n += 1
        if not n:
            return 0
        try:
            pipe.execute()
        except redis.RedisError as e:
            raise StoreUnavailable(f"insert failed: {e}") from e
        return n

    def select(self, project_id: str, since: datetime) -> List[Event]:
        key = self._key(project_id)
        try:
            raw = self.r.zrangebyscore(key, since.timestamp(), "+inf")
        except redis.RedisError as e:
            raise StoreUnavailable(f"select failed: {e}") from e
        out = []
        for member in raw:
            try:
                out.append(Event.model_validate(json.loads(member)["event"]))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("skipping unreadable record in %s: %r", key, e)
        return out

    def prune(self, before: datetime) -> int:
        removed = 0
        try:
            for key in self.r.scan_iter(match=f"{self.prefix}:*"):
                removed += self.r.zremrangebyscore(key, "-inf", f"({before.timestamp()}")
        except redis.RedisError as e:
            raise StoreUnavailable(f"prune failed: {e}") from e
        return removed

    def ping(self) -> bool:
        try:
            return bool(self.r.ping())
        except redis.RedisError:
            return False


class MemoryEventStore:
    """Process-local store for development and tests."""

    def __init__(self):
        self._rows: List[Tuple[float, Event]] = []
        self._lock = threading.Lock()

    def insert(self, events: Iterable[Event]) -> int:
        rows = [((ev.received_at or utcnow()).timestamp(), ev) for ev in events]
        with self._lock:
            self._rows.extend(rows)
        return len(rows)

    def select(self, project_id: str, since: datetime) -> List[Event]:
        lo = since.timestamp()
        with self._lock:
            return [ev for ts, ev in self._rows if ev.project_id == project_id and ts >= lo]

    def prune(self, before: datetime) -> int:
        cut = before.timestamp()
        with self._lock:
            keep = [(ts, ev) for ts, ev in self._rows if ts >= cut]
            removed = len(self._rows) - len(keep)
            self._rows = keep
        return removed

    def ping(self) -> bool:
        return True


def build_store(cfg: Settings = settings) -> EventStore:
    backend = cfg.STORE_BACKEND.lower()
    if backend == "memory":
        return MemoryEventStore()
    if backend == "redis":
        return RedisEventStore.from_url(cfg.REDIS_URL, prefix=cfg.EVENT_KEY_PREFIX)
    raise ValueError(f"unknown STORE_BACKEND {cfg.STORE_BACKEND!r} (expected redis or memory)")

"""
Event log adapters.

The shared pipeline log is an append-only stream read through consumer
groups: each group owns a durable cursor, every delivered entry stays
pending until acknowledged, and pending entries of a crashed consumer can be
claimed by another member once they have been idle long enough.
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

import redis

from ..config.loader import EventLogConfig, LogBackend

logger = logging.getLogger(__name__)


class EventLogError(Exception):
    """Base class for event log failures."""


class TransientLogError(EventLogError):
    """The log is unreachable or timed out; retry after a delay."""


class ConsumerGroupMissing(EventLogError):
    """The consumer group does not exist yet."""


@dataclass(frozen=True)
class LogEntry:
    """One delivered entry: its id and its string fields."""
    entry_id: str
    fields: Dict[str, str]
    delivery_count: int = 1


class EventLog(Protocol):
    """Operations the ingestion loop needs from the log."""

    def append(self, fields: Mapping[str, str]) -> str:
        ...

    def read_group(self, group: str, consumer: str, count: int, block_ms: int) -> List[LogEntry]:
        ...

    def ack(self, group: str, entry_id: str) -> None:
        ...

    def create_group(self, group: str, start_id: str = "0") -> None:
        ...

    def claim_stale(self, group: str, consumer: str, min_idle_ms: int, count: int) -> List[LogEntry]:
        ...

    def pending(self, group: str) -> List[str]:
        ...

    def close(self) -> None:
        ...


@dataclass
class _PendingEntry:
    consumer: str
    delivered_at: float
    delivery_count: int


@dataclass
class _Group:
    cursor: int
    pending: Dict[str, _PendingEntry] = field(default_factory=dict)


class MemoryEventLog:
    """In-process log with consumer-group semantics.

    Entry ids are ``<sequence>-0`` strings. Thread-safe: blocking reads wait
    on a condition that appends notify.
    """

    def __init__(self, clock=time.monotonic):
        self._entries: List[Tuple[str, Dict[str, str]]] = []
        self._index: Dict[str, int] = {}
        self._groups: Dict[str, _Group] = {}
        self._sequence = itertools.count(1)
        self._cond = threading.Condition()
        self._clock = clock
        self.closed = False

    def append(self, fields: Mapping[str, str]) -> str:
        with self._cond:
            entry_id = f"{next(self._sequence)}-0"
            self._index[entry_id] = len(self._entries)
            self._entries.append((entry_id, dict(fields)))
            self._cond.notify_all()
            return entry_id

    def create_group(self, group: str, start_id: str = "0") -> None:
        """Create a group whose cursor starts after ``start_id``.

        ``"0"`` replays the whole log, ``"$"`` delivers only new entries.
        Creating an existing group is a no-op.
        """
        with self._cond:
            if group in self._groups:
                return
            if start_id == "$":
                cursor = len(self._entries)
            elif start_id == "0":
                cursor = 0
            elif start_id in self._index:
                cursor = self._index[start_id] + 1
            else:
                raise ValueError(f"Unknown start id: {start_id}")
            self._groups[group] = _Group(cursor=cursor)

    def read_group(self, group: str, consumer: str, count: int, block_ms: int) -> List[LogEntry]:
        deadline = self._clock() + block_ms / 1000.0
        with self._cond:
            while True:
                state = self._groups.get(group)
                if state is None:
                    raise ConsumerGroupMissing(f"NOGROUP no such consumer group '{group}'")
                if state.cursor < len(self._entries):
                    return self._deliver(state, consumer, count)
                remaining = deadline - self._clock()
                if remaining <= 0 or self.closed:
                    return []
                self._cond.wait(remaining)

    def _deliver(self, state: _Group, consumer: str, count: int) -> List[LogEntry]:
        batch = self._entries[state.cursor:state.cursor + count]
        state.cursor += len(batch)
        now = self._clock()
        delivered = []
        for entry_id, fields in batch:
            state.pending[entry_id] = _PendingEntry(consumer=consumer, delivered_at=now, delivery_count=1)
            delivered.append(LogEntry(entry_id, dict(fields), 1))
        return delivered

    def ack(self, group: str, entry_id: str) -> None:
        with self._cond:
            state = self._groups.get(group)
            if state is None:
                raise ConsumerGroupMissing(f"NOGROUP no such consumer group '{group}'")
            state.pending.pop(entry_id, None)

    def claim_stale(self, group: str, consumer: str, min_idle_ms: int, count: int) -> List[LogEntry]:
        """Transfer entries pending longer than ``min_idle_ms`` to ``consumer``."""
        with self._cond:
            state = self._groups.get(group)
            if state is None:
                raise ConsumerGroupMissing(f"NOGROUP no such consumer group '{group}'")
            now = self._clock()
            claimed = []
            for entry_id in sorted(state.pending, key=lambda eid: self._index[eid]):
                if len(claimed) >= count:
                    break
                pending = state.pending[entry_id]
                if (now - pending.delivered_at) * 1000.0 < min_idle_ms:
                    continue
                pending.consumer = consumer
                pending.delivered_at = now
                pending.delivery_count += 1
                fields = self._entries[self._index[entry_id]][1]
                claimed.append(LogEntry(entry_id, dict(fields), pending.delivery_count))
            return claimed

    def pending(self, group: str) -> List[str]:
        with self._cond:
            state = self._groups.get(group)
            if state is None:
                return []
            return sorted(state.pending, key=lambda eid: self._index[eid])

    def close(self) -> None:
        with self._cond:
            self.closed = True
            self._cond.notify_all()


class RedisStreamLog:
    """Redis Streams adapter.

    Redis replies are mapped onto the log error taxonomy: ``NOGROUP`` becomes
    ConsumerGroupMissing, connection and timeout failures become
    TransientLogError.
    """

    def __init__(self, client: "redis.Redis", stream_key: str):
        self.client = client
        self.stream_key = stream_key

    @classmethod
    def from_url(cls, url: str, stream_key: str) -> "RedisStreamLog":
        return cls(redis.Redis.from_url(url, decode_responses=True), stream_key)

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except redis.exceptions.ResponseError as e:
            if "NOGROUP" in str(e):
                raise ConsumerGroupMissing(str(e)) from e
            raise
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
            raise TransientLogError(str(e)) from e

    def append(self, fields: Mapping[str, str]) -> str:
        return self._call(self.client.xadd, self.stream_key, dict(fields))

    def create_group(self, group: str, start_id: str = "0") -> None:
        try:
            self._call(self.client.xgroup_create, self.stream_key, group, id=start_id, mkstream=True)
        except redis.exceptions.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.debug("Consumer group %s already exists", group)

    def read_group(self, group: str, consumer: str, count: int, block_ms: int) -> List[LogEntry]:
        results = self._call(
            self.client.xreadgroup,
            group,
            consumer,
            {self.stream_key: ">"},
            count=count,
            block=block_ms,
        )
        entries = []
        for _stream, messages in results or []:
            for entry_id, fields in messages:
                entries.append(LogEntry(entry_id, dict(fields or {})))
        return entries

    def ack(self, group: str, entry_id: str) -> None:
        self._call(self.client.xack, self.stream_key, group, entry_id)

    def claim_stale(self, group: str, consumer: str, min_idle_ms: int, count: int) -> List[LogEntry]:
        result = self._call(
            self.client.xautoclaim,
            self.stream_key,
            group,
            consumer,
            min_idle_ms,
            start_id="0-0",
            count=count,
        )
        # Reply is [next_start_id, messages] or, on Redis 7+, [next_start_id, messages, deleted_ids]
        messages = result[1] if result and len(result) > 1 else []
        messages = [(entry_id, fields) for entry_id, fields in messages if fields is not None]
        if not messages:
            return []
        counts = self._delivery_counts(group, consumer, messages[0][0], messages[-1][0], len(messages))
        return [
            LogEntry(entry_id, dict(fields), counts.get(entry_id, 1))
            for entry_id, fields in messages
        ]

    def _delivery_counts(self, group: str, consumer: str, first: str, last: str, count: int) -> Dict[str, int]:
        rows = self._call(
            self.client.xpending_range,
            self.stream_key, group, min=first, max=last, count=max(count, 1000), consumername=consumer,
        )
        return {row["message_id"]: row["times_delivered"] for row in rows or []}

    def pending(self, group: str) -> List[str]:
        rows = self._call(
            self.client.xpending_range, self.stream_key, group, min="-", max="+", count=1000,
        )
        return [row["message_id"] for row in rows]

    def close(self) -> None:
        self.client.close()


def build_event_log(config: EventLogConfig) -> EventLog:
    """Create the configured log adapter."""
    if config.backend == LogBackend.REDIS:
        return RedisStreamLog.from_url(config.redis_url, config.stream_key)
    return MemoryEventLog()

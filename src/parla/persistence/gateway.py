"""
Persistence gateway — the external store for learning records.

The core only needs two calls:
  read(record_type, key)  → record or None
  write(record)           → stored record, or StorageError

InMemoryGateway is the in-process store used by tests and local runs.
PersistenceWriter makes writes fire-and-forget for the orchestrator while
keeping them in submission order (one writer task, one queue).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Callable

from parla.core.errors import StorageError, StorageReason
from parla.core.metrics import metrics
from parla.learning.models import (
    STATUS_RANK,
    LearnedSentence,
    LearnedStatus,
    Memory,
    Record,
)

logger = logging.getLogger(__name__)


class PersistenceGateway(ABC):
    """Durable store for LearnedSentence, Memory, Profile and SessionState."""

    @abstractmethod
    async def read(self, record_type: type, key: Any) -> Record | None:
        ...

    @abstractmethod
    async def write(self, record: Record) -> Record:
        ...


class InMemoryGateway(PersistenceGateway):
    """Dict-backed gateway. Assigns ids and rejects status regressions."""

    def __init__(self) -> None:
        self._records: dict[tuple[type, Any], Record] = {}
        self._ids = itertools.count(1)
        self.available = True
        self.writes: list[Record] = []

    async def read(self, record_type: type, key: Any) -> Record | None:
        self._check_available()
        return self._records.get((record_type, key))

    async def write(self, record: Record) -> Record:
        self._check_available()
        existing = self._records.get((type(record), record.key))

        if isinstance(record, LearnedSentence):
            if isinstance(existing, LearnedSentence):
                self._check_status_move(existing.status, record.status)
            if record.id is None:
                record = replace(
                    record,
                    id=existing.id if existing is not None else next(self._ids),
                )
        elif isinstance(record, Memory) and record.id is None:
            record = replace(
                record, id=existing.id if existing is not None else next(self._ids)
            )

        self._records[(type(record), record.key)] = record
        self.writes.append(record)
        return record

    def records_of(self, record_type: type) -> list[Record]:
        return [r for (t, _), r in self._records.items() if t is record_type]

    def _check_available(self) -> None:
        if not self.available:
            raise StorageError(StorageReason.UNAVAILABLE, "store unavailable")

    @staticmethod
    def _check_status_move(old: LearnedStatus, new: LearnedStatus) -> None:
        if old == LearnedStatus.EASY and new != LearnedStatus.EASY:
            raise StorageError(
                StorageReason.CONFLICT, f"status cannot move {old.value} -> {new.value}"
            )
        if STATUS_RANK[new] < STATUS_RANK[old]:
            raise StorageError(
                StorageReason.CONFLICT, f"status cannot move {old.value} -> {new.value}"
            )


_STOP = object()


class PersistenceWriter:
    """Ordered, fire-and-forget writes on top of a gateway.

    submit() never blocks and never raises. Writes run one at a time in
    submission order. A failed write is logged, counted and reported to
    ``on_failure``; it never stops the writes queued after it.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        on_failure: Callable[[Record, StorageError], None] | None = None,
    ) -> None:
        self.gateway = gateway
        self.on_failure = on_failure
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def submit(self, record: Record) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="persistence-writer")
        self._queue.put_nowait(record)

    async def read(self, record_type: type, key: Any) -> Record | None:
        """Read through to the gateway. Storage errors yield None."""
        try:
            return await self.gateway.read(record_type, key)
        except StorageError as e:
            metrics.inc("storage.read.failed", labels={"reason": e.reason.value})
            logger.warning("Storage read failed (%s): %s", e.reason.value, e)
            return None

    async def flush(self) -> None:
        """Wait until every submitted write has been attempted."""
        if self._task is None:
            return
        await self._queue.join()

    async def close(self) -> None:
        if self._task is None:
            return
        await self.flush()
        self._queue.put_nowait(_STOP)
        await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                if record is _STOP:
                    return
                await self._write_one(record)
            finally:
                self._queue.task_done()

    async def _write_one(self, record: Record) -> None:
        kind = type(record).__name__
        try:
            await self.gateway.write(record)
            metrics.inc("storage.write.ok", labels={"record": kind})
        except StorageError as e:
            metrics.inc(
                "storage.write.failed",
                labels={"record": kind, "reason": e.reason.value},
            )
            logger.error(
                "Storage write failed for %s (%s): %s",
                kind,
                e.reason.value,
                e,
                extra={"reason": e.reason.value},
            )
            if self.on_failure:
                try:
                    self.on_failure(record, e)
                except Exception as cb_error:
                    logger.debug("Storage failure callback raised: %s", cb_error)
        except Exception as e:
            metrics.inc("storage.write.failed", labels={"record": kind, "reason": "unexpected"})
            logger.error("Unexpected storage error for %s: %s", kind, e, exc_info=True)

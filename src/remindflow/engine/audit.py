"""Audit trail: builds immutable entries and shields callers from sink outages."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from typing import Any

from remindflow.core.protocols import IAuditSink, IClock
from remindflow.models.audit import AuditAction, AuditEntry, AuditStatus

logger = logging.getLogger(__name__)


class AuditTrail:
    """Writes entries to the sink; failed writes are buffered and replayed.

    A sink failure is logged and never propagates into item processing.
    """

    def __init__(self, sink: IAuditSink, clock: IClock, max_buffer: int = 10_000) -> None:
        self._sink = sink
        self._clock = clock
        self._buffer: deque[AuditEntry] = deque(maxlen=max_buffer)
        self._lock = threading.Lock()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def record(
        self,
        action: AuditAction,
        *,
        item_id: str = "",
        status: AuditStatus = AuditStatus.SUCCESS,
        stage: int | None = None,
        channel: str = "",
        recipient: str = "",
        attempt: int | None = None,
        delivery_id: str = "",
        error_class: str = "",
        message: str = "",
        **metadata: Any,
    ) -> AuditEntry:
        entry = AuditEntry(
            timestamp=self._clock.now(),
            item_id=item_id,
            action=action,
            status=status,
            stage=stage,
            channel=str(channel),
            recipient=recipient,
            attempt=attempt,
            delivery_id=delivery_id,
            error_class=str(error_class),
            message=message,
            metadata=metadata,
        )
        self.append(entry)
        return entry

    async def arecord(self, action: AuditAction, **fields: Any) -> AuditEntry:
        """``record`` from async code; the sink write runs in a worker thread."""
        return await asyncio.to_thread(self.record, action, **fields)

    def append(self, entry: AuditEntry) -> None:
        self.flush()
        try:
            self._sink.append(entry)
        except Exception:
            logger.exception("Audit sink write failed; buffering entry %s", entry.entry_id)
            with self._lock:
                if len(self._buffer) == self._buffer.maxlen:
                    logger.error("Audit buffer full; oldest entry %s dropped", self._buffer[0].entry_id)
                self._buffer.append(entry)

    def flush(self) -> int:
        """Replay buffered entries in order. Returns how many were written."""
        written = 0
        with self._lock:
            while self._buffer:
                entry = self._buffer[0]
                try:
                    self._sink.append(entry)
                except Exception as exc:
                    logger.warning("Audit sink still unavailable (%s); %d entries pending", exc, len(self._buffer))
                    break
                self._buffer.popleft()
                written += 1
        return written

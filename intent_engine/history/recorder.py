"""
Audit Recorder — writes history records off the request path.

A failed write is logged and counted. It never fails the caller's request.
"""

import asyncio
import logging
from typing import Set

from intent_engine.history.store import HistoryStore
from intent_engine.models.history import IntentHistoryRecord

logger = logging.getLogger("intent-engine.audit")


class AuditRecorder:
    def __init__(self, store: HistoryStore):
        self.store = store
        self.failed_writes = 0
        self.written = 0
        self._pending: Set[asyncio.Task] = set()

    def submit(self, record: IntentHistoryRecord) -> None:
        """Schedule the write and return immediately."""
        try:
            task = asyncio.get_running_loop().create_task(self._write(record))
        except RuntimeError:
            # No running loop: write synchronously
            self._write_sync(record)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, record: IntentHistoryRecord) -> None:
        await asyncio.to_thread(self._write_sync, record)

    def _write_sync(self, record: IntentHistoryRecord) -> None:
        try:
            self.store.append(record)
            self.written += 1
        except Exception:
            self.failed_writes += 1
            logger.exception(
                "Audit write failed for record %s (failed_writes=%d)",
                record.id, self.failed_writes,
            )

    async def drain(self) -> None:
        """Wait for every pending write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    @property
    def pending(self) -> int:
        return len(self._pending)

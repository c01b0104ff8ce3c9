"""
Audit notifier.

Lifecycle events are published after the store commit onto an in-process
queue. A worker started with the application drains the queue and writes
``audit_logs`` rows in its own session. Nothing here ever raises into the
publishing request: failures are logged and the event is dropped.
"""
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Callable
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import async_session_maker
from app.models.integration import AuditLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    organization_id: str
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None


class AuditNotifier:
    """Fire-and-forget audit channel."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = async_session_maker,
        maxsize: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._maxsize = maxsize or settings.AUDIT_QUEUE_MAXSIZE
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def queue(self) -> asyncio.Queue:
        # Created lazily so it binds to the loop that first uses it
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
        return self._queue

    @property
    def pending(self) -> int:
        return self.queue.qsize()

    def publish(self, event: AuditEvent) -> None:
        """Queue an event. Never blocks, never raises."""
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Audit queue full, dropping %s for organization %s",
                event.action, event.organization_id,
            )

    async def _write(self, event: AuditEvent) -> None:
        try:
            async with self._session_factory() as session:
                session.add(AuditLog(
                    organization_id=event.organization_id,
                    user_id=event.user_id,
                    action=event.action,
                    resource_type=event.resource_type,
                    resource_id=event.resource_id,
                    details=event.details,
                ))
                await session.commit()
        except Exception:
            logger.exception(
                "Failed to record audit event %s for organization %s",
                event.action, event.organization_id,
            )

    async def run(self) -> None:
        """Worker loop: write events as they arrive."""
        while True:
            event = await self.queue.get()
            try:
                await self._write(event)
            except asyncio.CancelledError:
                # Put the in-flight event back so stop() still flushes it
                self._requeue(event)
                raise
            finally:
                self.queue.task_done()

    def _requeue(self, event: AuditEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Audit queue full, dropping in-flight %s for organization %s",
                event.action, event.organization_id,
            )

    async def drain(self) -> int:
        """Write every queued event now. Returns how many were processed."""
        processed = 0
        while not self.queue.empty():
            event = self.queue.get_nowait()
            try:
                await self._write(event)
            finally:
                self.queue.task_done()
            processed += 1
        return processed

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Stop the worker and flush what is left."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.drain()


# Singleton instance
audit_notifier = AuditNotifier()

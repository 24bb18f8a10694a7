"""Tracking for ingestion work that runs after its HTTP request returns."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Coroutine, Dict, List, Optional
from uuid import uuid4

from ..utils.datetime import utc_now

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class BackgroundTask:
    id: str
    kind: str
    status: TaskStatus = TaskStatus.PENDING
    detail: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None


class TaskManager:
    """Process-local registry of background tasks.

    Holds a strong reference to every running ``asyncio.Task`` so the
    event loop cannot garbage-collect a backfill mid-flight.
    """

    def __init__(self) -> None:
        self._records: Dict[str, BackgroundTask] = {}
        self._live: Dict[str, asyncio.Task] = {}

    def create(self, kind: str, detail: Optional[Dict[str, Any]] = None) -> BackgroundTask:
        record = BackgroundTask(id=uuid4().hex[:8], kind=kind, detail=dict(detail or {}))
        self._records[record.id] = record
        return record

    def get(self, task_id: str) -> Optional[BackgroundTask]:
        return self._records.get(task_id)

    def list_all(self) -> List[BackgroundTask]:
        return list(self._records.values())

    def _finish(
        self, record: BackgroundTask, status: TaskStatus, error: Optional[str] = None
    ) -> None:
        record.status = status
        record.error = error
        record.finished_at = utc_now().isoformat()

    def start_async(self, task_id: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Schedule *coro*; its outcome lands on the record, never in the caller."""
        record = self._records[task_id]

        async def _tracked() -> None:
            record.status = TaskStatus.RUNNING
            record.started_at = utc_now().isoformat()
            try:
                result = await coro
            except asyncio.CancelledError:
                self._finish(record, TaskStatus.FAILED, "cancelled")
                raise
            except Exception as exc:
                logger.exception("Background %s task %s failed", record.kind, task_id)
                self._finish(record, TaskStatus.FAILED, str(exc))
            else:
                if isinstance(result, dict):
                    record.detail.update(result)
                self._finish(record, TaskStatus.COMPLETED)
            finally:
                self._live.pop(task_id, None)

        running = asyncio.create_task(_tracked())
        self._live[task_id] = running
        return running

    async def drain(self) -> None:
        """Wait for every running task; used at shutdown."""
        if self._live:
            await asyncio.gather(*list(self._live.values()), return_exceptions=True)

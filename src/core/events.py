"""Execution status records and the best-effort status channel.

Records are handed to the channel and forgotten: publishing never raises,
never blocks the action being reported and never fails it.
"""
import asyncio
import json
import uuid
from enum import Enum
from typing import Any, Dict, Optional
import logging

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)
error_logger = logging.getLogger(f"{__name__}.status_errors")


class ExecutionStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class InvalidTransitionError(Exception):
    """Raised when an execution record would leave a terminal state."""


class ExecutionRecord(BaseModel):
    """Ephemeral lifecycle record of one action invocation."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action_id: str
    original_action_id: Optional[str] = None
    service_name: str
    title: str
    description: str = ""
    icon: Optional[str] = None
    input: Dict[str, Any] = {}
    language: str = "en"
    status: ExecutionStatus = ExecutionStatus.STARTED
    output: Any = None
    error: Optional[str] = None

    def transition(self, status: ExecutionStatus, output: Any = None, error: Optional[str] = None) -> "ExecutionRecord":
        """Move to a new status; terminal states are final."""
        if self.status.is_terminal:
            raise InvalidTransitionError(f"Execution {self.id} already {self.status.value}")
        self.status = status
        if output is not None:
            self.output = output
        if error is not None:
            self.error = error
        return self


class StatusSink:
    """Outbound delivery channel for status records (external collaborator)."""

    async def publish(self, session_id: str, status: ExecutionStatus, record: Dict[str, Any]) -> None:
        raise NotImplementedError


def truncate_for_broadcast(value: Any, max_chars: int) -> Any:
    """Shrink large outputs before they leave the process."""
    try:
        serialized = json.dumps(value, default=str)
    except (TypeError, ValueError):
        serialized = str(value)

    if len(serialized) <= max_chars:
        return value

    if isinstance(value, list):
        return {
            "summary": f"Output truncated: {len(value)} items",
            "sample": value[:2],
            "total_count": len(value),
        }
    return {
        "summary": f"Output truncated: {len(serialized)} characters",
        "preview": serialized[:max_chars],
    }


class StatusChannel:
    """Fire-and-forget publisher of execution status records.

    When started, records go through a bounded queue drained by a worker
    task. When not started, delivery happens inline. Either way every
    failure is logged on the status error logger and discarded.
    """

    def __init__(self, sink: StatusSink, maxsize: int = 1000, output_max_chars: int = 8000):
        self._sink = sink
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._output_max_chars = output_max_chars
        self._running = False
        self._worker: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the queue worker"""
        if self._running:
            return
        self._running = True
        self._worker = asyncio.create_task(self._process_events())

    async def stop(self):
        """Drain outstanding records and stop the worker"""
        if not self._running:
            return
        await self._queue.join()
        self._running = False
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def publish(self, session_id: str, record: ExecutionRecord) -> None:
        """Send a snapshot of the record. Never raises."""
        try:
            payload = record.model_dump(mode="json")
            payload["output"] = truncate_for_broadcast(payload.get("output"), self._output_max_chars)
            event = (session_id, record.status, payload)
        except Exception as e:
            error_logger.error(f"Could not serialize status record {record.id}: {e}")
            return

        if not self._running:
            await self._deliver(event)
            return

        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            error_logger.error(
                f"Status queue full, dropping {record.status.value} record {record.id} for session {session_id}"
            )

    async def _deliver(self, event) -> None:
        session_id, status, payload = event
        try:
            await self._sink.publish(session_id, status, payload)
        except Exception as e:
            error_logger.error(
                f"Failed to publish {status.value} status for execution {payload.get('id')} "
                f"in session {session_id}: {e}"
            )

    async def _process_events(self):
        """Process records from the queue"""
        while self._running:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

"""
Execution Events.

Lifecycle events for streaming callers, the bounded channel they travel
through, and the per-step state tracker that keeps each step's event
sequence well-formed.

Frame format (one JSON object per frame):
    {"type": "execution.started",   "data": {"totalSteps", "ids"}}
    {"type": "execution.step",      "data": {"stepId", "status", ...}}
    {"type": "execution.completed", "data": {"imageIds", "imageUrls"?}}
    {"type": "execution.error",     "data": {"error", "errorCode", ...}}
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import InternalError, PixelFlowError

logger = logging.getLogger(__name__)

DEFAULT_EVENT_QUEUE_SIZE = 64


class StepStatus(str, Enum):
    """Status of a single step (or fan-out branch)."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class EventType(str, Enum):
    STARTED = "execution.started"
    STEP = "execution.step"
    COMPLETED = "execution.completed"
    ERROR = "execution.error"


@dataclass
class StepEvent:
    """One status transition of one step."""
    step_id: str
    status: StepStatus
    preview: str | None = None
    data_type: str | None = None
    content: str | None = None
    parsed: dict[str, Any] | None = None
    location: str | None = None  # save steps only
    error: PixelFlowError | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"stepId": self.step_id, "status": self.status.value}
        if self.preview is not None:
            data["preview"] = self.preview
        if self.data_type is not None:
            data["dataType"] = self.data_type
            data["content"] = self.content
            if self.parsed is not None:
                data["parsed"] = self.parsed
        if self.location is not None:
            data["location"] = self.location
        if self.error is not None:
            data["error"] = self.error.message
            data["errorCode"] = self.error.code
            data["errorCategory"] = self.error.category.value
            data["retryable"] = self.error.retryable
        return data


def error_payload(error: PixelFlowError) -> dict[str, Any]:
    """The terminal error payload shared by streaming and sync callers."""
    payload = {
        "error": error.message,
        "errorCode": error.code,
        "errorCategory": error.category.value,
        "retryable": error.retryable,
    }
    if error.step_id:
        payload["stepId"] = error.step_id
    return payload


@dataclass
class ExecutionEvent:
    """A single frame on the event stream."""
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def started(cls, total_steps: int, ids: list[str]) -> "ExecutionEvent":
        return cls(EventType.STARTED, {"totalSteps": total_steps, "ids": list(ids)})

    @classmethod
    def step(cls, event: StepEvent) -> "ExecutionEvent":
        return cls(EventType.STEP, event.to_dict())

    @classmethod
    def completed(cls, image_ids: list[str], image_urls: list[str] | None = None) -> "ExecutionEvent":
        data: dict[str, Any] = {"imageIds": list(image_ids)}
        if image_urls:
            data["imageUrls"] = list(image_urls)
        return cls(EventType.COMPLETED, data)

    @classmethod
    def failed(cls, error: PixelFlowError) -> "ExecutionEvent":
        return cls(EventType.ERROR, error_payload(error))

    @property
    def terminal(self) -> bool:
        return self.type in (EventType.COMPLETED, EventType.ERROR)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": self.data}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_sse(self) -> str:
        """Encode as a server-sent-events frame."""
        return f"data: {self.to_json()}\n\n"


class EventChannel:
    """
    Bounded queue between the scheduler and one consumer.

    `send` blocks while the queue is full. Once the consumer goes away,
    `discard` drops everything still queued and turns later sends into
    no-ops, so the producer never stalls on a consumer that left.
    """

    _END = object()

    def __init__(self, maxsize: int = DEFAULT_EVENT_QUEUE_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._discarding = False
        self._finished = False

    @property
    def discarding(self) -> bool:
        return self._discarding

    async def send(self, event: ExecutionEvent) -> None:
        if self._discarding:
            return
        await self._queue.put(event)

    async def finish(self) -> None:
        """Mark the end of the stream. Never waits on a full queue."""
        if self._finished:
            return
        self._finished = True
        try:
            self._queue.put_nowait(self._END)
        except asyncio.QueueFull:
            # receive() ends the stream once the queue drains
            pass

    async def receive(self) -> ExecutionEvent | None:
        """Next event, or None once the stream has ended."""
        if self._discarding:
            return None
        if self._finished and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is self._END:
            return None
        return item

    def discard(self) -> None:
        self._discarding = True
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            dropped += 1
        if dropped:
            logger.debug(f"Discarded {dropped} undelivered events")


_ALLOWED: dict[StepStatus | None, tuple[StepStatus, ...]] = {
    None: (StepStatus.PENDING,),
    StepStatus.PENDING: (StepStatus.RUNNING,),
    StepStatus.RUNNING: (StepStatus.COMPLETED, StepStatus.ERROR),
    StepStatus.COMPLETED: (),
    StepStatus.ERROR: (),
}


class StepTracker:
    """Enforces pending -> running -> completed|error, once per status."""

    def __init__(self, step_ids: list[str]):
        self._status: dict[str, StepStatus | None] = {step_id: None for step_id in step_ids}

    def transition(self, step_id: str, status: StepStatus) -> None:
        if step_id not in self._status:
            raise InternalError(f"Unknown step '{step_id}'", step_id=step_id)
        current = self._status[step_id]
        if status not in _ALLOWED[current]:
            was = current.value if current else "new"
            raise InternalError(
                f"Illegal transition for step '{step_id}': {was} -> {status.value}",
                step_id=step_id,
            )
        self._status[step_id] = status

    def status(self, step_id: str) -> StepStatus | None:
        return self._status.get(step_id)

    def statuses(self) -> dict[str, StepStatus]:
        return {k: v for k, v in self._status.items() if v is not None}

    def count(self, status: StepStatus) -> int:
        return sum(1 for v in self._status.values() if v == status)

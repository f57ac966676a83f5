"""Tests for lifecycle events, the event channel and the step tracker."""

import asyncio
import json
import sys
from pathlib import Path

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pipeline.errors import InternalError, SaveError
from pipeline.events import EventChannel, EventType, ExecutionEvent, StepEvent, StepStatus, StepTracker


class TestStepEvent:
    def test_minimal(self):
        assert StepEvent("v0", StepStatus.RUNNING).to_dict() == {"stepId": "v0", "status": "running"}

    def test_data_fields(self):
        event = StepEvent("meta", StepStatus.COMPLETED, data_type="json", content='{"a": 1}', parsed={"a": 1})

        assert event.to_dict() == {
            "stepId": "meta",
            "status": "completed",
            "dataType": "json",
            "content": '{"a": 1}',
            "parsed": {"a": 1},
        }

    def test_error_fields(self):
        error = SaveError("disk full", retryable=True)
        data = StepEvent("save-1", StepStatus.ERROR, error=error).to_dict()

        assert data["error"] == "disk full"
        assert data["errorCode"] == "SAVE_ERROR"
        assert data["retryable"] is True


class TestExecutionEvent:
    def test_started(self):
        event = ExecutionEvent.started(3, ["a", "b"])

        assert event.to_dict() == {"type": "execution.started", "data": {"totalSteps": 3, "ids": ["a", "b"]}}
        assert not event.terminal

    def test_completed_without_saves(self):
        event = ExecutionEvent.completed(["a"])

        assert event.data == {"imageIds": ["a"]}
        assert event.terminal

    def test_failed(self):
        event = ExecutionEvent.failed(SaveError("nope", step_id="save-0"))

        assert event.type == EventType.ERROR
        assert event.terminal
        assert event.data["stepId"] == "save-0"
        assert event.data["errorCategory"] == "unknown"

    def test_sse_frame(self):
        frame = ExecutionEvent.completed(["a"], ["./a.png"]).to_sse()

        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        assert json.loads(frame[len("data: "):]) == {
            "type": "execution.completed",
            "data": {"imageIds": ["a"], "imageUrls": ["./a.png"]},
        }


@pytest.mark.anyio
class TestEventChannel:
    """Bounded producer/consumer channel."""

    async def test_order_and_end(self):
        channel = EventChannel(4)
        await channel.send(ExecutionEvent.started(1, ["a"]))
        await channel.send(ExecutionEvent.completed(["a"]))
        await channel.finish()

        first = await channel.receive()
        second = await channel.receive()

        assert first.type == EventType.STARTED
        assert second.type == EventType.COMPLETED
        assert await channel.receive() is None

    async def test_send_blocks_when_full(self):
        channel = EventChannel(1)
        await channel.send(ExecutionEvent.started(1, []))

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(channel.send(ExecutionEvent.completed([])), timeout=0.05)

    async def test_discard_unblocks_producer(self):
        channel = EventChannel(1)
        await channel.send(ExecutionEvent.started(1, []))
        blocked = asyncio.create_task(channel.send(ExecutionEvent.completed([])))
        await asyncio.sleep(0)

        channel.discard()
        await asyncio.wait_for(blocked, timeout=1)
        for _ in range(10):
            await channel.send(ExecutionEvent.completed([]))
        await channel.finish()

        assert channel.discarding
        assert await channel.receive() is None

    async def test_finish_on_full_queue(self):
        channel = EventChannel(1)
        await channel.send(ExecutionEvent.started(1, []))

        await asyncio.wait_for(channel.finish(), timeout=1)

        first = await channel.receive()
        assert first.type == EventType.STARTED
        assert await asyncio.wait_for(channel.receive(), timeout=1) is None

    async def test_finish_is_idempotent(self):
        channel = EventChannel(2)
        await channel.finish()
        await channel.finish()

        assert await channel.receive() is None


class TestStepTracker:
    def test_legal_sequence(self):
        tracker = StepTracker(["a"])
        for status in (StepStatus.PENDING, StepStatus.RUNNING, StepStatus.COMPLETED):
            tracker.transition("a", status)

        assert tracker.status("a") == StepStatus.COMPLETED
        assert tracker.count(StepStatus.COMPLETED) == 1

    def test_no_repeats(self):
        tracker = StepTracker(["a"])
        tracker.transition("a", StepStatus.PENDING)

        with pytest.raises(InternalError, match="pending -> pending"):
            tracker.transition("a", StepStatus.PENDING)

    def test_no_skipping(self):
        tracker = StepTracker(["a"])

        with pytest.raises(InternalError, match="new -> running"):
            tracker.transition("a", StepStatus.RUNNING)

    def test_terminal_is_final(self):
        tracker = StepTracker(["a"])
        for status in (StepStatus.PENDING, StepStatus.RUNNING, StepStatus.ERROR):
            tracker.transition("a", status)

        with pytest.raises(InternalError):
            tracker.transition("a", StepStatus.COMPLETED)

    def test_unknown_step(self):
        with pytest.raises(InternalError, match="Unknown step"):
            StepTracker([]).transition("ghost", StepStatus.PENDING)

    def test_statuses_skip_untouched(self):
        tracker = StepTracker(["a", "b"])
        tracker.transition("a", StepStatus.PENDING)

        assert tracker.statuses() == {"a": StepStatus.PENDING}

"""Tests for per-key apply coordination."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from models.errors import NoOpenBatchError, PersistenceError
from services.apply_coordinator import (
    ApplyCoordinator,
    ApplyStatus,
    InvalidTransitionError,
)
from services.notifications import NotificationLevel

KEYS = ["goal-0", "belief-0", "trigger-0"]


class GatedWriter:
    """Writer that blocks until released, counting invocations."""

    def __init__(self, result="ok", error: Exception | None = None):
        self.calls = 0
        self.result = result
        self.error = error
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        self.started.set()
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.result


class TestBatchLifecycle:
    def test_open_starts_every_key_idle(self, coordinator):
        batch_id = coordinator.open(KEYS)

        assert batch_id
        assert coordinator.is_open
        assert coordinator.keys() == KEYS
        for key in KEYS:
            assert coordinator.status(key) is ApplyStatus.IDLE
            assert not coordinator.is_applied(key)
            assert not coordinator.is_applying(key)
        assert coordinator.applied_count() == 0

    def test_open_accepts_suggestion_batch(self, coordinator, sample_batch):
        coordinator.open(sample_batch, batch_id="batch-1")
        assert coordinator.batch_id == "batch-1"
        assert coordinator.keys() == sample_batch.keys()

    @pytest.mark.asyncio
    async def test_reopen_discards_previous_state(self, coordinator):
        coordinator.open(KEYS)
        await coordinator.apply("goal-0", AsyncMock(return_value=None))

        coordinator.open(["goal-0"])

        assert coordinator.status("goal-0") is ApplyStatus.IDLE
        assert coordinator.status("belief-0") is None
        assert coordinator.applied_count() == 0

    @pytest.mark.asyncio
    async def test_close_reports_applied_count(self, coordinator, notifier):
        coordinator.open(KEYS)
        await coordinator.apply("goal-0", AsyncMock(return_value=None))
        await coordinator.apply("belief-0", AsyncMock(return_value=None))
        notifier.clear()

        assert coordinator.close() == 2

        infos = notifier.history(NotificationLevel.INFO)
        assert [n.message for n in infos] == ["2 item(s) applied"]
        assert not coordinator.is_open
        assert coordinator.keys() == []

    def test_close_without_applies_is_silent(self, coordinator, notifier):
        coordinator.open(KEYS)
        assert coordinator.close() == 0
        assert notifier.history() == []

    def test_close_when_not_open(self, coordinator):
        assert coordinator.close() == 0


class TestApply:
    @pytest.mark.asyncio
    async def test_success_marks_applied(self, coordinator, notifier):
        coordinator.open(KEYS)
        writer = AsyncMock(return_value={"id": 1})

        record = await coordinator.apply("goal-0", writer, label="goal 'Run'")

        writer.assert_awaited_once()
        assert coordinator.is_applied("goal-0")
        assert coordinator.applied_count() == 1
        assert record.result == {"id": 1}
        assert record.attempts == 1
        assert record.duration_ms is not None
        [notification] = notifier.history()
        assert notification.level is NotificationLevel.SUCCESS
        assert notification.message == "Applied goal 'Run'"
        assert notification.key == "goal-0"
        assert notification.payload["batch_id"] == coordinator.batch_id

    @pytest.mark.asyncio
    async def test_double_submit_invokes_writer_once(self, coordinator):
        coordinator.open(KEYS)
        writer = GatedWriter()

        first = asyncio.create_task(coordinator.apply("goal-0", writer))
        await writer.started.wait()
        assert coordinator.is_applying("goal-0")

        second = await coordinator.apply("goal-0", writer)
        assert second.status is ApplyStatus.APPLYING

        writer.release.set()
        await first

        assert writer.calls == 1
        assert coordinator.is_applied("goal-0")

    @pytest.mark.asyncio
    async def test_applied_key_is_not_rewritten(self, coordinator):
        coordinator.open(KEYS)
        writer = AsyncMock(return_value=None)

        await coordinator.apply("goal-0", writer)
        await coordinator.apply("goal-0", writer)

        assert writer.await_count == 1
        assert coordinator.applied_count() == 1

    @pytest.mark.asyncio
    async def test_failure_retains_reason_and_notifies(self, coordinator, notifier):
        coordinator.open(KEYS)
        error = PersistenceError("title is required", status_code=400)

        record = await coordinator.apply("goal-0", AsyncMock(side_effect=error), label="goal 'Run'")

        assert coordinator.is_failed("goal-0")
        assert coordinator.error("goal-0") is error
        assert record.reason == "title is required"
        [notification] = notifier.history()
        assert notification.level is NotificationLevel.ERROR
        assert notification.message == "Failed to apply goal 'Run': title is required"
        assert notification.payload["error"]["status_code"] == 400
        assert notification.payload["error"]["error"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_failed_key_independent_and_retryable(self, coordinator):
        coordinator.open(KEYS)
        middle = AsyncMock(side_effect=[ConnectionError("connection reset"), {"id": 2}])

        await asyncio.gather(
            coordinator.apply("goal-0", AsyncMock(return_value={"id": 1})),
            coordinator.apply("belief-0", middle),
            coordinator.apply("trigger-0", AsyncMock(return_value={"id": 3})),
        )

        assert coordinator.is_applied("goal-0")
        assert coordinator.is_failed("belief-0")
        assert coordinator.is_applied("trigger-0")
        assert coordinator.applied_count() == 2
        assert coordinator.pending_keys() == ["belief-0"]

        record = await coordinator.apply("belief-0", middle)

        assert record.status is ApplyStatus.APPLIED
        assert record.attempts == 2
        assert record.error is None
        assert coordinator.applied_count() == 3
        assert coordinator.snapshot() == {key: "applied" for key in KEYS}

    @pytest.mark.asyncio
    async def test_apply_without_open_batch(self, coordinator):
        writer = AsyncMock()
        with pytest.raises(NoOpenBatchError):
            await coordinator.apply("goal-0", writer)
        writer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_key_is_registered(self, coordinator):
        coordinator.open(KEYS)
        await coordinator.apply("goal-9", AsyncMock(return_value=None))
        assert coordinator.is_applied("goal-9")
        assert "goal-9" in coordinator.keys()

    @pytest.mark.asyncio
    async def test_cancelled_writer_marks_failed(self, coordinator):
        coordinator.open(KEYS)
        writer = GatedWriter()

        task = asyncio.create_task(coordinator.apply("goal-0", writer))
        await writer.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert coordinator.is_failed("goal-0")
        assert isinstance(coordinator.error("goal-0"), asyncio.CancelledError)


class TestStaleResults:
    """Writers that resolve after their batch is gone are ignored."""

    @pytest.mark.asyncio
    async def test_late_success_after_close(self, coordinator, notifier):
        coordinator.open(KEYS)
        writer = GatedWriter()

        task = asyncio.create_task(coordinator.apply("goal-0", writer))
        await writer.started.wait()
        coordinator.close()
        writer.release.set()
        record = await task

        assert record.status is ApplyStatus.APPLYING
        assert not coordinator.is_current(record)
        assert notifier.history(NotificationLevel.SUCCESS) == []

    @pytest.mark.asyncio
    async def test_late_failure_after_reopen(self, coordinator, notifier):
        coordinator.open(KEYS)
        writer = GatedWriter(error=ConnectionError("reset"))

        task = asyncio.create_task(coordinator.apply("goal-0", writer))
        await writer.started.wait()
        coordinator.open(KEYS)
        writer.release.set()
        await task

        assert coordinator.status("goal-0") is ApplyStatus.IDLE
        assert notifier.history(NotificationLevel.ERROR) == []


class TestTransitions:
    @pytest.mark.asyncio
    async def test_applied_is_terminal(self, coordinator):
        coordinator.open(KEYS)
        await coordinator.apply("goal-0", AsyncMock(return_value=None))
        record = coordinator.record("goal-0")

        with pytest.raises(InvalidTransitionError):
            coordinator._transition(record, ApplyStatus.APPLYING)

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_break_apply(self):
        class BrokenSink:
            def notify(self, notification):
                raise RuntimeError("sink down")

        coordinator = ApplyCoordinator(notifier=BrokenSink())
        coordinator.open(KEYS)

        records = await asyncio.gather(
            coordinator.apply("goal-0", AsyncMock(return_value={"id": 1})),
            coordinator.apply("belief-0", AsyncMock(side_effect=ConnectionError("reset"))),
            coordinator.apply("trigger-0", AsyncMock(return_value={"id": 3})),
        )

        assert [r.status for r in records] == [
            ApplyStatus.APPLIED,
            ApplyStatus.FAILED,
            ApplyStatus.APPLIED,
        ]
        assert coordinator.close() == 2

    def test_works_without_notifier(self):
        coordinator = ApplyCoordinator()
        coordinator.open(KEYS)
        assert coordinator.close() == 0

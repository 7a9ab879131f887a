"""Per-suggestion apply coordination.

The coordinator owns the apply state of one open suggestion batch: a map from
suggestion key to an ApplyRecord whose status moves through

    idle -> applying -> applied | failed
    failed -> applying            (retry)

applied is terminal for the lifetime of the batch.

Design:
- The coordinator is kind-agnostic: callers hand it a zero-argument async
  writer per key (goal create, identity merge-and-save, ...)
- At most one writer is in flight per key. The applying transition happens
  before the first await, so a second apply() for the same key issued before
  the first resolves is a no-op
- Keys are independent: a failure is recorded for its key only and nothing
  is retried or rolled back automatically
- Every open()/close() bumps a generation counter; a writer resolving after
  its batch was closed or replaced is ignored

Usage:
    coordinator = ApplyCoordinator(notifier=NotificationService())
    coordinator.open(batch)
    await coordinator.apply("goal-0", writer, label="Goal")
    coordinator.close()
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Union
from uuid import uuid4

from models.errors import InsightError, NoOpenBatchError, describe_error
from models.suggestions import SuggestionBatch
from services.notifications import Notification, NotificationLevel, NotificationSink
from utils.logging import get_logger

logger = get_logger(__name__)

Writer = Callable[[], Awaitable[Any]]


class ApplyStatus(Enum):
    """Apply state of one suggestion key."""

    IDLE = "idle"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


_TRANSITIONS: dict[ApplyStatus, frozenset[ApplyStatus]] = {
    ApplyStatus.IDLE: frozenset({ApplyStatus.APPLYING}),
    ApplyStatus.APPLYING: frozenset({ApplyStatus.APPLIED, ApplyStatus.FAILED}),
    ApplyStatus.FAILED: frozenset({ApplyStatus.APPLYING}),
    ApplyStatus.APPLIED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """An apply status change outside the allowed transitions."""

    def __init__(self, key: str, current: ApplyStatus, target: ApplyStatus):
        super().__init__(f"{key}: cannot move from {current.value} to {target.value}")


@dataclass
class ApplyRecord:
    """Apply state and outcome for one suggestion key.

    Attributes:
        key: Stable suggestion key
        generation: Batch generation the record belongs to
        status: Current ApplyStatus
        error: Writer failure reason, retained as raised
        result: Value returned by the last successful writer
        attempts: Number of times the writer was invoked
        started_at: When the current/last attempt started
        finished_at: When the last attempt resolved
    """

    key: str
    generation: int
    status: ApplyStatus = ApplyStatus.IDLE
    error: Optional[BaseException] = None
    result: Any = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = field(default=None)

    @property
    def reason(self) -> Optional[str]:
        return describe_error(self.error) if self.error is not None else None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000


class ApplyCoordinator:
    """Tracks apply state for one suggestion batch at a time.

    All state lives on the event loop thread; the applying guard is the only
    synchronization needed.
    """

    def __init__(self, notifier: NotificationSink | None = None):
        self._notifier = notifier
        self._records: dict[str, ApplyRecord] = {}
        self._generation = 0
        self._is_open = False
        self.batch_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Batch lifecycle
    # ------------------------------------------------------------------

    def open(
        self,
        batch: Union[SuggestionBatch, Iterable[str]],
        batch_id: str | None = None,
    ) -> str:
        """Start tracking a batch; every key starts idle.

        Any previous batch's state is discarded and its in-flight writers
        become stale.

        Returns:
            The batch id
        """
        keys = batch.keys() if isinstance(batch, SuggestionBatch) else list(batch)

        self._generation += 1
        self._is_open = True
        self.batch_id = batch_id or str(uuid4())
        self._records = {key: ApplyRecord(key=key, generation=self._generation) for key in keys}

        logger.info(
            f"Opened suggestion batch {self.batch_id}",
            extra={"batch_id": self.batch_id, "key_count": len(self._records)},
        )
        return self.batch_id

    def close(self) -> int:
        """Discard all state and report batch completion.

        In-flight writers are not cancelled; their late results are ignored.

        Returns:
            Number of items applied in the closed batch
        """
        if not self._is_open:
            return 0

        applied = self.applied_count()
        in_flight = [key for key, r in self._records.items() if r.status is ApplyStatus.APPLYING]
        if in_flight:
            logger.info(
                f"Closing batch {self.batch_id} with {len(in_flight)} write(s) in flight",
                extra={"batch_id": self.batch_id, "in_flight": in_flight},
            )

        if applied > 0:
            self._notify(NotificationLevel.INFO, f"{applied} item(s) applied", None)

        logger.info(
            f"Closed suggestion batch {self.batch_id}",
            extra={"batch_id": self.batch_id, "applied_count": applied},
        )

        self._generation += 1
        self._is_open = False
        self._records = {}
        self.batch_id = None
        return applied

    @property
    def is_open(self) -> bool:
        return self._is_open

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply(
        self,
        key: str,
        writer: Writer,
        label: str | None = None,
    ) -> ApplyRecord:
        """Run writer for key unless it is already applying or applied.

        Args:
            key: Suggestion key
            writer: Zero-argument coroutine function performing the write
            label: Human-readable name used in notifications (defaults to key)

        Returns:
            The key's ApplyRecord after this call

        Raises:
            NoOpenBatchError: If no batch is open
        """
        if not self._is_open:
            raise NoOpenBatchError(key)

        record = self._records.get(key)
        if record is None:
            logger.debug(f"Registering key {key} outside the opened batch")
            record = self._records[key] = ApplyRecord(key=key, generation=self._generation)

        if record.status in (ApplyStatus.APPLYING, ApplyStatus.APPLIED):
            logger.debug(
                f"Ignoring apply for {key}: already {record.status.value}",
                extra={"batch_id": self.batch_id, "key": key},
            )
            return record

        self._transition(record, ApplyStatus.APPLYING)
        record.attempts += 1
        record.error = None
        record.started_at = datetime.now(UTC)
        record.finished_at = None
        label = label or key

        try:
            result = await writer()
        except asyncio.CancelledError as e:
            if self.is_current(record):
                self._finish(record, ApplyStatus.FAILED, error=e)
            raise
        except Exception as e:
            if not self.is_current(record):
                self._log_stale(record, "failure")
                return record
            self._finish(record, ApplyStatus.FAILED, error=e)
            logger.warning(
                f"Apply failed for {key}: {describe_error(e)}",
                extra={
                    "batch_id": self.batch_id,
                    "key": key,
                    "attempt": record.attempts,
                    "error_type": type(e).__name__,
                },
            )
            self._notify(
                NotificationLevel.ERROR,
                f"Failed to apply {label}: {describe_error(e)}",
                key,
                error=e.to_response().model_dump() if isinstance(e, InsightError) else None,
            )
            return record

        if not self.is_current(record):
            self._log_stale(record, "success")
            return record

        self._finish(record, ApplyStatus.APPLIED, result=result)
        logger.info(
            f"Applied {key}",
            extra={
                "batch_id": self.batch_id,
                "key": key,
                "attempt": record.attempts,
                "duration_ms": record.duration_ms,
            },
        )
        self._notify(NotificationLevel.SUCCESS, f"Applied {label}", key)
        return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, key: str) -> Optional[ApplyStatus]:
        record = self._records.get(key)
        return record.status if record else None

    def record(self, key: str) -> Optional[ApplyRecord]:
        return self._records.get(key)

    def error(self, key: str) -> Optional[BaseException]:
        record = self._records.get(key)
        return record.error if record else None

    def is_applied(self, key: str) -> bool:
        return self.status(key) is ApplyStatus.APPLIED

    def is_applying(self, key: str) -> bool:
        return self.status(key) is ApplyStatus.APPLYING

    def is_failed(self, key: str) -> bool:
        return self.status(key) is ApplyStatus.FAILED

    def applied_count(self) -> int:
        return sum(1 for r in self._records.values() if r.status is ApplyStatus.APPLIED)

    def keys(self) -> list[str]:
        return list(self._records)

    def pending_keys(self) -> list[str]:
        """Keys that an apply() call would actually run (idle or failed)."""
        return [
            key
            for key, r in self._records.items()
            if r.status in (ApplyStatus.IDLE, ApplyStatus.FAILED)
        ]

    def snapshot(self) -> dict[str, str]:
        return {key: r.status.value for key, r in self._records.items()}

    def is_current(self, record: ApplyRecord) -> bool:
        """True if record belongs to the open batch (not a stale generation)."""
        return (
            self._is_open
            and record.generation == self._generation
            and self._records.get(record.key) is record
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, record: ApplyRecord, target: ApplyStatus) -> None:
        if target not in _TRANSITIONS[record.status]:
            raise InvalidTransitionError(record.key, record.status, target)
        record.status = target

    def _finish(
        self,
        record: ApplyRecord,
        status: ApplyStatus,
        result: Any = None,
        error: BaseException | None = None,
    ) -> None:
        self._transition(record, status)
        record.finished_at = datetime.now(UTC)
        record.result = result
        record.error = error

    def _log_stale(self, record: ApplyRecord, outcome: str) -> None:
        logger.info(
            f"Ignoring late {outcome} for {record.key} from a closed batch",
            extra={"key": record.key, "generation": record.generation},
        )

    def _notify(
        self,
        level: NotificationLevel,
        message: str,
        key: str | None,
        error: dict | None = None,
    ) -> None:
        if self._notifier is None:
            return
        payload = {"batch_id": self.batch_id}
        if error is not None:
            payload["error"] = error
        try:
            self._notifier.notify(Notification(level=level, message=message, key=key, payload=payload))
        except Exception as e:
            # Key state is already settled here
            logger.warning(f"Notification sink failed for {key or 'batch'}: {e}")

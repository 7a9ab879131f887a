"""Review session for one batch of extracted suggestions.

Ties a SuggestionBatch to the ApplyCoordinator and the InsightApplier: a key
from the batch resolves to its suggestion, a writer and a label, and the
coordinator does the rest. apply_all() applies every pending key
concurrently, bounded by settings.apply_max_concurrency when it is set.

Usage:
    session = InsightReviewSession(ApplyCoordinator(notifier), InsightApplier(client))
    session.open(batch)
    await session.apply("goal-0")
    await session.apply_all()
    session.close()
"""

import asyncio
from typing import Any, Optional

from config import get_settings
from models.errors import NoOpenBatchError, UnknownSuggestionError
from models.suggestions import Suggestion, SuggestionBatch
from services.apply_coordinator import ApplyCoordinator, ApplyRecord
from services.insight_applier import InsightApplier, describe_suggestion
from utils.logging import LogContext, get_logger

logger = get_logger(__name__)


class InsightReviewSession:
    """Applies accepted suggestions from the batch under review."""

    def __init__(
        self,
        coordinator: ApplyCoordinator,
        applier: InsightApplier,
        max_concurrency: int | None = None,
    ):
        self.coordinator = coordinator
        self.applier = applier
        self.batch: Optional[SuggestionBatch] = None
        if max_concurrency is None:
            max_concurrency = get_settings().apply_max_concurrency
        self.max_concurrency = max_concurrency

    def open(self, batch: SuggestionBatch, batch_id: str | None = None) -> str:
        self.batch = batch
        return self.coordinator.open(batch, batch_id=batch_id)

    def close(self) -> int:
        applied = self.coordinator.close()
        self.batch = None
        return applied

    def suggestion(self, key: str) -> Suggestion:
        if self.batch is None:
            raise NoOpenBatchError(key)
        suggestion = self.batch.get(key)
        if suggestion is None:
            raise UnknownSuggestionError(key)
        return suggestion

    async def apply(self, key: str) -> ApplyRecord:
        """Apply one suggestion by key.

        Raises:
            NoOpenBatchError: If no batch is open
            UnknownSuggestionError: If key is not in the open batch
        """
        suggestion = self.suggestion(key)
        with LogContext(batch_id=self.coordinator.batch_id):
            return await self.coordinator.apply(
                key,
                self.applier.writer_for(suggestion),
                label=describe_suggestion(suggestion),
            )

    async def apply_all(self) -> list[ApplyRecord]:
        """Apply every idle or failed key; keys already applied are left alone."""
        if self.batch is None:
            raise NoOpenBatchError("*")

        keys = self.coordinator.pending_keys()
        if not keys:
            return []

        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency > 0 else None

        async def run(key: str) -> ApplyRecord:
            if semaphore is None:
                return await self.apply(key)
            async with semaphore:
                return await self.apply(key)

        logger.info(
            f"Applying {len(keys)} pending suggestion(s)",
            extra={"batch_id": self.coordinator.batch_id, "keys": keys},
        )
        return list(await asyncio.gather(*(run(key) for key in keys)))

    def result(self, key: str) -> Any:
        """Refreshed canonical state returned by the key's successful write."""
        record = self.coordinator.record(key)
        return record.result if record else None

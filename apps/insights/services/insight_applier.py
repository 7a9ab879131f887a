"""Kind-specific writers that persist accepted suggestions.

Each apply_* coroutine performs one suggestion's write and returns the
persisted value with its list fields canonicalized, which becomes the
refreshed canonical state for that entity.

- goal / belief / trigger: create a new record from the suggestion payload
- identity: fetch the current record, merge each list field, save
- person: existing person -> fetch, merge, update; otherwise create
"""

import asyncio
from collections import defaultdict
from functools import partial
from typing import Any

from models.suggestions import (
    BeliefSuggestion,
    EntityKind,
    GoalSuggestion,
    IdentitySuggestion,
    PersonInsightSuggestion,
    Suggestion,
    TriggerSuggestion,
)
from services.apply_coordinator import Writer
from services.persistence_client import (
    IDENTITY_LIST_FIELDS,
    PERSON_LIST_FIELDS,
    PersistenceClient,
    canonicalize_entity,
)
from utils.logging import get_logger
from utils.merge import merge_fields

logger = get_logger(__name__)

# Person fields an insight apply may extend
PERSON_MERGE_FIELDS = tuple(PersonInsightSuggestion.STORAGE_FIELDS.values())

# Person fields carried over unchanged on update
PERSON_KEPT_FIELDS = ("name", "relationship", "how_met", "shared_experiences")


def append_notes(existing: str | None, observations: str) -> str:
    """Append observations to existing notes, separated by a blank line."""
    existing = (existing or "").strip()
    if not observations:
        return existing
    if not existing:
        return observations
    return f"{existing}\n\n{observations}"


def describe_suggestion(suggestion: Suggestion) -> str:
    """Short human-readable label used in notifications."""
    if isinstance(suggestion, GoalSuggestion):
        return f"goal '{suggestion.title}'"
    if isinstance(suggestion, BeliefSuggestion):
        return "belief"
    if isinstance(suggestion, TriggerSuggestion):
        return f"trigger '{suggestion.title}'"
    if isinstance(suggestion, IdentitySuggestion):
        return "identity"
    if isinstance(suggestion, PersonInsightSuggestion):
        if suggestion.is_existing:
            return f"insights for {suggestion.person_name}"
        return f"new person {suggestion.person_name}"
    return suggestion.kind.value


class InsightApplier:
    """Builds persistence writers for suggestions."""

    def __init__(self, client: PersistenceClient):
        self.client = client
        # Person updates are read-modify-write; one at a time per person
        self._person_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._handlers = {
            EntityKind.GOAL: self.apply_goal,
            EntityKind.BELIEF: self.apply_belief,
            EntityKind.TRIGGER: self.apply_trigger,
            EntityKind.IDENTITY: self.apply_identity,
            EntityKind.PERSON: self.apply_person,
        }

    def writer_for(self, suggestion: Suggestion) -> Writer:
        """Zero-argument writer for the Apply Coordinator."""
        return partial(self._handlers[suggestion.kind], suggestion)

    async def apply_goal(self, suggestion: GoalSuggestion) -> dict[str, Any]:
        return await self.client.create_goal(suggestion.payload())

    async def apply_belief(self, suggestion: BeliefSuggestion) -> dict[str, Any]:
        return await self.client.create_belief(suggestion.payload())

    async def apply_trigger(self, suggestion: TriggerSuggestion) -> dict[str, Any]:
        return await self.client.create_trigger(suggestion.payload())

    async def apply_identity(self, suggestion: IdentitySuggestion) -> dict[str, Any]:
        existing = await self.client.get_identity()
        merged = merge_fields(existing, suggestion.payload(), IDENTITY_LIST_FIELDS)
        record = {"vision": existing.get("vision") or suggestion.vision, **merged}

        logger.debug(
            "Saving merged identity",
            extra={name: len(merged[name]) for name in IDENTITY_LIST_FIELDS},
        )
        await self.client.save_identity(record)
        return canonicalize_entity(record, IDENTITY_LIST_FIELDS)

    async def apply_person(self, suggestion: PersonInsightSuggestion) -> dict[str, Any]:
        if not suggestion.is_existing:
            payload = suggestion.payload()
            created = await self.client.create_person(payload)
            return created or canonicalize_entity(payload, PERSON_LIST_FIELDS)

        async with self._person_locks[suggestion.target_id]:
            return await self._update_person(suggestion)

    async def _update_person(self, suggestion: PersonInsightSuggestion) -> dict[str, Any]:
        existing = await self.client.get_person(suggestion.target_id)
        merged = merge_fields(existing, suggestion.storage_fields(), PERSON_MERGE_FIELDS)

        record = {name: existing.get(name) for name in PERSON_KEPT_FIELDS}
        record.update(merged)
        record["conversation_style"] = (
            suggestion.conversation_style or existing.get("conversation_style") or ""
        )
        record["notes"] = append_notes(existing.get("notes"), suggestion.observations)

        updated = await self.client.update_person(suggestion.target_id, record)
        return updated or canonicalize_entity(record, PERSON_LIST_FIELDS)

"""Suggestion models produced by the AI extraction service.

Every suggestion is immutable once built. List-typed fields are passed
through canonicalize() at construction time, even when the extraction
service already returned a proper array: that service may itself round-trip
through the same lossy storage layer. Scalar fields are trimmed and
None-coalesced.
"""

import math
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from utils.canonical_list import canonicalize
from utils.logging import get_logger

logger = get_logger(__name__)


class EntityKind(str, Enum):
    """Kind of entity a suggestion targets."""

    GOAL = "goal"
    BELIEF = "belief"
    TRIGGER = "trigger"
    IDENTITY = "identity"
    PERSON = "person"


# The identity record is a per-user singleton, so its key carries no index
IDENTITY_KEY = EntityKind.IDENTITY.value


def suggestion_key(kind: EntityKind, discriminator: int | str) -> str:
    """Stable key for a suggestion: kind plus index or target id."""
    return f"{kind.value}-{discriminator}"


def _clean_scalar(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return value


def _coerce_number(value: Any, cast: type) -> Any:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    # inf and nan have no integer form
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        return cast(value)
    except OverflowError:
        return None


class Suggestion(BaseModel):
    """Base class for all suggestion variants.

    Subclasses declare LIST_FIELDS (CanonicalList-typed) and SCALAR_FIELDS
    (trimmed text). target_id is set only when the suggestion updates an
    existing entity; None means "create new".
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    kind: ClassVar[EntityKind]
    LIST_FIELDS: ClassVar[tuple[str, ...]] = ()
    SCALAR_FIELDS: ClassVar[tuple[str, ...]] = ()

    target_id: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _normalize_field(cls, value: Any, info: ValidationInfo) -> Any:
        if info.field_name in cls.LIST_FIELDS:
            return tuple(canonicalize(value))
        if info.field_name in cls.SCALAR_FIELDS:
            text = _clean_scalar(value)
            return text if isinstance(text, str) else str(text)
        return value

    @field_validator("target_id", mode="before")
    @classmethod
    def _normalize_target_id(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, bool):
            return None
        text = str(value).strip()
        return text or None

    @property
    def is_existing(self) -> bool:
        return self.target_id is not None

    def payload(self) -> dict[str, Any]:
        """Flat field-name -> value mapping sent to the persistence API."""
        data = {}
        for name in self.SCALAR_FIELDS + self.LIST_FIELDS:
            value = getattr(self, name)
            data[name] = list(value) if isinstance(value, tuple) else value
        return data

    def has_content(self) -> bool:
        return any(getattr(self, name) for name in self.SCALAR_FIELDS + self.LIST_FIELDS)


class GoalSuggestion(Suggestion):
    kind: ClassVar[EntityKind] = EntityKind.GOAL
    SCALAR_FIELDS: ClassVar[tuple[str, ...]] = ("title", "description", "area", "target_date")

    title: str = ""
    description: str = ""
    area: str = ""
    target_date: str = ""

    def has_content(self) -> bool:
        return bool(self.title)


class BeliefSuggestion(Suggestion):
    kind: ClassVar[EntityKind] = EntityKind.BELIEF
    SCALAR_FIELDS: ClassVar[tuple[str, ...]] = ("current_belief", "desired_belief", "change_plan")

    current_belief: str = ""
    desired_belief: str = ""
    change_plan: str = ""

    def has_content(self) -> bool:
        return bool(self.current_belief and self.desired_belief)


class TriggerSuggestion(Suggestion):
    """Anxiety trigger. intensity is 1-10 when present; range is enforced server-side."""

    kind: ClassVar[EntityKind] = EntityKind.TRIGGER
    SCALAR_FIELDS: ClassVar[tuple[str, ...]] = ("title", "category", "notes")

    title: str = ""
    category: str = ""
    intensity: Optional[int] = None
    notes: str = ""

    @field_validator("intensity", mode="before")
    @classmethod
    def _coerce_intensity(cls, value: Any) -> Optional[int]:
        return _coerce_number(value, int)

    def payload(self) -> dict[str, Any]:
        data = super().payload()
        data["intensity"] = self.intensity
        return data

    def has_content(self) -> bool:
        return bool(self.title)


class IdentitySuggestion(Suggestion):
    """Additions to the user's identity record (always merged, never created)."""

    kind: ClassVar[EntityKind] = EntityKind.IDENTITY
    SCALAR_FIELDS: ClassVar[tuple[str, ...]] = ("vision",)
    LIST_FIELDS: ClassVar[tuple[str, ...]] = ("values", "principles", "traits", "vision_points")

    vision: str = ""
    values: tuple[str, ...] = ()
    principles: tuple[str, ...] = ()
    traits: tuple[str, ...] = ()
    vision_points: tuple[str, ...] = ()

    def has_content(self) -> bool:
        return any(getattr(self, name) for name in self.LIST_FIELDS)


class PersonInsightSuggestion(Suggestion):
    """Insights about a person mentioned in a journal entry.

    Accepts the extraction shape directly:
        {"person_name": "Sam", "is_existing_person": true,
         "existing_person_id": 7, "new_insights": {...}, "confidence": 0.8}
    """

    kind: ClassVar[EntityKind] = EntityKind.PERSON
    SCALAR_FIELDS: ClassVar[tuple[str, ...]] = (
        "person_name",
        "conversation_style",
        "observations",
    )
    LIST_FIELDS: ClassVar[tuple[str, ...]] = ("interests", "personality_traits", "preferences")

    # Stored person fields the list insights land in
    STORAGE_FIELDS: ClassVar[dict[str, str]] = {
        "interests": "interests",
        "personality_traits": "personality_traits",
        "preferences": "story_preferences",
    }

    target_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("target_id", "existing_person_id"),
    )
    person_name: str = ""
    interests: tuple[str, ...] = ()
    personality_traits: tuple[str, ...] = ()
    preferences: tuple[str, ...] = ()
    conversation_style: str = ""
    observations: str = ""
    confidence: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_new_insights(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        nested = data.pop("new_insights", None)
        if isinstance(nested, dict):
            for name, value in nested.items():
                data.setdefault(name, value)
        # An explicit "new person" flag wins over a stray id. The existing
        # flag without an id cannot be applied and falls back to create.
        if data.get("is_existing_person") is False:
            data.pop("existing_person_id", None)
        return data

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: Any) -> Optional[float]:
        return _coerce_number(value, float)

    def storage_fields(self) -> dict[str, list[str]]:
        """List insights keyed by the person record's field names."""
        return {stored: list(getattr(self, name)) for name, stored in self.STORAGE_FIELDS.items()}

    def payload(self) -> dict[str, Any]:
        """Create-person payload."""
        return {
            "name": self.person_name,
            **self.storage_fields(),
            "conversation_style": self.conversation_style,
            "notes": self.observations,
        }

    def has_content(self) -> bool:
        return bool(self.person_name)


class SuggestionBatch(BaseModel):
    """All suggestions presented together for one review."""

    model_config = ConfigDict(frozen=True)

    goals: tuple[GoalSuggestion, ...] = ()
    beliefs: tuple[BeliefSuggestion, ...] = ()
    triggers: tuple[TriggerSuggestion, ...] = ()
    identity: Optional[IdentitySuggestion] = None
    people: tuple[PersonInsightSuggestion, ...] = ()

    def keyed(self) -> list[tuple[str, Suggestion]]:
        """(key, suggestion) pairs in display order."""
        pairs: list[tuple[str, Suggestion]] = []
        for kind, items in (
            (EntityKind.GOAL, self.goals),
            (EntityKind.BELIEF, self.beliefs),
            (EntityKind.TRIGGER, self.triggers),
        ):
            pairs.extend((suggestion_key(kind, idx), item) for idx, item in enumerate(items))
        if self.identity is not None and self.identity.has_content():
            pairs.append((IDENTITY_KEY, self.identity))
        seen_targets: set[str] = set()
        for idx, person in enumerate(self.people):
            if person.is_existing and person.target_id not in seen_targets:
                seen_targets.add(person.target_id)
                key = suggestion_key(EntityKind.PERSON, person.target_id)
            elif person.is_existing:
                # Later insights about the same person keep their own key
                key = suggestion_key(EntityKind.PERSON, f"{person.target_id}-{idx}")
            else:
                key = suggestion_key(EntityKind.PERSON, f"new-{idx}")
            pairs.append((key, person))
        return pairs

    def keys(self) -> list[str]:
        return [key for key, _ in self.keyed()]

    def get(self, key: str) -> Optional[Suggestion]:
        for candidate, suggestion in self.keyed():
            if candidate == key:
                return suggestion
        return None

    @property
    def is_empty(self) -> bool:
        return not self.keyed()

    @classmethod
    def from_extraction(cls, data: Any) -> "SuggestionBatch":
        """Build a batch from loosely-shaped extraction output.

        Items that are not objects, fail validation, or carry no usable
        content are dropped with a warning rather than failing the batch.
        """
        if not isinstance(data, dict):
            logger.warning(f"Extraction output is not an object: {type(data).__name__}")
            return cls()

        identity_raw = data.get("identity")
        identity = _build_one(IdentitySuggestion, identity_raw) if identity_raw else None

        return cls(
            goals=_build_many(GoalSuggestion, data.get("goals")),
            beliefs=_build_many(BeliefSuggestion, data.get("beliefs")),
            triggers=_build_many(TriggerSuggestion, data.get("triggers")),
            identity=identity,
            people=_build_many(
                PersonInsightSuggestion,
                data.get("people_insights", data.get("people")),
            ),
        )


def _build_one(model: type[Suggestion], raw: Any) -> Optional[Any]:
    if not isinstance(raw, dict):
        logger.warning(f"Skipping {model.kind.value} suggestion that is not an object: {raw!r:.80}")
        return None
    try:
        item = model.model_validate(raw)
    except ValidationError as e:
        logger.warning(
            f"Skipping invalid {model.kind.value} suggestion: {e.error_count()} error(s)",
            extra={"kind": model.kind.value, "errors": e.errors(include_url=False)},
        )
        return None
    if not item.has_content():
        logger.debug(f"Skipping empty {model.kind.value} suggestion")
        return None
    return item


def _build_many(model: type[Suggestion], raw: Any) -> tuple:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raw = [raw]
    built = (_build_one(model, item) for item in raw)
    return tuple(item for item in built if item is not None)

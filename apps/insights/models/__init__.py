# Models
from models.errors import (
    ErrorResponse,
    ErrorType,
    InsightError,
    NoOpenBatchError,
    PersistenceError,
    UnknownSuggestionError,
)
from models.suggestions import (
    BeliefSuggestion,
    EntityKind,
    GoalSuggestion,
    IdentitySuggestion,
    PersonInsightSuggestion,
    Suggestion,
    SuggestionBatch,
    TriggerSuggestion,
)

__all__ = [
    "ErrorResponse",
    "ErrorType",
    "InsightError",
    "NoOpenBatchError",
    "PersistenceError",
    "UnknownSuggestionError",
    "BeliefSuggestion",
    "EntityKind",
    "GoalSuggestion",
    "IdentitySuggestion",
    "PersonInsightSuggestion",
    "Suggestion",
    "SuggestionBatch",
    "TriggerSuggestion",
]

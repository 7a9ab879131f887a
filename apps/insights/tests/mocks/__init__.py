"""Mock implementations for testing."""

from .llm_mock import MockLLMClient
from .persistence_mock import FakePersistenceAPI

__all__ = [
    "MockLLMClient",
    "FakePersistenceAPI",
]

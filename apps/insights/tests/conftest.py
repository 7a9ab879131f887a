"""Shared pytest fixtures for insight apply tests."""

from unittest.mock import AsyncMock, patch

import pytest

from models.suggestions import SuggestionBatch
from services.apply_coordinator import ApplyCoordinator
from services.insight_applier import InsightApplier
from services.notifications import NotificationService
from services.persistence_client import PersistenceClient
from tests.mocks import FakePersistenceAPI, MockLLMClient

# ============================================================================
# Notification Fixtures
# ============================================================================


@pytest.fixture
def notifier():
    """In-memory notification sink; inspect with notifier.history()."""
    return NotificationService()


@pytest.fixture
def coordinator(notifier):
    return ApplyCoordinator(notifier=notifier)


# ============================================================================
# Persistence API Fixtures
# ============================================================================


@pytest.fixture
def fake_api():
    """In-memory persistence API.

    Example:
        async def test_create_goal(fake_api, persistence_client):
            fake_api.fail("POST", "/api/goals", status=400, error="title is required")
            with pytest.raises(PersistenceError):
                await persistence_client.create_goal({})
    """
    return FakePersistenceAPI()


@pytest.fixture
async def persistence_client(fake_api):
    client = PersistenceClient(
        base_url="http://persistence.test",
        token="test-token",
        timeout=5.0,
        read_retries=3,
        retry_base_delay=0.0,
        transport=fake_api.transport,
    )
    yield client
    await client.close()


@pytest.fixture
def applier(persistence_client):
    return InsightApplier(persistence_client)


@pytest.fixture
def no_sleep():
    """Skip retry backoff delays."""
    with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


# ============================================================================
# LLM Fixtures
# ============================================================================


@pytest.fixture
def mock_llm_client():
    """Create a mock LLM client."""
    return MockLLMClient()


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def sample_extraction():
    """Extraction output as the AI collaborator returns it, lossy lists included."""
    return {
        "goals": [
            {"title": "Run a half marathon", "description": "Train 4x a week", "area": "health"},
            {"title": "Read 12 books", "area": "growth"},
        ],
        "beliefs": [
            {
                "current_belief": "I am bad at public speaking",
                "desired_belief": "I can learn to speak well",
                "change_plan": "Join a speaking club",
            }
        ],
        "triggers": [{"title": "Crowded rooms", "category": "social", "intensity": "7"}],
        "identity": {
            "values": '["Honesty", "Courage"]',
            "principles": ["Show up daily"],
            "traits": "[\"curious\"]",
            "vision_points": [],
        },
        "people_insights": [
            {
                "person_name": "Sam",
                "is_existing_person": True,
                "existing_person_id": 7,
                "new_insights": {
                    "interests": ["climbing", "Jazz"],
                    "personality_traits": ["witty"],
                    "preferences": ["short stories"],
                    "conversation_style": "dry humor",
                    "observations": "Talked about a new climbing gym",
                },
                "confidence": 0.8,
            },
            {
                "person_name": "the barista",
                "is_existing_person": False,
                "existing_person_id": None,
                "new_insights": {"interests": ["coffee"], "observations": "Knows every regular"},
            },
        ],
    }


@pytest.fixture
def sample_batch(sample_extraction):
    return SuggestionBatch.from_extraction(sample_extraction)

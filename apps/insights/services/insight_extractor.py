"""LLM-backed extraction of suggestions from journal entries.

Two passes, each a single JSON-only prompt:
- journal insights: goals, beliefs, triggers and identity additions
- people insights: observations about people mentioned, matched against the
  user's existing people by id

Whatever shape the model returns is turned into a SuggestionBatch; items the
model gets wrong are dropped there, and an unparseable response yields an
empty batch. Errors talking to the LLM itself propagate to the caller.
"""

from typing import Any, Iterable

from models.suggestions import SuggestionBatch
from services.llm import LLMClient, get_llm_client
from utils.json_extraction import extract_json_from_response
from utils.logging import get_logger

logger = get_logger(__name__)

JOURNAL_SYSTEM_PROMPT = (
    "You help a person turn their journal into concrete self-improvement steps. "
    "Respond with valid JSON only, no markdown code blocks."
)

JOURNAL_INSIGHTS_PROMPT = """Analyze this journal entry and suggest additions to the writer's records.

Journal Entry:
"{text}"

Suggest only what the entry clearly supports:
- goals the writer is working toward
- limiting beliefs together with the belief they want instead
- anxiety triggers, with an intensity from 1 to 10
- identity additions: values, principles, character traits and vision points

Format your response as:
{{
  "goals": [
    {{"title": "...", "description": "...", "area": "...", "target_date": "YYYY-MM-DD or empty"}}
  ],
  "beliefs": [
    {{"current_belief": "...", "desired_belief": "...", "change_plan": "..."}}
  ],
  "triggers": [
    {{"title": "...", "category": "...", "intensity": 5, "notes": "..."}}
  ],
  "identity": {{
    "values": ["..."],
    "principles": ["..."],
    "traits": ["..."],
    "vision_points": ["..."]
  }}
}}

Use empty lists for anything the entry does not mention."""

PEOPLE_INSIGHTS_PROMPT = """Analyze this journal entry and extract insights about the people mentioned in it.

Journal Entry:
"{text}"

Existing People in Database:
{people}

Identify:
1. People mentioned (by name or description like "my colleague", "the barista", etc.)
2. For each person: interests and hobbies, personality traits, conversation
   style, things they seemed to enjoy or dislike, and other observations

If a person matches an existing person by name, set "is_existing_person": true
and "existing_person_id" to that person's ID. Otherwise set
"is_existing_person": false and "existing_person_id": null.

Format your response as:
{{
  "people_insights": [
    {{
      "person_name": "Name or description of person",
      "is_existing_person": false,
      "existing_person_id": null,
      "new_insights": {{
        "interests": ["interest1", "interest2"],
        "personality_traits": ["trait1", "trait2"],
        "conversation_style": "style description",
        "preferences": ["preference1", "preference2"],
        "observations": "What you observed about them"
      }},
      "confidence": 0.8
    }}
  ]
}}

Only include people who are clearly mentioned or described. Be conservative."""


def format_existing_people(people: Iterable[dict[str, Any]]) -> str:
    """Render existing people as 'ID: 1, Name: Sam' entries for the prompt."""
    entries = [
        f"ID: {person.get('id')}, Name: {person.get('name')}"
        for person in people
        if person.get("id") is not None and person.get("name")
    ]
    return ", ".join(entries) if entries else "No existing people in database"


class InsightExtractor:
    """Turns journal text into SuggestionBatches via the LLM."""

    def __init__(self, llm: LLMClient | None = None):
        self.llm = llm or get_llm_client()

    async def extract_journal_insights(self, text: str) -> SuggestionBatch:
        if not text or not text.strip():
            return SuggestionBatch()

        response = await self.llm.generate(
            JOURNAL_INSIGHTS_PROMPT.format(text=text.strip()),
            system_prompt=JOURNAL_SYSTEM_PROMPT,
        )
        data = extract_json_from_response(response, context="journal_insights")
        if data is None:
            return SuggestionBatch()

        batch = SuggestionBatch.from_extraction(data)
        logger.info(
            f"Extracted {len(batch.keys())} journal suggestion(s)",
            extra={
                "goals": len(batch.goals),
                "beliefs": len(batch.beliefs),
                "triggers": len(batch.triggers),
                "has_identity": batch.identity is not None,
            },
        )
        return batch

    async def extract_people_insights(
        self,
        text: str,
        existing_people: Iterable[dict[str, Any]] = (),
    ) -> SuggestionBatch:
        if not text or not text.strip():
            return SuggestionBatch()

        response = await self.llm.generate(
            PEOPLE_INSIGHTS_PROMPT.format(
                text=text.strip(), people=format_existing_people(existing_people)
            ),
            system_prompt=JOURNAL_SYSTEM_PROMPT,
        )
        data = extract_json_from_response(response, context="people_insights")
        if data is None:
            return SuggestionBatch()
        if isinstance(data, list):
            data = {"people_insights": data}

        batch = SuggestionBatch.from_extraction(data)
        logger.info(
            f"Extracted insights for {len(batch.people)} person(s)",
            extra={"existing": sum(1 for p in batch.people if p.is_existing)},
        )
        return batch

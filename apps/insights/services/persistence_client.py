"""Async client for the persistence API.

The API stores list fields as serialized strings and has been observed to
hand them back double-encoded or split into characters. Every list field
read through this client is passed through canonicalize() before it reaches
callers, so the rest of the package only ever sees CanonicalLists.

The API performs no merging. Callers that update an existing identity or
person fetch it first, merge, and submit the full merged record.

Reads are retried on transient failures; writes are not, since a retried
create could insert twice.
"""

from typing import Any, Optional

import httpx

from config import get_settings
from models.errors import PersistenceError
from utils.canonical_list import canonicalize
from utils.logging import get_logger
from utils.retry import retry_call

logger = get_logger(__name__)

IDENTITY_LIST_FIELDS = ("values", "principles", "traits", "vision_points")
PERSON_LIST_FIELDS = ("interests", "personality_traits", "shared_experiences", "story_preferences")


def canonicalize_entity(entity: dict[str, Any], list_fields: tuple[str, ...]) -> dict[str, Any]:
    """Copy of entity with each list field decoded to a CanonicalList."""
    cleaned = dict(entity)
    for name in list_fields:
        cleaned[name] = canonicalize(entity.get(name))
    return cleaned


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for field_name in ("error", "message", "detail"):
            if body.get(field_name):
                return str(body[field_name])
    text = response.text.strip()
    return text[:200] if text else f"HTTP {response.status_code}"


class PersistenceClient:
    """Kind-specific create/update calls against the persistence API.

    Usage:
        async with PersistenceClient() as client:
            identity = await client.get_identity()
            await client.save_identity({...})
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        read_retries: int | None = None,
        retry_base_delay: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.persistence_api_url).rstrip("/")
        self.read_retries = read_retries if read_retries is not None else settings.persistence_read_retries
        self.retry_base_delay = retry_base_delay

        token = token if token is not None else settings.get_persistence_api_token()
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout if timeout is not None else settings.persistence_timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "PersistenceClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, json: Any = None) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            raise PersistenceError(
                f"{method} {path} failed: {type(e).__name__}: {e}",
                details={"method": method, "path": path},
            ) from e

        if response.is_error:
            message = _error_message(response)
            logger.warning(
                f"Persistence API {method} {path} returned {response.status_code}: {message}",
                extra={"method": method, "path": path, "status_code": response.status_code},
            )
            raise PersistenceError(
                message,
                status_code=response.status_code,
                details={"method": method, "path": path},
            )

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            logger.debug(f"Non-JSON body from {method} {path}")
            return {}
        return data if isinstance(data, dict) else {"data": data}

    async def _read(self, path: str) -> dict[str, Any]:
        return await retry_call(
            lambda: self._request("GET", path),
            max_attempts=self.read_retries,
            backoff_base=self.retry_base_delay,
            retry_if=lambda e: isinstance(e, PersistenceError) and e.is_retryable,
            name=f"GET {path}",
        )

    # ------------------------------------------------------------------
    # Goals, beliefs, triggers (create only)
    # ------------------------------------------------------------------

    async def create_goal(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/api/goals", json=payload)

    async def create_belief(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/api/beliefs", json=payload)

    async def create_trigger(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/api/triggers", json=payload)

    # ------------------------------------------------------------------
    # Identity (per-user singleton)
    # ------------------------------------------------------------------

    async def get_identity(self) -> dict[str, Any]:
        """Current identity record with canonical list fields.

        A user without a record gets an empty identity.
        """
        data = await self._read("/api/identity")
        identity = data.get("identity") or {}
        if not isinstance(identity, dict):
            identity = {}
        cleaned = canonicalize_entity(identity, IDENTITY_LIST_FIELDS)
        cleaned["vision"] = (identity.get("vision") or "").strip()
        return cleaned

    async def save_identity(self, identity: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/api/identity", json=identity)

    # ------------------------------------------------------------------
    # People
    # ------------------------------------------------------------------

    async def get_person(self, person_id: str) -> dict[str, Any]:
        data = await self._read(f"/api/people/{person_id}")
        person = data.get("person")
        if not isinstance(person, dict):
            raise PersistenceError(f"Person {person_id} not found", status_code=404)
        return canonicalize_entity(person, PERSON_LIST_FIELDS)

    async def create_person(self, payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        data = await self._request("POST", "/api/people", json=payload)
        person = data.get("person")
        return canonicalize_entity(person, PERSON_LIST_FIELDS) if isinstance(person, dict) else None

    async def update_person(self, person_id: str, payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        data = await self._request("PUT", f"/api/people/{person_id}", json=payload)
        person = data.get("person")
        return canonicalize_entity(person, PERSON_LIST_FIELDS) if isinstance(person, dict) else None

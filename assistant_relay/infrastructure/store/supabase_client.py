"""
Context store client - message log, typed memory table and health probe.

Talks to the store's PostgREST interface (``/rest/v1``) and its edge function
endpoint (``/functions/v1/search``) over httpx. Every transport or HTTP failure
surfaces as StoreError; callers decide whether to log and continue.
"""

from typing import Any, Dict, List, Optional
import re
from datetime import datetime, timezone

import httpx
import structlog

from assistant_relay.domain.models.session_state import (
    MemoryKind, MemoryRecord, MessageRole, StoredMessage
)

logger = structlog.get_logger(__name__)

DEFAULT_CHANNEL = "relay"

# Open goals fetched per DONE lookup before the literal substring check
GOAL_MATCH_CANDIDATES = 20

LIKE_SPECIAL = re.compile(r"([\\%_])")


class StoreError(Exception):
    """Store read or write failed"""


def normalize_deadline(deadline: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 date or timestamp; anything else is not a timestamp"""

    if not deadline:
        return None
    try:
        parsed = datetime.fromisoformat(deadline.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def ilike_contains(text: str) -> str:
    """PostgREST ilike filter matching text as a substring; '*' cannot be escaped and stays a wildcard"""
    escaped = LIKE_SPECIAL.sub(r"\\\1", text)
    return f"ilike.*{escaped}*"


class ContextStoreClient:
    """Typed access to the remote persistent store"""

    def __init__(
        self,
        url: str,
        api_key: str,
        channel: str = DEFAULT_CHANNEL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url.rstrip("/")
        self.channel = channel
        self.available = True
        self._client = httpx.AsyncClient(
            base_url=self.url,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StoreError(
                f"{method} {path} failed with {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {path} failed: {e}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise StoreError(f"{method} {path} returned invalid JSON") from e

    # ------------------------------------------------------------------
    # Message log (append-only)
    # ------------------------------------------------------------------

    async def save_message(
        self,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Append a message to the conversation log"""

        await self._request(
            "POST",
            "/rest/v1/messages",
            json={
                "role": MessageRole(role).value,
                "content": content,
                "channel": self.channel,
                "metadata": metadata or {},
            },
            headers={"Prefer": "return=minimal"},
        )

    async def get_recent_messages(self, limit: int = 20) -> List[StoredMessage]:
        """Most recent messages, newest first"""

        rows = await self._request(
            "GET",
            "/rest/v1/messages",
            params={"select": "*", "order": "created_at.desc", "limit": limit},
        )
        return [StoredMessage(**row) for row in rows or []]

    # ------------------------------------------------------------------
    # Typed memory table
    # ------------------------------------------------------------------

    async def insert_fact(self, content: str) -> None:
        """Store a fact"""

        await self._request(
            "POST",
            "/rest/v1/memory",
            json={"type": MemoryKind.FACT.value, "content": content},
            headers={"Prefer": "return=minimal"},
        )

    async def insert_goal(self, content: str, deadline: Optional[str] = None) -> None:
        """Store a goal; free-text deadlines are folded into the content"""

        deadline_at = normalize_deadline(deadline)
        if deadline and deadline_at is None:
            content = f"{content} (deadline: {deadline.strip()})"

        await self._request(
            "POST",
            "/rest/v1/memory",
            json={
                "type": MemoryKind.GOAL.value,
                "content": content,
                "deadline": deadline_at.isoformat() if deadline_at else None,
            },
            headers={"Prefer": "return=minimal"},
        )

    async def find_open_goal(self, search_text: str) -> Optional[MemoryRecord]:
        """Most recently created open goal whose content contains search_text (case-insensitive)"""

        needle = search_text.strip()
        rows = await self._request(
            "GET",
            "/rest/v1/memory",
            params={
                "select": "*",
                "type": f"eq.{MemoryKind.GOAL.value}",
                "content": ilike_contains(needle),
                "order": "created_at.desc",
                "limit": GOAL_MATCH_CANDIDATES,
            },
        )
        for row in rows or []:
            if needle.casefold() in row.get("content", "").casefold():
                return self._to_record(row)
        return None

    async def complete_goal(self, search_text: str) -> Optional[str]:
        """
        Mark the matching open goal as completed in place.

        Returns:
            The completed goal's id, or None when nothing matched
        """

        goal = await self.find_open_goal(search_text)
        if goal is None:
            return None

        await self._request(
            "PATCH",
            "/rest/v1/memory",
            params={"id": f"eq.{goal.id}"},
            json={
                "type": MemoryKind.COMPLETED_GOAL.value,
                "completed_at": datetime.now(timezone.utc).isoformat(),
            },
            headers={"Prefer": "return=minimal"},
        )
        return goal.id

    async def get_facts(self) -> List[MemoryRecord]:
        """All facts, newest first"""

        rows = await self._request(
            "GET",
            "/rest/v1/memory",
            params={
                "select": "*",
                "type": f"eq.{MemoryKind.FACT.value}",
                "order": "created_at.desc",
            },
        )
        return [self._to_record(row) for row in rows or []]

    async def get_active_goals(self) -> List[MemoryRecord]:
        """Open goals, earliest deadline first, undated last, then newest"""

        rows = await self._request(
            "GET",
            "/rest/v1/memory",
            params={
                "select": "*",
                "type": f"eq.{MemoryKind.GOAL.value}",
                "order": "deadline.asc.nullslast,created_at.desc",
            },
        )
        return [self._to_record(row) for row in rows or []]

    # ------------------------------------------------------------------
    # Probes and best-effort lookups
    # ------------------------------------------------------------------

    async def health_check(self) -> bool:
        """Cheap read classifying the store as reachable"""

        try:
            await self._request(
                "GET", "/rest/v1/messages", params={"select": "id", "limit": 1}
            )
        except StoreError as e:
            logger.warning("Store health check failed", error=str(e))
            self.available = False
            return False

        self.available = True
        return True

    async def search_messages(self, query: str, limit: int = 5) -> List[StoredMessage]:
        """Nearest past messages for query; empty on any failure"""

        try:
            rows = await self._request(
                "POST",
                "/functions/v1/search",
                json={"query": query, "match_count": limit, "table": "messages"},
            )
        except StoreError as e:
            logger.debug("Semantic search unavailable", error=str(e))
            return []

        if not isinstance(rows, list):
            return []

        results = []
        for row in rows[:limit]:
            try:
                results.append(StoredMessage(**row))
            except (TypeError, ValueError):
                logger.debug("Skipping malformed search row")
        return results

    @staticmethod
    def _to_record(row: Dict[str, Any]) -> MemoryRecord:
        return MemoryRecord(
            id=str(row.get("id")) if row.get("id") is not None else None,
            kind=row.get("type", MemoryKind.FACT.value),
            content=row.get("content", ""),
            deadline=row.get("deadline"),
            completed_at=row.get("completed_at"),
            created_at=row.get("created_at"),
        )

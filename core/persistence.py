"""
BLOOMFIT Persistence Client

Outbound calls to the wellness REST backend (exercise sessions, mood
entries, chat transcripts). Falls back to an in-memory store when no API
base URL is configured (MOCK MODE).
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from typing import Any, Deque, Dict, List, Literal, Optional, Tuple, TYPE_CHECKING

import aiohttp
from pydantic import BaseModel, Field

from core.config import settings
from shared.utils import get_now_iso

if TYPE_CHECKING:
    from exercise_service.models.exercise_session import SessionSummary

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """A submission to the persistence collaborator failed."""

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


@dataclass
class StoredRecord:
    """Acknowledgment returned by the persistence collaborator."""
    record_id: Any
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)
    stored_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class MoodEntry(BaseModel):
    mood: int = Field(ge=1, le=10)
    energy: Optional[int] = Field(default=None, ge=1, le=10)
    anxiety: Optional[int] = Field(default=None, ge=1, le=10)
    notes: Optional[str] = None


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: str = Field(default_factory=get_now_iso)


class ChatTranscript(BaseModel):
    """A conversation with the assistant, stored as one record."""
    messages: List[ChatMessage] = Field(min_length=1)

    @classmethod
    def exchange(cls, message: str, response: str) -> "ChatTranscript":
        return cls(messages=[
            ChatMessage(role="user", content=message),
            ChatMessage(role="assistant", content=response),
        ])


# ═══════════════════════════════════════════════════════════════════════════════
# AUTH COLLABORATOR
# ═══════════════════════════════════════════════════════════════════════════════

class TokenProvider:
    """Supplies the bearer credential attached to outbound calls."""

    def __init__(self, token: Optional[str] = None):
        self._token = token if token is not None else settings.API_TOKEN

    def get_token(self) -> Optional[str]:
        return self._token or None

    def auth_headers(self) -> Dict[str, str]:
        token = self.get_token()
        return {"Authorization": f"Bearer {token}"} if token else {}


# ═══════════════════════════════════════════════════════════════════════════════
# REPOSITORIES
# ═══════════════════════════════════════════════════════════════════════════════

class SessionRepository:
    """Interface to the persistence collaborator."""

    async def save_exercise_session(self, summary: "SessionSummary") -> StoredRecord:
        raise NotImplementedError

    async def save_mood_entry(self, entry: MoodEntry) -> StoredRecord:
        raise NotImplementedError

    async def save_chat_transcript(self, transcript: ChatTranscript) -> StoredRecord:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class InMemorySessionRepository(SessionRepository):
    """Mock-mode store; keeps records in process memory."""

    def __init__(self):
        self.records: List[StoredRecord] = []
        self._ids = count(1)

    def _store(self, kind: str, data: Dict[str, Any]) -> StoredRecord:
        record = StoredRecord(record_id=next(self._ids), kind=kind, data=data)
        self.records.append(record)
        logger.debug(f"💾 [mock] stored {kind} #{record.record_id}")
        return record

    async def save_exercise_session(self, summary: "SessionSummary") -> StoredRecord:
        return self._store("exercise_session", summary.to_payload())

    async def save_mood_entry(self, entry: MoodEntry) -> StoredRecord:
        return self._store("mood_entry", entry.model_dump(exclude_none=True))

    async def save_chat_transcript(self, transcript: ChatTranscript) -> StoredRecord:
        return self._store("chat_transcript", transcript.model_dump())


class HttpSessionRepository(SessionRepository):
    """
    REST client for the wellness backend.

    Endpoints:
    - POST /api/exercise-sessions
    - POST /api/mood-entries
    - POST /api/chat/conversations
    """

    RETRYABLE_STATUSES = {408, 429}

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[TokenProvider] = None,
        timeout: Optional[float] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.token_provider = token_provider or TokenProvider()
        self.timeout = timeout or settings.API_TIMEOUT
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def _post(self, path: str, kind: str, payload: Dict[str, Any]) -> StoredRecord:
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json", **self.token_provider.auth_headers()}
        session = await self._get_session()

        try:
            async with session.post(url, json=payload, headers=headers) as response:
                if response.status >= 400:
                    detail = await response.text()
                    retryable = response.status >= 500 or response.status in self.RETRYABLE_STATUSES
                    raise PersistenceError(
                        f"POST {path} failed with {response.status}: {detail[:200]}",
                        status=response.status,
                        retryable=retryable
                    )
                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise PersistenceError(f"POST {path} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise PersistenceError(f"POST {path} timed out after {self.timeout}s") from e

        data = data if isinstance(data, dict) else {"result": data}
        logger.info(f"📤 Stored {kind} (id: {data.get('id')})")
        return StoredRecord(record_id=data.get("id"), kind=kind, data=data)

    async def save_exercise_session(self, summary: "SessionSummary") -> StoredRecord:
        return await self._post("/api/exercise-sessions", "exercise_session", summary.to_payload())

    async def save_mood_entry(self, entry: MoodEntry) -> StoredRecord:
        return await self._post("/api/mood-entries", "mood_entry", entry.model_dump(exclude_none=True))

    async def save_chat_transcript(self, transcript: ChatTranscript) -> StoredRecord:
        return await self._post("/api/chat/conversations", "chat_transcript", transcript.model_dump())

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


# ═══════════════════════════════════════════════════════════════════════════════
# PENDING SUBMISSIONS
# ═══════════════════════════════════════════════════════════════════════════════

class PendingSubmissionQueue:
    """Session summaries whose submission failed, kept until acknowledged."""

    def __init__(self, max_size: int = 50):
        self._items: Deque["SessionSummary"] = deque(maxlen=max_size)

    def __len__(self) -> int:
        return len(self._items)

    def add(self, summary: "SessionSummary") -> None:
        if len(self._items) == self._items.maxlen:
            logger.warning("⚠️ Pending queue full, dropping oldest session summary")
        self._items.append(summary)

    def items(self) -> List["SessionSummary"]:
        return list(self._items)

    async def retry(self, repository: SessionRepository) -> Tuple[List[StoredRecord], List["SessionSummary"]]:
        """
        Resubmit pending summaries in order.

        Stops at the first retryable failure so ordering is preserved;
        non-retryable failures are dropped with an error log.
        """
        stored: List[StoredRecord] = []
        while self._items:
            summary = self._items[0]
            try:
                stored.append(await repository.save_exercise_session(summary))
            except PersistenceError as e:
                if e.retryable:
                    logger.warning(f"⚠️ Retry failed, {len(self._items)} summaries still pending: {e}")
                    break
                logger.error(f"❌ Dropping unsubmittable session summary: {e}")
            self._items.popleft()
        return stored, list(self._items)


# ═══════════════════════════════════════════════════════════════════════════════
# MODULE-LEVEL SINGLETON
# ═══════════════════════════════════════════════════════════════════════════════

_repository: Optional[SessionRepository] = None


def get_repository() -> SessionRepository:
    """Get or create the persistence repository for the configured backend."""
    global _repository
    if _repository is None:
        if settings.API_BASE_URL:
            _repository = HttpSessionRepository(settings.API_BASE_URL)
            logger.info(f"🔗 Persistence API: {settings.API_BASE_URL}")
        else:
            _repository = InMemorySessionRepository()
            logger.warning("⚠️ No API_BASE_URL set. Running in MOCK MODE - sessions kept in memory.")
    return _repository

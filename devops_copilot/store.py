from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import Settings, get_settings
from .errors import StoreError
from .logging_config import get_logger
from .models import HistoryEntry
from .supabase_client import get_supabase_client

logger = get_logger(__name__)

Transcript = List[HistoryEntry]


class TranscriptStore(ABC):
  """
  Durable key-value persistence of one transcript per session id.

  ``put`` replaces the whole transcript in a single write, so readers never
  observe a partially written history.
  """

  @abstractmethod
  async def get(self, session_id: str) -> Optional[Transcript]:  # pragma: no cover - interface
    raise NotImplementedError

  @abstractmethod
  async def put(self, session_id: str, transcript: Transcript) -> None:  # pragma: no cover - interface
    raise NotImplementedError


class InMemoryTranscriptStore(TranscriptStore):
  """
  Process-local store keyed by session id, for development and tests.
  """

  def __init__(self) -> None:
    self._sessions: Dict[str, Transcript] = {}
    self._lock = threading.Lock()

  async def get(self, session_id: str) -> Optional[Transcript]:
    with self._lock:
      stored = self._sessions.get(session_id)
      return list(stored) if stored is not None else None

  async def put(self, session_id: str, transcript: Transcript) -> None:
    with self._lock:
      self._sessions[session_id] = list(transcript)

  def session_ids(self) -> List[str]:
    with self._lock:
      return list(self._sessions)


class SupabaseTranscriptStore(TranscriptStore):
  """
  Stores each transcript as one row: ``session_id`` (primary key),
  ``history`` (jsonb list of ``{role, content}``) and ``updated_at``.

  The Supabase client is synchronous, so calls run in a worker thread.
  """

  def __init__(self, client: Any, table: str = "chat_transcripts") -> None:
    self._client = client
    self._table = table

  async def get(self, session_id: str) -> Optional[Transcript]:
    try:
      result = await asyncio.to_thread(self._select, session_id)
    except Exception as e:
      raise StoreError("Unable to load conversation history.", details=str(e)) from e

    data = getattr(result, "data", None)
    if not isinstance(data, list) or not data:
      return None

    rows = data[0].get("history") or []
    transcript: Transcript = []
    for row in rows:
      try:
        transcript.append(HistoryEntry.model_validate(row))
      except Exception as e:
        logger.warning(
          f"Skipping malformed history entry: {str(e)}",
          extra={"session_id": session_id},
        )
    logger.debug(f"Loaded {len(transcript)} history entries", extra={"session_id": session_id})
    return transcript

  async def put(self, session_id: str, transcript: Transcript) -> None:
    row = {
      "session_id": session_id,
      "history": [entry.as_turn() for entry in transcript],
      "updated_at": datetime.now(timezone.utc).isoformat(),
    }
    try:
      await asyncio.to_thread(self._upsert, row)
    except Exception as e:
      raise StoreError("Unable to save conversation history.", details=str(e)) from e

  def _select(self, session_id: str) -> Any:
    return (
      self._client.table(self._table)
      .select("history")
      .eq("session_id", session_id)
      .limit(1)
      .execute()
    )

  def _upsert(self, row: Dict[str, Any]) -> Any:
    return self._client.table(self._table).upsert(row, on_conflict="session_id").execute()


def create_transcript_store(settings: Optional[Settings] = None) -> TranscriptStore:
  """
  Build the configured store. Falls back to the in-memory store when
  Supabase is requested but not configured.
  """
  settings = settings or get_settings()

  if settings.transcript_store == "supabase":
    client = get_supabase_client()
    if client is not None:
      logger.info(f"Using Supabase transcript store (table={settings.supabase_transcript_table})")
      return SupabaseTranscriptStore(client, settings.supabase_transcript_table)
    logger.warning("Supabase transcript store requested but unavailable - using in-memory store")

  return InMemoryTranscriptStore()

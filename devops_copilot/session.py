from __future__ import annotations

import asyncio
import weakref
from collections import OrderedDict
from typing import List, Optional, Set

from .errors import GatewayError, StoreError, StreamCollectionError, ValidationError
from .gateway import ModelGateway
from .logging_config import get_logger
from .models import ChatRole, HistoryEntry
from .store import Transcript, TranscriptStore
from .streams import DEFAULT_MAX_BUFFER, TeeReader, collect_text, one_shot_stream, tee

logger = get_logger(__name__)

HISTORY_LIMIT = 10

# Strong references so detached capture tasks are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


def trim_history(history: List[HistoryEntry], limit: int = HISTORY_LIMIT) -> Transcript:
  """Keep the newest ``limit`` entries, dropping the oldest first."""
  if len(history) <= limit:
    return list(history)
  return list(history[len(history) - limit:])


def _supervise(task: asyncio.Task, session_id: str) -> None:
  _background_tasks.add(task)

  def _done(finished: asyncio.Task) -> None:
    _background_tasks.discard(finished)
    if finished.cancelled():
      logger.warning("Transcript capture cancelled", extra={"session_id": session_id})
      return
    error = finished.exception()
    if error is None:
      return
    if isinstance(error, StreamCollectionError):
      logger.warning(
          f"{error.message} ({error.details})",
          extra={"session_id": session_id},
      )
    else:
      logger.error(
          f"Transcript capture crashed: {error}",
          exc_info=(type(error), error, error.__traceback__),
          extra={"session_id": session_id},
      )

  task.add_done_callback(_done)


def _release_reader(loop: asyncio.AbstractEventLoop, reader: TeeReader) -> None:
  # Runs from the garbage collector, possibly outside the loop's thread
  if reader.closed or loop.is_closed():
    return

  def _schedule() -> None:
    task = loop.create_task(reader.aclose())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

  loop.call_soon_threadsafe(_schedule)


class ChatStream:
  """
  The client-facing copy of one reply.

  Iterating yields the model's raw bytes. ``wait_committed`` lets a caller
  wait for the background capture without ever seeing its errors.

  A ChatStream dropped without being read or closed (a client that went away
  before the body started) releases its copy when collected, so the capture
  copy is never held back by a reader nobody owns.
  """

  def __init__(self, session_id: str, reader: TeeReader, capture: asyncio.Task) -> None:
    self.session_id = session_id
    self._reader = reader
    self._capture = capture
    self._finalizer = weakref.finalize(self, _release_reader, asyncio.get_running_loop(), reader)
    self._finalizer.atexit = False

  def __aiter__(self) -> TeeReader:
    return self._reader

  async def aclose(self) -> None:
    await self._reader.aclose()

  async def wait_committed(self) -> bool:
    """True when the exchange was appended to the transcript."""
    await asyncio.wait({self._capture})
    if self._capture.cancelled() or self._capture.exception() is not None:
      return False
    return bool(self._capture.result())


class ChatSession:
  """
  Owns the transcript of one conversation.

  Exchanges are serialized: a new message waits until the previous reply has
  been captured and committed before it reads the history, so commits land
  in arrival order and none overwrites another.
  """

  def __init__(
    self,
    session_id: str,
    gateway: ModelGateway,
    store: TranscriptStore,
    system_prompt: str,
    model: Optional[str] = None,
    history_limit: int = HISTORY_LIMIT,
    max_buffer: int = DEFAULT_MAX_BUFFER,
  ) -> None:
    self.session_id = session_id
    self.gateway = gateway
    self.store = store
    self.system_prompt = system_prompt
    self.model = model
    self.history_limit = history_limit
    self.max_buffer = max_buffer
    self._history_cache: Optional[Transcript] = None
    self._lock = asyncio.Lock()
    self._last_capture: Optional[asyncio.Task] = None

  @property
  def busy(self) -> bool:
    if self._lock.locked():
      return True
    return self._last_capture is not None and not self._last_capture.done()

  @property
  def pending_capture(self) -> Optional[asyncio.Task]:
    if self._last_capture is None or self._last_capture.done():
      return None
    return self._last_capture

  async def get_history(self) -> Transcript:
    if self._history_cache is not None:
      return list(self._history_cache)
    stored = await self.store.get(self.session_id)
    self._history_cache = trim_history(stored or [], self.history_limit)
    return list(self._history_cache)

  async def save_history(self, history: List[HistoryEntry]) -> None:
    # Cache first: the next exchange must not wait on the store round-trip
    self._history_cache = trim_history(history, self.history_limit)
    try:
      await self.store.put(self.session_id, list(self._history_cache))
    except StoreError as e:
      logger.error(
          f"Failed to persist chat history: {e.message}",
          extra={"session_id": self.session_id},
      )

  async def handle_message(self, message: str) -> ChatStream:
    text = message.strip() if isinstance(message, str) else ""
    if not text:
      raise ValidationError("`message` is required.")

    async with self._lock:
      await self._wait_for_previous_capture()
      history = await self.get_history()

      turns = [entry.as_turn() for entry in history]
      turns.append({"role": ChatRole.user.value, "content": text})

      try:
        result = await self.gateway.run(self.system_prompt, turns, stream=True, model=self.model)
      except GatewayError:
        raise
      except Exception as exc:
        logger.error(f"AI generation failed: {exc}", exc_info=True, extra={"session_id": self.session_id})
        raise GatewayError("AI generation failed.", details=str(exc)) from exc

      source = one_shot_stream(result) if isinstance(result, str) else result
      client_copy, capture_copy = tee(source, 2, max_buffer=self.max_buffer)

      capture = asyncio.create_task(self._capture(text, history, capture_copy))
      _supervise(capture, self.session_id)
      self._last_capture = capture

    logger.info(
        f"Streaming reply for message ({len(text)} chars, {len(history)} prior entries)",
        extra={"session_id": self.session_id},
    )
    return ChatStream(self.session_id, client_copy, capture)

  async def _capture(self, message: str, history: Transcript, capture_copy: TeeReader) -> bool:
    try:
      reply = await collect_text(capture_copy)
    except Exception as exc:
      raise StreamCollectionError(
        "Failed to collect model reply; history left unchanged.",
        details=str(exc),
      ) from exc

    await self.save_history(
      history
      + [
        HistoryEntry(role=ChatRole.user, content=message),
        HistoryEntry(role=ChatRole.assistant, content=reply),
      ]
    )
    logger.debug(f"Committed exchange ({len(reply)} reply chars)", extra={"session_id": self.session_id})
    return True

  async def _wait_for_previous_capture(self) -> None:
    previous = self._last_capture
    if previous is not None and not previous.done():
      await asyncio.wait({previous})


class SessionRegistry:
  """
  Maps each session id to exactly one resident ChatSession.

  Beyond ``max_sessions`` the least recently used idle sessions are dropped;
  their transcripts are reloaded from the store on next use.
  """

  def __init__(
    self,
    gateway: ModelGateway,
    store: TranscriptStore,
    system_prompt: str,
    model: Optional[str] = None,
    history_limit: int = HISTORY_LIMIT,
    max_buffer: int = DEFAULT_MAX_BUFFER,
    max_sessions: int = 1000,
  ) -> None:
    self.gateway = gateway
    self.store = store
    self.system_prompt = system_prompt
    self.model = model
    self.history_limit = history_limit
    self.max_buffer = max_buffer
    self.max_sessions = max_sessions
    self._sessions: "OrderedDict[str, ChatSession]" = OrderedDict()

  def __len__(self) -> int:
    return len(self._sessions)

  def __contains__(self, session_id: object) -> bool:
    return session_id in self._sessions

  def get(self, session_id: str) -> ChatSession:
    session = self._sessions.get(session_id)
    if session is not None:
      self._sessions.move_to_end(session_id)
      return session

    session = ChatSession(
      session_id,
      gateway=self.gateway,
      store=self.store,
      system_prompt=self.system_prompt,
      model=self.model,
      history_limit=self.history_limit,
      max_buffer=self.max_buffer,
    )
    self._sessions[session_id] = session
    self._evict_idle(keep=session_id)
    return session

  async def drain(self) -> None:
    """Wait for every in-flight transcript capture to finish."""
    pending = [
      session.pending_capture
      for session in self._sessions.values()
      if session.pending_capture is not None
    ]
    if pending:
      await asyncio.wait(pending)

  def _evict_idle(self, keep: str) -> None:
    excess = len(self._sessions) - self.max_sessions
    if excess <= 0:
      return
    for session_id in list(self._sessions):
      if excess <= 0:
        break
      if session_id == keep or self._sessions[session_id].busy:
        continue
      del self._sessions[session_id]
      excess -= 1
      logger.debug("Evicted idle session", extra={"session_id": session_id})

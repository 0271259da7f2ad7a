from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .client import ChatApiClient, ChatApiError, HealthStatus, generate_session_id
from .logging_config import get_logger
from .models import ChatRole

logger = get_logger(__name__)

SESSION_ID_KEY = "cf_chat_session_id"
ERROR_PREFIX = "Error: "
DEFAULT_STATE_PATH = Path.home() / ".devops_copilot" / "state.json"


class SendState(str, Enum):
  idle = "idle"
  sending = "sending"
  streaming = "streaming"
  settled = "settled"


@dataclass
class AgentMessage:
  role: ChatRole
  content: str
  id: str = field(default_factory=lambda: str(uuid.uuid4()))
  created_at: float = field(default_factory=time.time)
  pending: bool = False
  error: bool = False


class SessionIdStore:
  """
  Small JSON key-value file that keeps the session id across runs.

  Read and write failures are logged and otherwise ignored: a lost id only
  means a fresh conversation.
  """

  def __init__(self, path: Optional[Path] = None) -> None:
    self.path = Path(path) if path else DEFAULT_STATE_PATH

  def get(self, key: str) -> Optional[str]:
    value = self._read().get(key)
    return value if isinstance(value, str) and value else None

  def set(self, key: str, value: str) -> None:
    data = self._read()
    data[key] = value
    try:
      self.path.parent.mkdir(parents=True, exist_ok=True)
      self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    except OSError as e:
      logger.warning(f"Failed to save {key} to {self.path}: {e}")

  def load_or_create_session_id(self) -> str:
    stored = self.get(SESSION_ID_KEY)
    if stored:
      return stored
    session_id = generate_session_id()
    self.set(SESSION_ID_KEY, session_id)
    return session_id

  def save_session_id(self, session_id: str) -> None:
    self.set(SESSION_ID_KEY, session_id)

  def _read(self) -> Dict[str, Any]:
    if not self.path.exists():
      return {}
    try:
      data = json.loads(self.path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
      logger.warning(f"Failed to read {self.path}: {e}")
      return {}
    return data if isinstance(data, dict) else {}


class _AbortFlag:
  def __init__(self) -> None:
    self.aborted = False

  def abort(self) -> None:
    self.aborted = True


class ChatAgent:
  """
  Client-side conversation state: messages, loading flag, last error and the
  persisted session id.

  A send moves idle -> sending -> streaming -> settled. Only one exchange is
  live at a time: a new send, a retry or a clear aborts the previous one, and
  an aborted exchange never touches state again.
  """

  def __init__(
    self,
    client: ChatApiClient,
    storage: Optional[SessionIdStore] = None,
    on_change: Optional[Callable[["ChatAgent", Optional[AgentMessage]], None]] = None,
  ) -> None:
    self.client = client
    self.storage = storage or SessionIdStore()
    self.on_change = on_change

    self.messages: List[AgentMessage] = []
    self.is_loading = False
    self.error: Optional[str] = None
    self.state = SendState.idle
    self.succeeded: Optional[bool] = None
    self.health = HealthStatus.checking
    self.session_id = self.storage.load_or_create_session_id()

    self._abort: Optional[_AbortFlag] = None
    self._task: Optional[asyncio.Future] = None
    self._last_user_message: Optional[str] = None

  async def send_message(self, content: str) -> None:
    text = (content or "").strip()
    if not text:
      return

    self._last_user_message = text
    assistant = AgentMessage(role=ChatRole.assistant, content="", pending=True)
    self.messages.append(AgentMessage(role=ChatRole.user, content=text))
    self.messages.append(assistant)
    await self._start_exchange(text, assistant)

  async def retry_last_message(self) -> bool:
    """
    Re-send the last user text into the newest assistant message that is
    still pending or failed. Returns False when there is nothing to retry.
    """
    if not self._last_user_message:
      return False

    target = next(
      (
        message for message in reversed(self.messages)
        if message.role == ChatRole.assistant and (message.pending or message.error)
      ),
      None,
    )
    if target is None:
      return False

    target.content = ""
    target.pending = True
    target.error = False
    await self._start_exchange(self._last_user_message, target)
    return True

  def clear_chat(self) -> None:
    self.cancel()
    self._last_user_message = None
    self.messages = []
    self.is_loading = False
    self.error = None
    self.succeeded = None
    self.state = SendState.idle
    self.session_id = generate_session_id()
    self.storage.save_session_id(self.session_id)
    self._notify(None)

  def cancel(self) -> None:
    """Abort the live exchange and tear down its request."""
    if self._abort is not None:
      self._abort.abort()
      self._abort = None
    if self._task is not None:
      if not self._task.done():
        self._task.cancel()
      self._task = None

  async def refresh_health(self) -> HealthStatus:
    self.health = HealthStatus.checking
    self.health = await self.client.check_health()
    return self.health

  async def _start_exchange(self, text: str, target: AgentMessage) -> None:
    self.cancel()
    abort = _AbortFlag()
    task = asyncio.ensure_future(self._run_exchange(text, target, abort))
    self._abort = abort
    self._task = task
    try:
      await task
    except asyncio.CancelledError:
      # Superseded by a newer send, a retry or a clear
      if not abort.aborted:
        raise
    finally:
      if self._task is task:
        self._task = None

  async def _run_exchange(self, text: str, target: AgentMessage, abort: _AbortFlag) -> None:
    self.is_loading = True
    self.error = None
    self.succeeded = None
    self.state = SendState.sending
    self._notify(target)

    stream = None
    try:
      stream = await self.client.send_message(text, self.session_id)
      if abort.aborted:
        return

      self.state = SendState.streaming
      accumulated = ""
      async for chunk in stream:
        if abort.aborted:
          return
        accumulated += chunk
        target.content = accumulated
        self._notify(target)

      if abort.aborted:
        return
      target.pending = False
      self._settle(succeeded=True)
      self._notify(target)
    except Exception as exc:
      if abort.aborted:
        return
      if isinstance(exc, ChatApiError):
        message = exc.message
      else:
        message = str(exc) or "Failed to send message. Please try again."
      target.content = f"{ERROR_PREFIX}{message}"
      target.pending = False
      target.error = True
      self.error = message
      self._settle(succeeded=False)
      self._notify(target)
    finally:
      if stream is not None:
        await stream.aclose()
      if self._abort is abort:
        self._abort = None

  def _settle(self, succeeded: bool) -> None:
    self.is_loading = False
    self.succeeded = succeeded
    self.state = SendState.settled

  def _notify(self, message: Optional[AgentMessage]) -> None:
    if self.on_change is not None:
      self.on_change(self, message)

from __future__ import annotations

import math
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class ChatRole(str, Enum):
  user = "user"
  assistant = "assistant"


class HistoryEntry(BaseModel):
  """One transcript entry. Entries are never edited once appended."""

  model_config = ConfigDict(frozen=True)

  role: ChatRole
  content: str

  def as_turn(self) -> Dict[str, str]:
    return {"role": self.role.value, "content": self.content}


class SessionChatRequest(BaseModel):
  """Session-scoped chat: the server owns the history for ``sessionId``."""

  message: str
  sessionId: Optional[str] = None


class IncomingMessage(BaseModel):
  role: Optional[Any] = None
  content: Optional[Any] = None


class StatelessChatRequest(BaseModel):
  """
  Stateless chat: the caller sends the whole conversation. Every field
  accepts any JSON value: a non-list ``messages`` counts as no messages and
  invalid tuning values fall back to defaults.
  """

  messages: Optional[Any] = None
  model: Optional[Any] = None
  system: Optional[Any] = None
  temperature: Optional[Any] = None
  max_tokens: Optional[Any] = None
  top_p: Optional[Any] = None


class StatelessChatResponse(BaseModel):
  model: str
  response: str
  raw: Any = None


class HealthResponse(BaseModel):
  ok: bool = True
  timestamp: str


class GenerationOptions(BaseModel):
  temperature: float = 0.3
  max_tokens: int = 600
  top_p: float = 0.9


# (min, max, default) per tuning field
OPTION_RANGES = {
  "temperature": (0.0, 1.0, 0.3),
  "max_tokens": (32, 1024, 600),
  "top_p": (0.0, 1.0, 0.9),
}


def clamp(value: Any, minimum: float, maximum: float) -> Optional[float]:
  """
  Clamp a numeric value into [minimum, maximum].

  Returns None for anything that is not a real number (strings, booleans,
  NaN), letting the caller fall back to its default.
  """
  if isinstance(value, bool) or not isinstance(value, (int, float)):
    return None
  if math.isnan(value):
    return None
  return min(max(value, minimum), maximum)


def resolve_options(request: StatelessChatRequest) -> GenerationOptions:
  values: Dict[str, Any] = {}
  for name, (minimum, maximum, default) in OPTION_RANGES.items():
    clamped = clamp(getattr(request, name), minimum, maximum)
    values[name] = default if clamped is None else clamped
  values["max_tokens"] = int(values["max_tokens"])
  return GenerationOptions(**values)


def pick_text_override(value: Any, default: str) -> str:
  if isinstance(value, str) and value.strip():
    return value
  return default


def normalize_messages(messages: Any) -> List[HistoryEntry]:
  """
  Coerce caller-supplied turns into history entries.

  Anything but a list yields no turns, and non-object items are skipped.
  ``assistant`` keeps its role, every other role becomes ``user``; content is
  stringified and trimmed and empty turns are dropped.
  """
  if not isinstance(messages, list):
    return []

  normalized: List[HistoryEntry] = []
  for item in messages:
    if isinstance(item, IncomingMessage):
      message = item
    elif isinstance(item, dict):
      message = IncomingMessage.model_validate(item)
    else:
      continue
    role = ChatRole.assistant if message.role == "assistant" else ChatRole.user
    content = "" if message.content is None else str(message.content).strip()
    if content:
      normalized.append(HistoryEntry(role=role, content=content))
  return normalized

"""
Tests for request models, option clamping and message normalization.
"""

import math

import pytest

from devops_copilot.config import Settings
from devops_copilot.models import (
  ChatRole,
  HistoryEntry,
  IncomingMessage,
  StatelessChatRequest,
  clamp,
  normalize_messages,
  pick_text_override,
  resolve_options,
)


@pytest.mark.parametrize(
  "value, expected",
  [
    (0.5, 0.5),
    (-3, 0.0),
    (7, 1.0),
    ("0.5", None),
    (True, None),
    (None, None),
    (math.nan, None),
  ],
)
def test_clamp(value, expected):
  assert clamp(value, 0.0, 1.0) == expected


def test_resolve_options_defaults_and_clamping():
  defaults = resolve_options(StatelessChatRequest())
  assert (defaults.temperature, defaults.max_tokens, defaults.top_p) == (0.3, 600, 0.9)

  clamped = resolve_options(StatelessChatRequest(temperature=0.7, max_tokens=5000, top_p="high"))
  assert clamped.temperature == 0.7
  assert clamped.max_tokens == 1024
  assert clamped.top_p == 0.9

  floored = resolve_options(StatelessChatRequest(max_tokens=10.9))
  assert floored.max_tokens == 32


def test_normalize_messages():
  messages = [
    IncomingMessage(role="system", content="  be brief "),
    IncomingMessage(role="assistant", content="Sure."),
    IncomingMessage(role="assistant", content="   "),
    IncomingMessage(content=None),
    IncomingMessage(role="user", content=42),
  ]

  assert normalize_messages(messages) == [
    HistoryEntry(role=ChatRole.user, content="be brief"),
    HistoryEntry(role=ChatRole.assistant, content="Sure."),
    HistoryEntry(role=ChatRole.user, content="42"),
  ]
  assert normalize_messages(None) == []
  assert normalize_messages("not a list") == []
  assert normalize_messages([{"role": "assistant", "content": " ok "}, "stray", 7]) == [
    HistoryEntry(role=ChatRole.assistant, content="ok"),
  ]


def test_pick_text_override():
  assert pick_text_override("custom", "default") == "custom"
  assert pick_text_override("   ", "default") == "default"
  assert pick_text_override(12, "default") == "default"


def test_history_entries_are_immutable():
  entry = HistoryEntry(role=ChatRole.user, content="Hi")
  with pytest.raises(Exception):
    entry.content = "changed"


def test_settings_read_environment(monkeypatch):
  monkeypatch.setenv("HISTORY_LIMIT", "not-a-number")
  monkeypatch.setenv("TEE_MAX_BUFFER", "8")
  monkeypatch.setenv("GATEWAY_PROVIDER", "OpenRouter")
  monkeypatch.setenv("COPILOT_BASE_URL", "http://localhost:9000/")
  monkeypatch.delenv("DEFAULT_LLM_MODEL", raising=False)

  settings = Settings()

  assert settings.history_limit == 10
  assert settings.tee_max_buffer == 8
  assert settings.gateway_provider == "openrouter"
  assert settings.default_model == "meta-llama/llama-3.3-70b-instruct"
  assert settings.client_base_url == "http://localhost:9000"

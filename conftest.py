"""Shared stubs for the offline test suite."""

from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional

import pytest

from devops_copilot.gateway import ModelGateway
from devops_copilot.store import InMemoryTranscriptStore


class StubGateway(ModelGateway):
  """
  Deterministic gateway: streams ``chunks`` (failing before chunk index
  ``fail_after`` if set), or answers ``text`` without streaming when
  ``text_only`` is set. Every invocation is recorded in ``calls``.
  """

  def __init__(
    self,
    chunks: Optional[List[str]] = None,
    text: str = "stub reply",
    fail: Optional[Exception] = None,
    fail_after: Optional[int] = None,
    text_only: bool = False,
    replies: Optional[List[List[str]]] = None,
  ) -> None:
    self.chunks = chunks if chunks is not None else ["Hello", ", ", "world"]
    self.text = text
    self.fail = fail
    self.fail_after = fail_after
    self.text_only = text_only
    self.replies = list(replies or [])
    self.calls: List[Dict[str, Any]] = []

  async def run(self, system, turns, *, stream=True, options=None, model=None):
    if self.text_only:
      self.calls.append({"system": system, "turns": list(turns), "stream": stream, "model": model})
      if self.fail:
        raise self.fail
      return self.text
    return await super().run(system, turns, stream=stream, options=options, model=model)

  async def complete(self, system, turns, *, options=None, model=None):
    self.calls.append({"system": system, "turns": list(turns), "options": options, "model": model})
    if self.fail:
      raise self.fail
    return self.text, {"response": self.text}

  async def open_stream(self, system, turns, *, options=None, model=None):
    self.calls.append({"system": system, "turns": list(turns), "stream": True, "model": model})
    if self.fail:
      raise self.fail
    chunks = self.replies.pop(0) if self.replies else self.chunks
    return self._stream(chunks)

  async def _stream(self, chunks: List[str]) -> AsyncIterator[bytes]:
    for index, chunk in enumerate(chunks):
      if self.fail_after is not None and index == self.fail_after:
        raise RuntimeError("model stream dropped")
      yield chunk.encode("utf-8")


class FlakyStore(InMemoryTranscriptStore):
  """In-memory store whose writes can be made to fail."""

  def __init__(self, fail_puts: bool = False) -> None:
    super().__init__()
    self.fail_puts = fail_puts
    self.puts = 0

  async def put(self, session_id, transcript):
    from devops_copilot.errors import StoreError

    self.puts += 1
    if self.fail_puts:
      raise StoreError("Unable to save conversation history.", details="store offline")
    await super().put(session_id, transcript)


@pytest.fixture
def stub_gateway():
  return StubGateway


@pytest.fixture
def flaky_store():
  return FlakyStore


@pytest.fixture
def memory_store():
  return InMemoryTranscriptStore()

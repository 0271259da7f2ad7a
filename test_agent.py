"""
Tests for the client-side chat agent state machine and session id persistence.
"""

import asyncio
import json

from devops_copilot.agent import (
  ERROR_PREFIX,
  SESSION_ID_KEY,
  ChatAgent,
  SendState,
  SessionIdStore,
)
from devops_copilot.client import ChatApiError, HealthStatus
from devops_copilot.models import ChatRole


class FakeClient:
  """Scripted stand-in for ChatApiClient: each send pops the next outcome."""

  def __init__(self, outcomes, gate=None):
    self.outcomes = list(outcomes)
    self.gate = gate
    self.sent = []
    self.open_streams = 0
    self.closed_streams = 0

  async def send_message(self, message, session_id):
    self.sent.append((message, session_id))
    outcome = self.outcomes.pop(0)
    if isinstance(outcome, Exception):
      raise outcome
    return self._stream(outcome)

  async def _stream(self, chunks):
    self.open_streams += 1
    try:
      for index, chunk in enumerate(chunks):
        if index > 0 and self.gate is not None:
          await self.gate.wait()
        yield chunk
    finally:
      self.open_streams -= 1
      self.closed_streams += 1

  async def check_health(self):
    return HealthStatus.reachable


def _agent(tmp_path, client, on_change=None):
  return ChatAgent(client, storage=SessionIdStore(tmp_path / "state.json"), on_change=on_change)


def test_send_streams_into_assistant_message_and_settles(tmp_path):
  updates = []
  client = FakeClient([["Check ", "the ", "logs"]])
  agent = _agent(tmp_path, client, on_change=lambda a, m: updates.append(m.content if m else None))

  asyncio.run(agent.send_message("  Worker 500s  "))

  user, assistant = agent.messages
  assert user.role == ChatRole.user and user.content == "Worker 500s"
  assert assistant.role == ChatRole.assistant and assistant.content == "Check the logs"
  assert assistant.pending is False and assistant.error is False
  assert agent.state == SendState.settled
  assert agent.succeeded is True
  assert agent.is_loading is False
  assert client.sent == [("Worker 500s", agent.session_id)]
  assert updates[-1] == "Check the logs"
  assert "Check " in updates


def test_blank_send_is_ignored(tmp_path):
  client = FakeClient([])
  agent = _agent(tmp_path, client)

  asyncio.run(agent.send_message("   "))

  assert agent.messages == []
  assert client.sent == []
  assert agent.state == SendState.idle


def test_failure_renders_error_into_assistant_message(tmp_path):
  agent = _agent(tmp_path, FakeClient([ChatApiError("Service unavailable", status_code=503)]))

  asyncio.run(agent.send_message("Hi"))

  assistant = agent.messages[-1]
  assert assistant.content == f"{ERROR_PREFIX}Service unavailable"
  assert assistant.error is True
  assert agent.error == "Service unavailable"
  assert agent.succeeded is False
  assert agent.state == SendState.settled


def test_retry_reuses_the_failed_assistant_message(tmp_path):
  client = FakeClient([ChatApiError("Request timeout after 60.0s"), ["Recovered"]])
  agent = _agent(tmp_path, client)

  async def run():
    await agent.send_message("Deploy status?")
    failed = agent.messages[-1]
    retried = await agent.retry_last_message()
    return failed, retried

  failed, retried = asyncio.run(run())

  assert retried is True
  assert len(agent.messages) == 2
  assert agent.messages[-1] is failed
  assert failed.content == "Recovered"
  assert failed.error is False
  assert agent.error is None
  assert client.sent[1][0] == "Deploy status?"


def test_retry_with_nothing_to_retry(tmp_path):
  client = FakeClient([["fine"]])
  agent = _agent(tmp_path, client)

  async def run():
    before = await agent.retry_last_message()
    await agent.send_message("Hi")
    after = await agent.retry_last_message()
    return before, after

  assert asyncio.run(run()) == (False, False)
  assert len(client.sent) == 1


def test_clear_starts_a_new_persisted_session(tmp_path):
  agent = _agent(tmp_path, FakeClient([["ok"]]))
  original = agent.session_id

  asyncio.run(agent.send_message("Hi"))
  agent.clear_chat()

  assert agent.messages == []
  assert agent.state == SendState.idle
  assert agent.session_id != original
  stored = json.loads((tmp_path / "state.json").read_text())
  assert stored[SESSION_ID_KEY] == agent.session_id


def test_clear_during_stream_discards_late_chunks(tmp_path):
  client = FakeClient([["early", " late"]])
  agent = _agent(tmp_path, client)

  async def run():
    client.gate = asyncio.Event()
    sending = asyncio.ensure_future(agent.send_message("Hi"))
    while not agent.messages or agent.messages[-1].content != "early":
      await asyncio.sleep(0)
    agent.clear_chat()
    client.gate.set()
    await sending

  asyncio.run(run())

  assert agent.messages == []
  assert agent.state == SendState.idle
  assert agent.is_loading is False


def test_clear_closes_the_in_flight_request(tmp_path):
  """Clearing tears the old request down at once instead of waiting on its next chunk."""
  client = FakeClient([["early", " never sent"]])
  agent = _agent(tmp_path, client)

  async def run():
    client.gate = asyncio.Event()
    sending = asyncio.ensure_future(agent.send_message("Hi"))
    while not agent.messages or agent.messages[-1].content != "early":
      await asyncio.sleep(0)
    agent.clear_chat()
    for _ in range(5):
      await asyncio.sleep(0)
    return sending.done(), client.open_streams, client.closed_streams

  finished, still_open, closed = asyncio.run(run())

  assert finished is True
  assert still_open == 0
  assert closed == 1
  assert agent.messages == []
  assert agent.state == SendState.idle


def test_new_send_closes_the_superseded_stream(tmp_path):
  client = FakeClient([["stale", " never"], ["fresh"]])
  agent = _agent(tmp_path, client)

  async def run():
    client.gate = asyncio.Event()
    first = asyncio.ensure_future(agent.send_message("first"))
    while len(agent.messages) < 2 or agent.messages[1].content != "stale":
      await asyncio.sleep(0)
    await agent.send_message("second")
    await first
    return client.open_streams, client.closed_streams

  still_open, closed = asyncio.run(run())

  assert still_open == 0
  assert closed == 2
  assert agent.messages[1].content == "stale"
  assert agent.messages[3].content == "fresh"


def test_new_send_supersedes_in_flight_exchange(tmp_path):
  client = FakeClient([["stale", " never"], ["fresh"]])
  agent = _agent(tmp_path, client)

  async def run():
    client.gate = asyncio.Event()
    first = asyncio.ensure_future(agent.send_message("first"))
    while len(agent.messages) < 2 or agent.messages[1].content != "stale":
      await asyncio.sleep(0)
    client.gate.set()
    await agent.send_message("second")
    await first

  asyncio.run(run())

  assert agent.messages[1].content == "stale"
  assert agent.messages[3].content == "fresh"
  assert agent.succeeded is True


def test_session_id_survives_restart(tmp_path):
  storage = SessionIdStore(tmp_path / "state.json")
  first = ChatAgent(FakeClient([]), storage=storage)
  second = ChatAgent(FakeClient([]), storage=SessionIdStore(tmp_path / "state.json"))

  assert first.session_id == second.session_id


def test_unreadable_state_file_yields_fresh_id(tmp_path):
  path = tmp_path / "state.json"
  path.write_text("{broken")

  session_id = SessionIdStore(path).load_or_create_session_id()

  assert session_id
  assert json.loads(path.read_text())[SESSION_ID_KEY] == session_id


def test_refresh_health(tmp_path):
  agent = _agent(tmp_path, FakeClient([]))
  assert agent.health == HealthStatus.checking
  assert asyncio.run(agent.refresh_health()) == HealthStatus.reachable

"""
Tests for the async chat client's retry policy, error mapping and health probe.
"""

import asyncio
import json

import httpx
import pytest

from devops_copilot.client import (
  ChatApiClient,
  ChatApiConfig,
  ChatApiError,
  ChatApiTimeoutError,
  HealthStatus,
)


class _Sleeps:
  def __init__(self):
    self.delays = []

  async def __call__(self, delay):
    self.delays.append(delay)


def _client(handler, sleeps=None, **config):
  config.setdefault("base_url", "http://copilot.test")
  return ChatApiClient(
    ChatApiConfig(**config),
    transport=httpx.MockTransport(handler),
    sleep=sleeps or _Sleeps(),
  )


async def _read_all(client, message="Hi", session_id="s1"):
  stream = await client.send_message(message, session_id)
  return "".join([chunk async for chunk in stream])


def test_retryable_status_is_retried_and_reply_delivered_once():
  requests = []

  def handler(request):
    requests.append(json.loads(request.content))
    if len(requests) == 1:
      return httpx.Response(503, json={"error": "Service unavailable"})
    return httpx.Response(200, content="Purge the cache.".encode("utf-8"))

  sleeps = _Sleeps()
  text = asyncio.run(_read_all(_client(handler, sleeps)))

  assert text == "Purge the cache."
  assert len(requests) == 2
  assert requests[0] == {"message": "Hi", "sessionId": "s1"}
  assert sleeps.delays == [1.0]


def test_backoff_grows_exponentially_and_gives_up():
  calls = []

  def handler(request):
    calls.append(request)
    return httpx.Response(502, json={"error": "Bad gateway upstream"})

  sleeps = _Sleeps()
  with pytest.raises(ChatApiError) as excinfo:
    asyncio.run(_read_all(_client(handler, sleeps, max_retries=3, retry_delay=0.5)))

  assert len(calls) == 4
  assert sleeps.delays == [0.5, 1.0, 2.0]
  assert excinfo.value.status_code == 502
  assert excinfo.value.message == "Bad gateway upstream"


def test_non_retryable_status_fails_immediately_with_server_message():
  calls = []

  def handler(request):
    calls.append(request)
    return httpx.Response(400, json={"error": "`message` is required."})

  with pytest.raises(ChatApiError) as excinfo:
    asyncio.run(_read_all(_client(handler)))

  assert len(calls) == 1
  assert excinfo.value.status_code == 400
  assert excinfo.value.message == "`message` is required."


def test_error_without_json_body_uses_status_message():
  def handler(request):
    return httpx.Response(418, content=b"teapot")

  with pytest.raises(ChatApiError) as excinfo:
    asyncio.run(_read_all(_client(handler)))

  assert excinfo.value.message == "Request failed with status 418"


def test_timeout_is_terminal_and_not_retried():
  calls = []

  def handler(request):
    calls.append(request)
    raise httpx.ReadTimeout("timed out", request=request)

  sleeps = _Sleeps()
  with pytest.raises(ChatApiTimeoutError) as excinfo:
    asyncio.run(_read_all(_client(handler, sleeps, timeout=5.0)))

  assert len(calls) == 1
  assert sleeps.delays == []
  assert "timeout" in excinfo.value.message.lower()


def test_network_error_is_retried():
  calls = []

  def handler(request):
    calls.append(request)
    if len(calls) < 3:
      raise httpx.ConnectError("connection refused", request=request)
    return httpx.Response(200, content=b"back online")

  sleeps = _Sleeps()
  text = asyncio.run(_read_all(_client(handler, sleeps)))

  assert text == "back online"
  assert sleeps.delays == [1.0, 2.0]


def test_network_error_not_retried_when_disabled():
  calls = []

  def handler(request):
    calls.append(request)
    raise httpx.ConnectError("connection refused", request=request)

  with pytest.raises(ChatApiError) as excinfo:
    asyncio.run(_read_all(_client(handler, retry_on_network_error=False)))

  assert len(calls) == 1
  assert excinfo.value.status_code is None


@pytest.mark.parametrize(
  "message, session_id, expected",
  [
    ("   ", "s1", "Message cannot be empty"),
    ("Hi", "", "Session ID cannot be empty"),
  ],
)
def test_blank_inputs_are_rejected_locally(message, session_id, expected):
  def handler(request):
    raise AssertionError("no request expected")

  with pytest.raises(ChatApiError, match=expected):
    asyncio.run(_read_all(_client(handler), message, session_id))


def test_multibyte_reply_split_across_chunks_decodes_cleanly():
  encoded = "Zero Trust ✓".encode("utf-8")

  async def body():
    yield encoded[:-2]
    yield encoded[-2:]

  def handler(request):
    return httpx.Response(200, content=body())

  assert asyncio.run(_read_all(_client(handler))) == "Zero Trust ✓"


def test_health_reachable_and_offline():
  def healthy(request):
    assert request.url.path == "/health"
    return httpx.Response(200, json={"ok": True, "timestamp": "2026-01-01T00:00:00Z"})

  def down(request):
    raise httpx.ConnectError("refused", request=request)

  assert asyncio.run(_client(healthy).check_health()) == HealthStatus.reachable
  assert asyncio.run(_client(down).check_health()) == HealthStatus.offline

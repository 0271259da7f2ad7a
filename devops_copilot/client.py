from __future__ import annotations

import asyncio
import codecs
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple

import httpx

from .config import get_settings
from .logging_config import get_logger

logger = get_logger(__name__)


class ChatApiError(Exception):
  """A chat request failed; ``status_code`` is set when the server answered."""

  def __init__(
    self,
    message: str,
    status_code: Optional[int] = None,
    original: Optional[BaseException] = None,
  ) -> None:
    super().__init__(message)
    self.message = message
    self.status_code = status_code
    self.original = original


class ChatApiTimeoutError(ChatApiError):
  """The request timed out. Terminal: timeouts are never retried."""


class HealthStatus(str, Enum):
  checking = "checking"
  reachable = "reachable"
  offline = "offline"


@dataclass
class ChatApiConfig:
  base_url: Optional[str] = None
  timeout: float = 60.0
  max_retries: int = 3
  retry_delay: float = 1.0
  retry_on_network_error: bool = True
  retryable_status_codes: Tuple[int, ...] = (500, 502, 503, 504)


def generate_session_id() -> str:
  return str(uuid.uuid4())


class ChatApiClient:
  """
  Async HTTP client for the chat endpoint.

  Retryable statuses and network errors are retried with exponential backoff
  (``retry_delay * 2**attempt``) before any stream is handed back, so a retry
  can never duplicate a delivered reply.
  """

  def __init__(
    self,
    config: Optional[ChatApiConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ) -> None:
    self.config = config or ChatApiConfig()
    self.base_url = (self.config.base_url or get_settings().client_base_url).rstrip("/")
    self._transport = transport
    self._sleep = sleep

  def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
      base_url=self.base_url,
      timeout=timeout or self.config.timeout,
      transport=self._transport,
    )

  async def send_message(self, message: str, session_id: str) -> AsyncIterator[str]:
    """
    Send one user turn and return an async iterator over the decoded reply
    text as it streams in.
    """
    body = {"message": (message or "").strip(), "sessionId": (session_id or "").strip()}
    if not body["message"]:
      raise ChatApiError("Message cannot be empty")
    if not body["sessionId"]:
      raise ChatApiError("Session ID cannot be empty")

    max_retries = self.config.max_retries
    last_status: Optional[int] = None

    for attempt in range(max_retries + 1):
      client = self._client()
      try:
        response = await client.send(client.build_request("POST", "/chat", json=body), stream=True)
      except httpx.TimeoutException as exc:
        await client.aclose()
        raise ChatApiTimeoutError(f"Request timeout after {self.config.timeout}s", original=exc) from exc
      except httpx.TransportError as exc:
        await client.aclose()
        if self.config.retry_on_network_error and attempt < max_retries:
          logger.warning(f"Network error on attempt {attempt + 1}, retrying: {exc}")
          await self._backoff(attempt)
          continue
        raise ChatApiError(str(exc) or "Network error", original=exc) from exc
      except asyncio.CancelledError:
        await client.aclose()
        raise

      if response.is_success:
        return self._iter_text(client, response)

      last_status = response.status_code
      error_message = await self._error_message(response)
      await response.aclose()
      await client.aclose()

      if attempt < max_retries and last_status in self.config.retryable_status_codes:
        logger.warning(f"Chat request returned {last_status} on attempt {attempt + 1}, retrying")
        await self._backoff(attempt)
        continue

      raise ChatApiError(error_message, status_code=last_status)

    raise ChatApiError(f"Request failed after {max_retries + 1} attempts", status_code=last_status)

  async def check_health(self) -> HealthStatus:
    try:
      async with self._client(timeout=5.0) as client:
        response = await client.get("/health")
      if response.status_code == 200 and response.json().get("ok") is True:
        return HealthStatus.reachable
    except (httpx.HTTPError, ValueError) as exc:
      logger.debug(f"Health check failed: {exc}")
    return HealthStatus.offline

  async def _backoff(self, attempt: int) -> None:
    await self._sleep(self.config.retry_delay * (2 ** attempt))

  @staticmethod
  async def _error_message(response: httpx.Response) -> str:
    fallback = f"Request failed with status {response.status_code}"
    try:
      await response.aread()
      data = response.json()
    except (httpx.HTTPError, ValueError):
      return fallback
    if isinstance(data, dict) and isinstance(data.get("error"), str):
      return data["error"]
    return fallback

  async def _iter_text(self, client: httpx.AsyncClient, response: httpx.Response) -> AsyncIterator[str]:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
      async for chunk in response.aiter_bytes():
        text = decoder.decode(chunk)
        if text:
          yield text
      tail = decoder.decode(b"", final=True)
      if tail:
        yield tail
    except httpx.TimeoutException as exc:
      raise ChatApiTimeoutError(f"Request timeout after {self.config.timeout}s", original=exc) from exc
    except httpx.HTTPError as exc:
      raise ChatApiError(f"Stream interrupted: {exc}", original=exc) from exc
    finally:
      await response.aclose()
      await client.aclose()

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

import httpx

from .config import Settings, get_settings
from .errors import GatewayError
from .logging_config import get_logger
from .models import GenerationOptions

logger = get_logger(__name__)

Turn = Dict[str, str]

NO_TEXT_FALLBACK = "No textual response returned by model."


def build_messages(system: str, turns: List[Turn]) -> List[Turn]:
  return [{"role": "system", "content": system}] + [
    {"role": turn["role"], "content": turn["content"]} for turn in turns
  ]


def extract_response_text(result: Any) -> str:
  """
  Pull the assistant text out of whichever result shape the provider used.
  """
  if isinstance(result, str):
    return result

  if isinstance(result, dict):
    if isinstance(result.get("response"), str):
      return result["response"]
    if isinstance(result.get("output_text"), str):
      return result["output_text"]

    nested = result.get("result")
    if isinstance(nested, dict):
      for key in ("output_text", "text", "response"):
        if isinstance(nested.get(key), str) and nested[key]:
          return nested[key]
      responses = nested.get("responses")
      if isinstance(responses, list) and responses:
        return "\n\n".join(str(item) for item in responses)

    choices = result.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
      message = choices[0].get("message") or {}
      if isinstance(message.get("content"), str):
        return message["content"]

    outputs = result.get("outputs")
    if isinstance(outputs, list) and outputs and isinstance(outputs[0], dict):
      content = outputs[0].get("content")
      if isinstance(content, str):
        return content
      if isinstance(content, list):
        return "\n".join(str(item) for item in content)

  return NO_TEXT_FALLBACK


class ModelGateway(ABC):
  """
  Hosted text generation: system prompt + ordered ``{role, content}`` turns
  in, either the full text or a read-once byte stream out.

  Gateways never retry; a failure is surfaced to the caller immediately.
  """

  async def run(
    self,
    system: str,
    turns: List[Turn],
    *,
    stream: bool = True,
    options: Optional[GenerationOptions] = None,
    model: Optional[str] = None,
  ) -> Union[str, AsyncIterator[bytes]]:
    if stream:
      return await self.open_stream(system, turns, options=options, model=model)
    text, _raw = await self.complete(system, turns, options=options, model=model)
    return text

  @abstractmethod
  async def complete(
    self,
    system: str,
    turns: List[Turn],
    *,
    options: Optional[GenerationOptions] = None,
    model: Optional[str] = None,
  ) -> Tuple[str, Any]:  # pragma: no cover - interface
    """Return ``(text, raw provider payload)``."""
    raise NotImplementedError

  @abstractmethod
  async def open_stream(
    self,
    system: str,
    turns: List[Turn],
    *,
    options: Optional[GenerationOptions] = None,
    model: Optional[str] = None,
  ) -> AsyncIterator[bytes]:  # pragma: no cover - interface
    """Start a streamed generation. Raises GatewayError if it cannot start."""
    raise NotImplementedError


class _EventStream:
  """
  Text deltas of one streamed response. ``aclose`` releases the connection
  even when iteration never started.
  """

  def __init__(
    self,
    events: AsyncIterator[bytes],
    client: httpx.AsyncClient,
    response: httpx.Response,
  ) -> None:
    self._events = events
    self._client = client
    self._response = response

  def __aiter__(self) -> "_EventStream":
    return self

  async def __anext__(self) -> bytes:
    return await self._events.__anext__()

  async def aclose(self) -> None:
    try:
      await self._events.aclose()
    finally:
      await self._response.aclose()
      await self._client.aclose()


class HTTPModelGateway(ModelGateway):
  """
  Shared HTTP plumbing for providers that speak JSON in and server-sent
  events out.
  """

  def __init__(
    self,
    api_key: str,
    model: str,
    base_url: str,
    timeout: float = 60.0,
    headers: Optional[Dict[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
  ) -> None:
    self.api_key = api_key
    self.model = model
    self.base_url = base_url.rstrip("/")
    self.timeout = timeout
    self.headers = headers or {}
    self._transport = transport

  @abstractmethod
  def _endpoint(self, model: str) -> str:  # pragma: no cover - interface
    raise NotImplementedError

  @abstractmethod
  def _payload(
    self,
    model: str,
    messages: List[Turn],
    options: Optional[GenerationOptions],
    stream: bool,
  ) -> Dict[str, Any]:  # pragma: no cover - interface
    raise NotImplementedError

  @abstractmethod
  def _extract_delta(self, event: Dict[str, Any]) -> str:  # pragma: no cover - interface
    raise NotImplementedError

  def _build_headers(self) -> Dict[str, str]:
    base = {
      "Authorization": f"Bearer {self.api_key}",
      "Content-Type": "application/json",
    }
    base.update(self.headers)
    return base

  def _client(self) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

  async def complete(
    self,
    system: str,
    turns: List[Turn],
    *,
    options: Optional[GenerationOptions] = None,
    model: Optional[str] = None,
  ) -> Tuple[str, Any]:
    model = model or self.model
    messages = build_messages(system, turns)
    payload = self._payload(model, messages, options, stream=False)

    logger.debug(
        f"Gateway call: model={model}, messages={len(messages)}",
        extra={"model": model},
    )

    start_time = time.time()
    try:
      async with self._client() as client:
        response = await client.post(self._endpoint(model), headers=self._build_headers(), json=payload)
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPStatusError as exc:
      duration_ms = int((time.time() - start_time) * 1000)
      logger.error(
          f"Gateway error {exc.response.status_code} after {duration_ms}ms",
          extra={"model": model, "status_code": exc.response.status_code, "duration_ms": duration_ms},
      )
      raise GatewayError(
        f"Model gateway returned error {exc.response.status_code}",
        details=exc.response.text[:500],
      ) from exc
    except (httpx.HTTPError, ValueError) as exc:
      duration_ms = int((time.time() - start_time) * 1000)
      logger.error(
          f"Gateway request failed after {duration_ms}ms: {str(exc)}",
          extra={"model": model, "duration_ms": duration_ms},
      )
      raise GatewayError("Model gateway request failed", details=str(exc)) from exc

    duration_ms = int((time.time() - start_time) * 1000)
    logger.info(
        f"Gateway success: {duration_ms}ms",
        extra={"model": model, "duration_ms": duration_ms},
    )
    return extract_response_text(data), data

  async def open_stream(
    self,
    system: str,
    turns: List[Turn],
    *,
    options: Optional[GenerationOptions] = None,
    model: Optional[str] = None,
  ) -> AsyncIterator[bytes]:
    model = model or self.model
    messages = build_messages(system, turns)
    payload = self._payload(model, messages, options, stream=True)

    client = self._client()
    request = client.build_request(
      "POST", self._endpoint(model), headers=self._build_headers(), json=payload
    )
    try:
      response = await client.send(request, stream=True)
    except httpx.HTTPError as exc:
      await client.aclose()
      logger.error(f"Gateway stream could not start: {str(exc)}", extra={"model": model})
      raise GatewayError("Model gateway request failed", details=str(exc)) from exc

    if response.status_code >= 400:
      body = (await response.aread()).decode("utf-8", errors="replace")
      await response.aclose()
      await client.aclose()
      logger.error(
          f"Gateway stream rejected with {response.status_code}",
          extra={"model": model, "status_code": response.status_code},
      )
      raise GatewayError(
        f"Model gateway returned error {response.status_code}",
        details=body[:500],
      )

    logger.debug("Gateway stream opened", extra={"model": model})
    return _EventStream(self._iter_events(client, response), client, response)

  async def _iter_events(self, client: httpx.AsyncClient, response: httpx.Response) -> AsyncIterator[bytes]:
    try:
      async for line in response.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
          continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
          break
        try:
          event = json.loads(data)
        except json.JSONDecodeError:
          logger.debug(f"Ignoring non-JSON stream event: {data[:100]}")
          continue
        if isinstance(event, dict) and event.get("error"):
          raise GatewayError("Model stream reported an error", details=json.dumps(event["error"])[:500])
        text = self._extract_delta(event) if isinstance(event, dict) else ""
        if text:
          yield text.encode("utf-8")
    except httpx.HTTPError as exc:
      raise GatewayError("Model stream interrupted", details=str(exc)) from exc
    finally:
      await response.aclose()
      await client.aclose()


class OpenRouterGateway(HTTPModelGateway):
  """OpenAI-compatible chat completions, as served by OpenRouter."""

  def _endpoint(self, model: str) -> str:
    return f"{self.base_url}/chat/completions"

  def _payload(self, model, messages, options, stream):
    payload: Dict[str, Any] = {"model": model, "messages": messages, "stream": stream}
    if options is not None:
      payload.update(options.model_dump())
    return payload

  def _extract_delta(self, event: Dict[str, Any]) -> str:
    choices = event.get("choices") or []
    if not choices:
      return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) else ""


class WorkersAIGateway(HTTPModelGateway):
  """Cloudflare Workers AI over its REST API."""

  def __init__(self, api_key: str, model: str, account_id: str, base_url: str, **kwargs: Any) -> None:
    super().__init__(api_key=api_key, model=model, base_url=base_url, **kwargs)
    self.account_id = account_id

  def _endpoint(self, model: str) -> str:
    return f"{self.base_url}/accounts/{self.account_id}/ai/run/{model}"

  def _payload(self, model, messages, options, stream):
    payload: Dict[str, Any] = {"messages": messages, "stream": stream}
    if options is not None:
      payload.update(options.model_dump())
    return payload

  def _extract_delta(self, event: Dict[str, Any]) -> str:
    content = event.get("response")
    return content if isinstance(content, str) else ""


def create_model_gateway(settings: Optional[Settings] = None) -> ModelGateway:
  settings = settings or get_settings()

  if settings.gateway_provider == "workers-ai":
    if not settings.cloudflare_account_id or not settings.cloudflare_api_token:
      raise GatewayError(
        "Model gateway is not configured.",
        details="CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN must be set",
      )
    return WorkersAIGateway(
      api_key=settings.cloudflare_api_token,
      model=settings.default_model,
      account_id=settings.cloudflare_account_id,
      base_url=settings.workers_ai_base_url,
      timeout=settings.gateway_timeout,
    )

  if not settings.openrouter_api_key:
    raise GatewayError(
      "Model gateway is not configured.",
      details="OPENROUTER_API_KEY environment variable not set",
    )

  headers: Dict[str, str] = {}
  if settings.openrouter_site_url:
    headers["HTTP-Referer"] = settings.openrouter_site_url
  if settings.openrouter_site_name:
    headers["X-Title"] = settings.openrouter_site_name

  return OpenRouterGateway(
    api_key=settings.openrouter_api_key,
    model=settings.default_model,
    base_url=settings.openrouter_base_url,
    timeout=settings.gateway_timeout,
    headers=headers,
  )

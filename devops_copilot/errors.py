from __future__ import annotations

from typing import Any, Dict, Optional


class CopilotError(Exception):
  """
  Base error for the chat backend.

  Each subclass carries the HTTP status the router maps it to, and
  ``to_payload`` renders the ``{error, details?}`` JSON body.
  """

  status_code: int = 500

  def __init__(self, message: str, details: Optional[str] = None, status_code: Optional[int] = None) -> None:
    super().__init__(message)
    self.message = message
    self.details = details
    if status_code is not None:
      self.status_code = status_code

  def to_payload(self) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"error": self.message}
    if self.details:
      payload["details"] = self.details
    return payload


class ValidationError(CopilotError):
  """Bad or empty input. Raised before the model gateway is called."""

  status_code = 400


class RouteError(CopilotError):
  """Unknown path (404) or unsupported method (405)."""

  status_code = 404


class GatewayError(CopilotError):
  """The model invocation failed before any bytes were streamed."""

  status_code = 502


class StreamCollectionError(CopilotError):
  """
  The background transcript capture failed. Only ever logged; the live
  response never sees it.
  """


class StoreError(CopilotError):
  """Reading or writing the transcript store failed."""

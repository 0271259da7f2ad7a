from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Dict, Optional

from .agent import AgentMessage, ChatAgent, SessionIdStore
from .client import ChatApiClient, ChatApiConfig, HealthStatus

HEALTH_BADGES = {
  HealthStatus.checking: "checking...",
  HealthStatus.reachable: "online",
  HealthStatus.offline: "offline",
}

SUGGESTED_PROMPTS = [
  "How do I bind a KV namespace to my Worker?",
  "Why is my Pages build failing after upgrading Node?",
  "Give me three deployment tips.",
]


def build_arg_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(
    description="Terminal chat client for the DevOps Copilot backend"
  )
  parser.add_argument(
    "--base-url",
    help="Backend base URL (default: COPILOT_BASE_URL or http://127.0.0.1:8000)",
  )
  parser.add_argument(
    "--session-id",
    help="Session ID to resume (default: the one stored locally, or a new UUID)",
  )
  parser.add_argument(
    "--state-file",
    help="Where the session ID is kept between runs",
  )
  parser.add_argument("--timeout", type=float, default=60.0, help="Request timeout in seconds")
  parser.add_argument("--max-retries", type=int, default=3, help="Retries for retryable failures")
  return parser


class _StreamPrinter:
  """Prints only the part of each assistant message not yet on screen."""

  def __init__(self) -> None:
    self._printed: Dict[str, str] = {}

  def __call__(self, agent: ChatAgent, message: Optional[AgentMessage]) -> None:
    if message is None or message.role.value != "assistant":
      return
    shown = self._printed.get(message.id, "")
    if message.content.startswith(shown):
      new_text = message.content[len(shown):]
    else:
      # Replaced (error or retry): start a fresh line
      if shown:
        print()
      shown, new_text = "", message.content
    if new_text:
      if not shown:
        print("Assistant: ", end="")
      print(new_text, end="", flush=True)
      shown = message.content
    self._printed[message.id] = shown
    if not message.pending and shown:
      print()
      self._printed[message.id] = ""


async def run(args: argparse.Namespace) -> int:
  config = ChatApiConfig(base_url=args.base_url, timeout=args.timeout, max_retries=args.max_retries)
  storage = SessionIdStore(Path(args.state_file) if args.state_file else None)
  if args.session_id:
    storage.save_session_id(args.session_id)

  agent = ChatAgent(ChatApiClient(config), storage, on_change=_StreamPrinter())
  health = await agent.refresh_health()

  print(f"Backend: {agent.client.base_url} [{HEALTH_BADGES[health]}]")
  print(f"Session ID: {agent.session_id}")
  print("Commands: /retry, /clear, /health, /quit. Try one of:")
  for prompt in SUGGESTED_PROMPTS:
    print(f"  - {prompt}")
  print()

  while True:
    try:
      user_input = await asyncio.to_thread(input, "You: ")
    except EOFError:
      print()
      break

    command = user_input.strip()
    if not command:
      continue
    if command == "/quit":
      break
    if command == "/clear":
      agent.clear_chat()
      print(f"Started a new conversation (session {agent.session_id})")
      continue
    if command == "/health":
      health = await agent.refresh_health()
      print(f"Backend is {HEALTH_BADGES[health]}")
      continue
    if command == "/retry":
      if not await agent.retry_last_message():
        print("Nothing to retry.")
      continue

    await agent.send_message(command)

  return 0


def main(argv: list[str] | None = None) -> int:
  parser = build_arg_parser()
  args = parser.parse_args(argv)
  try:
    return asyncio.run(run(args))
  except KeyboardInterrupt:
    print("\nExiting...")
    return 0


if __name__ == "__main__":  # pragma: no cover
  sys.exit(main())

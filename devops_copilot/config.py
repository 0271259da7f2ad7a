from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Process environment wins over the .env file
load_dotenv(PROJECT_ROOT / ".env")

DEFAULT_SYSTEM_PROMPT = "\n".join([
  "You are Cloudflare DevOps Copilot, a pragmatic engineer who lives and breathes Workers, Pages, DNS, CDN, Zero Trust, R2, and security products.",
  "Responsibilities:",
  "1. Diagnose deployment issues (wrangler config, bindings, durable objects, Pages builds).",
  "2. Recommend configuration and performance improvements (cache rules, load balancing, KV/D1, Argo).",
  "3. Provide actionable troubleshooting steps and code snippets (TypeScript Workers, Pages functions, Terraform).",
  "4. Flag best practices: security headers, rate limiting, observability (Logs, Traces, Metrics).",
  "Tone guidelines: be concise, friendly, and technical; use bullet lists or numbered steps when helpful; cite Cloudflare features when relevant.",
])

DEFAULT_MODELS = {
  "openrouter": "meta-llama/llama-3.3-70b-instruct",
  "workers-ai": "@cf/meta/llama-3.3-70b-instruct-fp8-fast",
}


def _int_env(name: str, default: int) -> int:
  raw = os.getenv(name)
  if not raw:
    return default
  try:
    return int(raw)
  except ValueError:
    return default


def _float_env(name: str, default: float) -> float:
  raw = os.getenv(name)
  if not raw:
    return default
  try:
    return float(raw)
  except ValueError:
    return default


class Settings:
  """
  Application settings read from the environment (and ``.env``).

  All credentials and tunables live here so the rest of the code never
  touches ``os.environ`` directly.
  """

  def __init__(self) -> None:
    self.environment: str = os.getenv("ENVIRONMENT", "production").lower()

    self.gateway_provider: str = os.getenv("GATEWAY_PROVIDER", "openrouter").lower()
    self.default_model: str = os.getenv("DEFAULT_LLM_MODEL") or DEFAULT_MODELS.get(
      self.gateway_provider, DEFAULT_MODELS["openrouter"]
    )
    self.system_prompt: str = os.getenv("SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT
    self.gateway_timeout: float = _float_env("GATEWAY_TIMEOUT", 60.0)

    self.openrouter_api_key: Optional[str] = os.getenv("OPENROUTER_API_KEY")
    self.openrouter_base_url: str = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    self.openrouter_site_url: Optional[str] = os.getenv("OPENROUTER_SITE_URL")
    self.openrouter_site_name: Optional[str] = os.getenv("OPENROUTER_SITE_NAME")

    self.cloudflare_account_id: Optional[str] = os.getenv("CLOUDFLARE_ACCOUNT_ID")
    self.cloudflare_api_token: Optional[str] = os.getenv("CLOUDFLARE_API_TOKEN")
    self.workers_ai_base_url: str = os.getenv(
      "WORKERS_AI_BASE_URL", "https://api.cloudflare.com/client/v4"
    )

    self.history_limit: int = max(2, _int_env("HISTORY_LIMIT", 10))
    self.tee_max_buffer: int = max(1, _int_env("TEE_MAX_BUFFER", 64))
    self.max_resident_sessions: int = max(1, _int_env("MAX_RESIDENT_SESSIONS", 1000))

    self.transcript_store: str = os.getenv("TRANSCRIPT_STORE", "memory").lower()
    self.supabase_url: Optional[str] = os.getenv("SUPABASE_URL")
    self.supabase_key: Optional[str] = (
      os.getenv("SUPABASE_SERVICE_ROLE_KEY")
      or os.getenv("SUPABASE_SERVICE_KEY")
      or os.getenv("SUPABASE_ANON_KEY")
    )
    self.supabase_transcript_table: str = os.getenv("SUPABASE_TRANSCRIPT_TABLE", "chat_transcripts")

    self.port: int = _int_env("PORT", 8000)
    self.client_base_url: str = os.getenv("COPILOT_BASE_URL", "http://127.0.0.1:8000").rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  return Settings()

from __future__ import annotations

import os

import uvicorn

from .config import get_settings
from .logging_config import get_logger

logger = get_logger(__name__)


def report_environment() -> None:
  """Log the effective configuration and which features are available."""
  settings = get_settings()

  logger.info("=" * 60)
  logger.info("Starting DevOps Copilot chat API")
  logger.info("=" * 60)
  logger.info(f"Port: {settings.port}")
  logger.info(f"Environment: {settings.environment}")
  logger.info(f"Log Level: {os.getenv('LOG_LEVEL', 'INFO')}")
  logger.info(f"Gateway provider: {settings.gateway_provider} (model {settings.default_model})")
  logger.info(f"History limit: {settings.history_limit} entries")

  missing_critical = []
  if settings.gateway_provider == "workers-ai":
    if not settings.cloudflare_account_id:
      missing_critical.append("CLOUDFLARE_ACCOUNT_ID")
    if not settings.cloudflare_api_token:
      missing_critical.append("CLOUDFLARE_API_TOKEN")
  elif not settings.openrouter_api_key:
    missing_critical.append("OPENROUTER_API_KEY")

  if missing_critical:
    logger.error("=" * 60)
    logger.error("Missing required environment variables:")
    for var in missing_critical:
      logger.error(f"   - {var}")
    logger.error("Chat endpoints will answer 502 until these are set.")
    logger.error("=" * 60)

  has_supabase = bool(settings.supabase_url and settings.supabase_key)
  if settings.transcript_store == "supabase" and not has_supabase:
    logger.warning("TRANSCRIPT_STORE=supabase but SUPABASE_URL or key is missing - using in-memory store")
  logger.info(
    f"Transcript store: {settings.transcript_store if has_supabase else 'memory'}"
  )
  logger.info("=" * 60)


def main() -> None:
  report_environment()
  uvicorn.run("devops_copilot.api:app", host="0.0.0.0", port=get_settings().port)


if __name__ == "__main__":
  main()

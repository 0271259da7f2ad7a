from __future__ import annotations

from typing import Optional

from supabase import Client, create_client

from .config import get_settings
from .logging_config import get_logger

logger = get_logger(__name__)


_supabase_client: Optional[Client] = None


def get_supabase_client() -> Optional[Client]:
  """
  Lazily create and cache a Supabase client, if configured.

  Returns None when the URL or key is missing or the client cannot be built;
  callers decide whether that is fatal.
  """
  global _supabase_client

  if _supabase_client is not None:
    return _supabase_client

  settings = get_settings()
  url = settings.supabase_url
  key = settings.supabase_key

  if not url or not key:
    logger.warning(
        "Supabase client not configured - missing URL or key",
        extra={"has_url": bool(url), "has_key": bool(key)},
    )
    return None

  try:
    logger.info(f"Creating Supabase client for URL: {url[:30]}...")
    _supabase_client = create_client(url, key)
    logger.info("Supabase client created successfully")
  except Exception as e:
    logger.error(f"Failed to create Supabase client: {str(e)}", exc_info=True)
    _supabase_client = None

  return _supabase_client

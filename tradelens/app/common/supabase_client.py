import logging
from typing import Any, Dict, Optional

import requests
from supabase import Client, create_client

from tradelens.app.common.config import get_config

logger = logging.getLogger(__name__)

# Service-role client, created on first use
_client: Optional[Client] = None


def get_supabase() -> Client:
    """
    Return the shared service-role Supabase client.

    Row-level security is bypassed by this client, so every query made
    through it must scope rows by user id explicitly.
    """
    global _client
    if _client is None:
        config = get_config()
        key = config.supabase_service_role_key or config.supabase_anon_key
        if not config.supabase_url or not key:
            raise RuntimeError("Supabase environment variables not set")
        _client = create_client(config.supabase_url, key)
        logger.info("Supabase client created")
    return _client


def reset_supabase() -> None:
    """Drop the cached client (tests, key rotation)."""
    global _client
    _client = None


def _headers() -> Dict[str, str]:
    config = get_config()
    key = config.supabase_service_role_key or config.supabase_anon_key
    return {
        "apikey": key,
        "Authorization": f"Bearer {key}",
        "Content-Type": "application/json",
        "Prefer": "return=minimal",
    }


def insert_row(table: str, payload: Dict[str, Any]) -> None:
    """
    Insert a single row into a Supabase table via REST API.

    Used for fire-and-forget audit rows (rate limit logs) written outside
    of a request handler.
    """
    config = get_config()
    url = f"{config.supabase_url}/rest/v1/{table}"
    response = requests.post(
        url, json=payload, headers=_headers(), timeout=config.http_timeout_sec
    )

    if not response.ok:
        raise RuntimeError(
            f"Supabase insert failed [{response.status_code}]: {response.text}"
        )

"""
Database access for request handlers and jobs.

Supabase Postgres is the only store. Schema, RLS policies and indexes are
managed in Supabase; this module only hands out the client.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional

from supabase import Client

from tradelens.app.common.supabase_client import get_supabase

logger = logging.getLogger(__name__)


def init_db() -> None:
    """Create the shared client eagerly so misconfiguration fails at startup."""
    get_supabase()


def get_db() -> Generator[Client, None, None]:
    """FastAPI dependency-style session."""
    yield get_supabase()


@contextmanager
def get_db_session() -> Generator[Client, None, None]:
    """Context-managed session for jobs and CLI scripts."""
    yield get_supabase()


def first_row(response: Any) -> Optional[Dict[str, Any]]:
    """First row of a PostgREST response, or None."""
    rows = rows_of(response)
    return rows[0] if rows else None


def rows_of(response: Any) -> List[Dict[str, Any]]:
    data = getattr(response, "data", None)
    if data is None:
        return []
    if isinstance(data, dict):
        return [data]
    return list(data)

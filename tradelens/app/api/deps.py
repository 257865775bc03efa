"""
Request dependencies: bearer-token auth and the cron secret guard.
"""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from tradelens.app.common.config import get_config
from tradelens.app.common.db import get_db
from tradelens.app.common.rate_limit import get_limiter, log_rate_limit_exceeded

logger = logging.getLogger(__name__)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user_id(
    authorization: Optional[str] = Header(None),
    db=Depends(get_db),
) -> str:
    """Resolve the Supabase user behind the request's access token."""
    token = _bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    try:
        resp = db.auth.get_user(token)
    except Exception as e:
        logger.warning(f"Token verification failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user = getattr(resp, "user", None)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user.id


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Cron endpoints are open unless CRON_SECRET is configured."""
    secret = get_config().cron_secret
    if secret is None:
        return
    if _bearer_token(authorization) != secret:
        logger.warning("Cron endpoint called with invalid secret")
        raise HTTPException(status_code=401, detail="Unauthorized")


def rate_limited(name: str):
    """Dependency enforcing the named per-user rate limit."""

    def dependency(
        request: Request,
        user_id: str = Depends(get_current_user_id),
    ) -> str:
        result = get_limiter(name).check(user_id)
        if not result.allowed:
            ip = request.client.host if request.client else None
            logger.warning(f"Rate limit '{name}' exceeded for user {user_id}")
            log_rate_limit_exceeded(user_id, request.url.path, ip)
            raise HTTPException(
                status_code=429,
                detail="Rate limit exceeded",
                headers={
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(int(result.reset_at)),
                },
            )
        return user_id

    return dependency


def get_optional_user_id(
    authorization: Optional[str] = Header(None),
    db=Depends(get_db),
) -> Optional[str]:
    """Viewer on public endpoints: the token's user, or None for anonymous or bad tokens."""
    token = _bearer_token(authorization)
    if token is None:
        return None

    try:
        resp = db.auth.get_user(token)
    except Exception as e:
        logger.info(f"Ignoring unverifiable token on public endpoint: {e}")
        return None

    user = getattr(resp, "user", None)
    return user.id if user is not None else None

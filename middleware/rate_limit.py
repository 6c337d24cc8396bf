# middleware/rate_limit.py
"""
Rate limiting for the billing endpoints (slowapi).

Usage in route files:
    from middleware.rate_limit import limiter

    @router.post("/create-checkout-session")
    @limiter.limit(settings.RATE_LIMIT_BILLING)
    async def create_checkout_session(request: Request, ...):
        ...
"""
import logging
import os

from fastapi import Request
from jose import jwt
from jose.exceptions import JOSEError
from slowapi import Limiter
from slowapi.util import get_remote_address

from config import settings

logger = logging.getLogger(__name__)


def _get_rate_limit_key(request: Request) -> str:
    """Bucket by Supabase user id when a bearer token is present, else by client IP."""
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        token = auth.split(" ", 1)[1].strip()
        try:
            # Unverified read of `sub`; verify_caller() does the real check
            sub = jwt.get_unverified_claims(token).get("sub")
            if sub:
                return f"user:{sub}"
        except JOSEError:
            logger.debug("rate_limit_key_unparseable_token")

    return get_remote_address(request)


limiter = Limiter(
    key_func=_get_rate_limit_key,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=os.getenv("RATE_LIMIT_STORAGE_URI", "memory://"),
    strategy="fixed-window",
    enabled=os.getenv("RATE_LIMIT_ENABLED", "1").lower() not in ("0", "false", "no"),
)

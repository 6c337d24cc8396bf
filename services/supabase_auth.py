# services/supabase_auth.py
import logging
from typing import Optional

from jose import jwt, JWTError
from fastapi import HTTPException, Request, status

from config import settings

logger = logging.getLogger(__name__)


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization")
    if not auth or not auth.lower().startswith("bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def decode_supabase_token(token: str) -> dict:
    try:
        return jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,  # HS256 shared secret
            algorithms=["HS256"],
            audience=settings.SUPABASE_JWT_AUD,
            issuer=f"{settings.SUPABASE_URL}/auth/v1" if settings.SUPABASE_URL else None,
        )
    except JWTError as e:
        logger.warning("supabase_jwt_rejected reason=%s", e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")


def verify_caller(request: Request, user_id: str) -> None:
    """
    Make sure the caller may act for `user_id`.

    Only enforced when SUPABASE_JWT_SECRET is configured: the bearer token's
    `sub` (the Supabase user id, anonymous users included) must equal `user_id`.
    Without a secret the body's user_id is trusted.
    """
    if not settings.SUPABASE_JWT_SECRET:
        return

    token = _get_bearer_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

    payload = decode_supabase_token(token)
    if str(payload.get("sub") or "") != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token does not match user_id")

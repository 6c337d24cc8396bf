"""
Environment-driven settings for the Swiftie Ranker backend.

Values are read once at import time (optionally from a .env file next to the
project root) with defaults that let the app boot locally.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(ENV_PATH, override=False)


def _get_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    return default if raw is None else raw.strip()


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# ---------------------------
# Stripe
# ---------------------------
STRIPE_SECRET_KEY: str = _get_str("STRIPE_SECRET_KEY")
STRIPE_PREMIUM_PRICE_ID: str = _get_str("STRIPE_PREMIUM_PRICE_ID")
STRIPE_WEBHOOK_SECRET: str = _get_str("STRIPE_WEBHOOK_SECRET")

# Fallback origin for checkout / portal redirects when the request has no Origin header
FRONTEND_URL: str = _get_str("FRONTEND_URL", "http://localhost:8081").rstrip("/")

# ---------------------------
# Supabase
# ---------------------------
SUPABASE_URL: str = _get_str("SUPABASE_URL").rstrip("/")
SUPABASE_ANON_KEY: str = _get_str("SUPABASE_ANON_KEY")
SUPABASE_JWT_SECRET: str = _get_str("SUPABASE_JWT_SECRET")
SUPABASE_JWT_AUD: str = _get_str("SUPABASE_JWT_AUD", "authenticated")

# ---------------------------
# Resolver / clients
# ---------------------------
# Empty base = same origin as the billing backend
PAYMENTS_API_BASE: str = _get_str("PAYMENTS_API_BASE").rstrip("/")
PAYMENTS_TIMEOUT_SEC: float = _get_float("PAYMENTS_TIMEOUT_SEC", 15.0)
RECORD_STORE_TIMEOUT_SEC: float = _get_float("RECORD_STORE_TIMEOUT_SEC", 10.0)

# Stripe webhooks usually land shortly after the redirect back to the app
PAYMENT_RECHECK_DELAY_SEC: float = _get_float("PAYMENT_RECHECK_DELAY_SEC", 1.5)

# ---------------------------
# Rate limits (slowapi syntax)
# ---------------------------
RATE_LIMIT_DEFAULT: str = _get_str("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_BILLING: str = _get_str("RATE_LIMIT_BILLING", "10/minute")

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionStatus(str, Enum):
    """Stripe subscription statuses."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


class LoadingState(str, Enum):
    NOT_CHECKED = "not_checked"
    CHECKING = "checking"
    RESOLVED = "resolved"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite and some PostgREST payloads drop the offset; rows are written in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SubscriptionRecord(BaseModel):
    """One row of the `subscriptions` table."""

    model_config = ConfigDict(frozen=True, from_attributes=True, extra="ignore")

    id: Optional[int] = None
    user_id: str
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None
    created_at: datetime
    plan_type: str = "premium"
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None

    @field_validator("current_period_end", "created_at")
    @classmethod
    def _normalize_tz(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class EntitlementState(BaseModel):
    """
    Read model published by the subscription resolver.

    `is_premium` is the only value feature gates look at. A failed lookup and
    a confirmed free user both read as `is_premium=False`.
    """

    model_config = ConfigDict(frozen=True)

    is_premium: bool = False
    record: Optional[SubscriptionRecord] = None
    loading: LoadingState = LoadingState.NOT_CHECKED
    checkout_loading: bool = False


# ── HTTP payloads ────────────────────────────────────────────────────────

class CheckoutIn(BaseModel):
    user_id: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=255)
    embedded: bool = False


class CheckoutOut(BaseModel):
    url: Optional[str] = None
    clientSecret: Optional[str] = None


class PortalIn(BaseModel):
    user_id: Optional[str] = Field(default=None, max_length=64)


class PortalOut(BaseModel):
    url: str


class EntitlementOut(BaseModel):
    user_id: str
    is_premium: bool
    loading: LoadingState
    record: Optional[SubscriptionRecord] = None
    features: Dict[str, bool]

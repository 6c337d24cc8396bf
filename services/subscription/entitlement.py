"""
Entitlement rule and premium feature table.

Usage:
    from services.subscription.entitlement import is_entitled, feature_requires_premium

    record = select_latest(rows)
    if feature_requires_premium("similarSongs") and not is_entitled(record, now):
        ...
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import FrozenSet, Iterable, Optional

from schemas.subscription import SubscriptionRecord, SubscriptionStatus

ENTITLING_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
)

# Anything not listed here is a free feature
PREMIUM_FEATURES: FrozenSet[str] = frozenset({"similarSongs", "differentSongs"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def select_latest(records: Iterable[SubscriptionRecord]) -> Optional[SubscriptionRecord]:
    """
    Pick the single most recently created record.

    Ties on `created_at` go to the higher row id, then to the later position,
    so the same input always yields the same record.
    """
    latest: Optional[SubscriptionRecord] = None
    for rec in records:
        if latest is None:
            latest = rec
            continue
        if (rec.created_at, rec.id or 0) >= (latest.created_at, latest.id or 0):
            latest = rec
    return latest


def is_entitled(record: Optional[SubscriptionRecord], now: Optional[datetime] = None) -> bool:
    if record is None:
        return False
    if record.status not in ENTITLING_STATUSES:
        return False
    if record.current_period_end is None:
        return True
    now = now or utcnow()
    return now < record.current_period_end


def feature_requires_premium(feature_name: str) -> bool:
    return feature_name in PREMIUM_FEATURES

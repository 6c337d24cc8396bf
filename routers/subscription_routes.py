import logging

from fastapi import APIRouter, Depends, Request

from database import SessionLocal
from schemas.subscription import EntitlementOut
from services.subscription.entitlement import PREMIUM_FEATURES
from services.subscription.record_store import SqlRecordStore, SubscriptionRecordStore
from services.subscription.resolver import SubscriptionResolver
from services.supabase_auth import verify_caller

logger = logging.getLogger(__name__)

router = APIRouter()


def get_record_store() -> SubscriptionRecordStore:
    return SqlRecordStore(SessionLocal)


@router.get("/subscription/{user_id}", response_model=EntitlementOut)
async def get_entitlement(
    user_id: str,
    request: Request,
    store: SubscriptionRecordStore = Depends(get_record_store),
):
    """Server-side entitlement check; same rule and fail-closed policy as the app."""
    verify_caller(request, user_id)

    # Request-scoped resolver: nothing is shared between callers
    resolver = SubscriptionResolver(store)
    state = await resolver.check_status(user_id)

    return EntitlementOut(
        user_id=user_id,
        is_premium=state.is_premium,
        loading=state.loading,
        record=state.record,
        features={name: resolver.can_access_feature(name) for name in sorted(PREMIUM_FEATURES)},
    )

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from config import settings
from database import get_db
from middleware.rate_limit import limiter
from models.subscription import Subscription
from schemas.subscription import CheckoutIn, CheckoutOut, PortalIn, PortalOut
from services.supabase_auth import verify_caller

logger = logging.getLogger(__name__)

router = APIRouter()
stripe.api_key = settings.STRIPE_SECRET_KEY


def _origin(request: Request) -> str:
    return (request.headers.get("origin") or settings.FRONTEND_URL).rstrip("/")


def _stripe_message(e: Exception) -> str:
    return getattr(e, "user_message", None) or str(e) or "Stripe request failed"


def _ts(value: Any) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


def _period_end(sub_obj: Any) -> Optional[datetime]:
    cpe = sub_obj.get("current_period_end")
    if not cpe:
        # Newer Stripe API versions report the period on each subscription item
        items = (sub_obj.get("items") or {}).get("data") or []
        cpe = items[0].get("current_period_end") if items else None
    return _ts(cpe)


# ─── Checkout ──────────────────────────────────────────────────


@router.post("/create-checkout-session", response_model=CheckoutOut, response_model_exclude_none=True)
@limiter.limit(settings.RATE_LIMIT_BILLING)
def create_checkout_session(request: Request, payload: CheckoutIn):
    if not payload.user_id:
        raise HTTPException(400, detail="user_id is required")
    verify_caller(request, payload.user_id)

    price_id = settings.STRIPE_PREMIUM_PRICE_ID
    if not price_id:
        raise HTTPException(500, detail="Price ID not configured")

    origin = _origin(request)
    params: dict = {
        "mode": "subscription",
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        # The webhook links the resulting subscription back to the user through this metadata
        "metadata": {"user_id": payload.user_id},
        "subscription_data": {"metadata": {"user_id": payload.user_id}},
        "allow_promotion_codes": True,
    }
    if payload.email:
        params["customer_email"] = payload.email

    if payload.embedded:
        params["ui_mode"] = "embedded"
        params["return_url"] = f"{origin}/?payment=success&session_id={{CHECKOUT_SESSION_ID}}"
    else:
        params["success_url"] = f"{origin}/?payment=success&session_id={{CHECKOUT_SESSION_ID}}"
        params["cancel_url"] = f"{origin}/?payment=cancelled"

    try:
        session = stripe.checkout.Session.create(**params)
    except Exception as e:
        logger.exception("checkout_session_failed user_id=%s", payload.user_id)
        raise HTTPException(500, detail=_stripe_message(e))

    logger.info("checkout_session_created user_id=%s embedded=%s", payload.user_id, payload.embedded)
    if payload.embedded:
        return {"clientSecret": session["client_secret"]}
    return {"url": session["url"]}


# ─── Customer portal ───────────────────────────────────────────


@router.post("/create-portal-session", response_model=PortalOut)
@limiter.limit(settings.RATE_LIMIT_BILLING)
def create_portal_session(request: Request, payload: PortalIn, db: Session = Depends(get_db)):
    if not payload.user_id:
        raise HTTPException(400, detail="user_id is required")
    verify_caller(request, payload.user_id)

    row = (
        db.query(Subscription)
        .filter(Subscription.user_id == payload.user_id, Subscription.stripe_customer_id.isnot(None))
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )
    if not row:
        raise HTTPException(404, detail="No subscription found for user")

    try:
        session = stripe.billing_portal.Session.create(
            customer=row.stripe_customer_id,
            return_url=_origin(request),
        )
    except Exception as e:
        logger.exception("portal_session_failed user_id=%s", payload.user_id)
        raise HTTPException(500, detail=_stripe_message(e))

    logger.info("portal_session_created user_id=%s", payload.user_id)
    return {"url": session["url"]}


# ─── Webhook ───────────────────────────────────────────────────


def apply_subscription(
    db: Session,
    sub_obj: Any,
    *,
    user_id: Optional[str] = None,
    customer_email: Optional[str] = None,
) -> Optional[Subscription]:
    """
    Mirror a Stripe subscription object into the `subscriptions` table.

    Rows are matched on the Stripe subscription id. A new row is only created
    when the owning user is known (checkout metadata or subscription metadata).
    """
    stripe_sub_id = sub_obj["id"]
    row = db.query(Subscription).filter_by(stripe_subscription_id=stripe_sub_id).first()

    if row is None:
        user_id = user_id or (sub_obj.get("metadata") or {}).get("user_id")
        if not user_id:
            logger.error("stripe_subscription_unlinked sub_id=%s", stripe_sub_id)
            return None
        row = Subscription(user_id=user_id, stripe_subscription_id=stripe_sub_id, plan_type="premium")
        db.add(row)

    row.stripe_customer_id = sub_obj.get("customer") or row.stripe_customer_id
    if customer_email:
        row.stripe_customer_email = customer_email
    row.status = sub_obj.get("status") or row.status
    row.current_period_end = _period_end(sub_obj)
    row.updated_at = datetime.now(timezone.utc)

    db.commit()
    db.refresh(row)
    logger.info("stripe_subscription_synced user_id=%s sub_id=%s status=%s", row.user_id, stripe_sub_id, row.status)
    return row


def handle_checkout_completed(db: Session, session_obj: Any) -> None:
    user_id = (session_obj.get("metadata") or {}).get("user_id")
    if not user_id:
        logger.error("checkout_completed_without_user_id session_id=%s", session_obj.get("id"))
        return

    subscription_id = session_obj.get("subscription")
    if not subscription_id:
        logger.error("checkout_completed_without_subscription user_id=%s", user_id)
        return

    sub_obj = stripe.Subscription.retrieve(subscription_id)
    email = (session_obj.get("customer_details") or {}).get("email")
    apply_subscription(db, sub_obj, user_id=user_id, customer_email=email)


def handle_subscription_deleted(db: Session, sub_obj: Any) -> None:
    row = db.query(Subscription).filter_by(stripe_subscription_id=sub_obj["id"]).first()
    if row is None:
        logger.warning("stripe_subscription_delete_unknown sub_id=%s", sub_obj["id"])
        return
    row.status = "canceled"
    row.updated_at = datetime.now(timezone.utc)
    db.commit()
    logger.info("stripe_subscription_canceled user_id=%s sub_id=%s", row.user_id, sub_obj["id"])


# Webhook: no auth, Stripe signature only
@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(500, detail="STRIPE_WEBHOOK_SECRET missing")

    payload = await request.body()
    sig = request.headers.get("stripe-signature")
    if not sig:
        raise HTTPException(400, detail="Missing stripe-signature")

    try:
        event = stripe.Webhook.construct_event(payload, sig, settings.STRIPE_WEBHOOK_SECRET)
    except Exception as e:
        logger.warning("stripe_webhook_signature_invalid reason=%s", e)
        raise HTTPException(400, detail=f"Webhook Error: {e}")

    event_type = event["type"]
    obj = event["data"]["object"]
    try:
        if event_type == "checkout.session.completed":
            handle_checkout_completed(db, obj)
        elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
            apply_subscription(db, obj)
        elif event_type == "customer.subscription.deleted":
            handle_subscription_deleted(db, obj)
        else:
            logger.info("stripe_webhook_ignored type=%s", event_type)
    except Exception as e:
        db.rollback()
        logger.exception("stripe_webhook_failed type=%s", event_type)
        raise HTTPException(500, detail=str(e))

    logger.info("stripe_webhook_processed type=%s", event_type)
    return {"received": True}

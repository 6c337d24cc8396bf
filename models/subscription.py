from __future__ import annotations

from datetime import datetime
from sqlalchemy import String, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column
from database import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    # Supabase auth.users.id; a user may accumulate several rows over time
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    stripe_customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    stripe_customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    plan_type: Mapped[str] = mapped_column(String(16), default="premium", nullable=False)
    # stripe-facing status: active | trialing | past_due | canceled | ...
    status: Mapped[str] = mapped_column(String(32), nullable=False)

    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

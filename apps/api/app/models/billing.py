from datetime import datetime

from app.db.base import Base
from sqlalchemy import String, DateTime, Text, Integer, Boolean, JSON
from sqlalchemy.orm import Mapped, mapped_column


class UserAccount(Base):
    """Per-user billing ledger."""

    __tablename__ = "user_accounts"

    # Identity provider user id
    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Stripe linkage
    stripe_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)

    # Access subscription mirror
    subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    plan: Mapped[str | None] = mapped_column(String(64), nullable=True)
    subscription_status: Mapped[str | None] = mapped_column(String(32),
                                                            nullable=True)  # trialing, active, past_due, canceled, ...
    subscription_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    subscription_renewal_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    trial_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Trial credit, seeded once per payer
    trial_credit_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    trial_credit_ever_granted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trial_credit_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    trial_credit_granted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Unbilled metered usage since the last paid usage invoice
    pending_local_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Period end of the paid invoice that last reset pending_local_cents
    pending_local_reset_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    billing_blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    billing_blocked_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    past_due_amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Informational usage counters, not used for billing math
    usage_script: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_voice: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_lipsync: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_edit: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    last_payment_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Audit
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)


class UsageRecord(Base):
    __tablename__ = "usage_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True)

    # "{uid}:{kind}:{token}", also sent to Stripe as the meter event identifier
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    free_qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    paid_qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    credited_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    charged_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    usage_event_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class CustomerMapping(Base):
    """Secondary uid -> Stripe customer link."""

    __tablename__ = "customer_mappings"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    stripe_customer_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    stripe_link: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    # Content key that makes redelivered events a no-op
    dedupe_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

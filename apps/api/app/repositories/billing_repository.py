from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.billing import CustomerMapping, UsageRecord, UserAccount

# Ledger columns that may only move through SQL-side increments
_COUNTER_COLUMNS = {
    "trial_credit_cents",
    "pending_local_cents",
    "usage_script",
    "usage_voice",
    "usage_lipsync",
    "usage_edit",
}


class BillingRepository:
    """Persistence for the user ledger, usage records and payer mappings.

    Every write commits immediately; there is no multi-step transaction across
    a usage call, so callers order their writes after all checks.
    """

    def __init__(self, db: Session):
        self.db = db

    # ---- ledger -------------------------------------------------------------

    def get_account(self, owner_id: str) -> Optional[UserAccount]:
        return self.db.get(UserAccount, owner_id)

    def ensure_account(self, owner_id: str, *, email: str | None = None) -> UserAccount:
        acct = self.get_account(owner_id)
        if acct is None:
            acct = UserAccount(owner_id=owner_id, email=email)
            self.db.add(acct)
            try:
                self.db.commit()
            except IntegrityError:
                # Created concurrently
                self.db.rollback()
                acct = self.get_account(owner_id)
        return acct  # type: ignore[return-value]

    def find_account(
        self,
        *,
        uid: str | None = None,
        email: str | None = None,
        customer_id: str | None = None,
    ) -> Optional[UserAccount]:
        """Resolve a ledger by uid, then email, then Stripe customer id, then the mapping table."""
        if uid:
            return self.ensure_account(uid, email=email)
        if email:
            acct = self.db.execute(select(UserAccount).where(UserAccount.email == email).limit(1)).scalar_one_or_none()
            if acct:
                return acct
        if customer_id:
            acct = self.db.execute(
                select(UserAccount).where(UserAccount.stripe_customer_id == customer_id).limit(1)
            ).scalar_one_or_none()
            if acct:
                return acct
            mapping = self.db.execute(
                select(CustomerMapping).where(CustomerMapping.stripe_customer_id == customer_id).limit(1)
            ).scalar_one_or_none()
            if mapping:
                return self.ensure_account(mapping.owner_id)
        return None

    def merge(self, acct: UserAccount, **fields) -> UserAccount:
        """Set plain ledger fields; counters must go through increment()."""
        forbidden = _COUNTER_COLUMNS.intersection(fields)
        if forbidden:
            raise ValueError(f"use increment() for {sorted(forbidden)}")
        for key, value in fields.items():
            setattr(acct, key, value)
        acct.updated_at = datetime.utcnow()
        self.db.commit()
        return acct

    def increment(self, owner_id: str, **deltas: int) -> None:
        """Atomic field-level increments (negative deltas decrement)."""
        values = {}
        for column, delta in deltas.items():
            if column not in _COUNTER_COLUMNS:
                raise ValueError(f"{column} is not a counter column")
            if delta:
                values[column] = getattr(UserAccount, column) + int(delta)
        if not values:
            return
        values["updated_at"] = datetime.utcnow()
        self.db.execute(
            update(UserAccount)
            .where(UserAccount.owner_id == owner_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()

    def reset_pending(self, owner_id: str, period_end: datetime) -> bool:
        """Zero pending usage unless this period end already reset it. Returns True when applied."""
        result = self.db.execute(
            update(UserAccount)
            .where(
                UserAccount.owner_id == owner_id,
                or_(
                    UserAccount.pending_local_reset_at.is_(None),
                    UserAccount.pending_local_reset_at != period_end,
                ),
            )
            .values(
                pending_local_cents=0,
                pending_local_reset_at=period_end,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        return bool(result.rowcount)

    def grant_trial_credit_once(self, owner_id: str, cents: int, customer_id: str | None) -> bool:
        """Seed trial credit unless it was ever granted. Returns True when applied."""
        now = datetime.utcnow()
        result = self.db.execute(
            update(UserAccount)
            .where(
                UserAccount.owner_id == owner_id,
                UserAccount.trial_credit_ever_granted.is_(False),
            )
            .values(
                trial_credit_cents=int(cents),
                trial_credit_ever_granted=True,
                trial_credit_customer_id=customer_id,
                trial_credit_granted_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        return bool(result.rowcount)

    # ---- customer mapping ---------------------------------------------------

    def upsert_customer_mapping(self, owner_id: str, customer_id: str, email: str | None = None) -> CustomerMapping:
        mapping = self.db.get(CustomerMapping, owner_id)
        if mapping is None:
            mapping = CustomerMapping(owner_id=owner_id, stripe_customer_id=customer_id)
            self.db.add(mapping)
        mapping.stripe_customer_id = customer_id
        mapping.stripe_link = f"https://dashboard.stripe.com/customers/{customer_id}"
        if email is not None:
            mapping.email = email
        mapping.updated_at = datetime.utcnow()
        self.db.commit()
        return mapping

    # ---- usage records --------------------------------------------------------

    def get_usage_record(self, idempotency_key: str) -> Optional[UsageRecord]:
        return self.db.execute(
            select(UsageRecord).where(UsageRecord.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    def claim_usage_record(self, record: UsageRecord) -> bool:
        """Insert the record; False when the idempotency key is already taken."""
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        return True

    def release_usage_record(self, record: UsageRecord) -> None:
        self.db.delete(record)
        self.db.commit()

    def commit(self) -> None:
        self.db.commit()

    def list_usage_records(self, owner_id: str, limit: int = 50) -> list[UsageRecord]:
        rows = self.db.execute(
            select(UsageRecord)
            .where(UsageRecord.owner_id == owner_id)
            .order_by(UsageRecord.created_at.desc())
            .limit(limit)
        ).scalars()
        return list(rows)

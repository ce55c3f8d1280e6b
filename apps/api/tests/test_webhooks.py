import time

from sqlalchemy import select

from app.models.billing import CustomerMapping, Notification
from app.repositories.billing_repository import BillingRepository
from app.services.usage_subscription import is_usage_subscription
from app.services.webhook_service import WebhookService

from conftest import CUSTOMER_ID, OWNER_EMAIL, OWNER_ID, post_event, reload_account

PERIOD_END = 1_760_000_000


def _notifications(db, kind=None):
    db.expire_all()
    stmt = select(Notification).where(Notification.owner_id == OWNER_ID)
    if kind:
        stmt = stmt.where(Notification.kind == kind)
    return list(db.execute(stmt).scalars())


def _subscription_event(event_id, *, status, previous=None, created=None, plan="access",
                        event_type="customer.subscription.updated"):
    sub = {
        "id": "sub_usage" if plan == "usage" else "sub_access",
        "object": "subscription",
        "customer": CUSTOMER_ID,
        "status": status,
        "created": created if created is not None else int(time.time()) - 3600,
        "current_period_end": PERIOD_END,
        "metadata": {"uid": OWNER_ID, "plan": plan},
        "items": {"data": [{"price": {"id": "price_access"}}]},
    }
    data = {"object": sub}
    if previous:
        data["previous_attributes"] = {"status": previous}
    return {"id": event_id, "type": event_type, "data": data}


def _usage_invoice_paid(event_id, invoice_id, period_end=PERIOD_END):
    return {
        "id": event_id,
        "type": "invoice.paid",
        "data": {"object": {
            "id": invoice_id,
            "customer": CUSTOMER_ID,
            "subscription": "sub_usage",
            "billing_reason": "subscription_cycle",
            "period_end": period_end,
            "status_transitions": {"paid_at": period_end + 60},
            "subscription_details": {"metadata": {"plan": "usage", "uid": OWNER_ID}},
        }},
    }


def _checkout_completed(event_id):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_1",
            "customer": CUSTOMER_ID,
            "subscription": "sub_access",
            "client_reference_id": OWNER_ID,
            "metadata": {"uid": OWNER_ID, "plan": "access"},
            "customer_details": {"email": OWNER_EMAIL},
        }},
    }


class TestSignature:
    def test_missing_signature_is_rejected(self, client):
        resp = client.post("/api/webhook/stripe", content=b"{}")

        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Missing signature"

    def test_invalid_signature_is_rejected(self, client, db, make_account):
        make_account(status="active")

        resp = post_event(client, _usage_invoice_paid("evt_1", "in_1"), signature="t=1,v1=forged")

        assert resp.status_code == 400
        assert resp.json()["error"]["type"] == "bad_request"
        assert reload_account(db).pending_local_reset_at is None

    def test_unknown_event_is_acknowledged(self, client):
        resp = post_event(client, {"id": "evt_x", "type": "charge.refunded", "data": {"object": {}}})

        assert resp.status_code == 200
        assert resp.json() == {"received": True}


class TestInvoices:
    def test_payment_failed_blocks_ledger(self, client, db, make_account):
        make_account(status="active")
        event = {
            "id": "evt_pf",
            "type": "invoice.payment_failed",
            "data": {"object": {"id": "in_pf", "customer": CUSTOMER_ID, "amount_due": 2500, "attempt_count": 1}},
        }

        resp = post_event(client, event)

        assert resp.status_code == 200
        acct = reload_account(db)
        assert acct.billing_blocked is True
        assert acct.billing_blocked_reason == "payment_failed"
        assert acct.past_due_amount_cents == 2500
        assert len(_notifications(db, "payment_failed")) == 1

        post_event(client, event)
        assert len(_notifications(db, "payment_failed")) == 1

    def test_usage_invoice_resets_pending_once_per_period(self, client, db, make_account):
        make_account(status="active", pending=900)

        post_event(client, _usage_invoice_paid("evt_1", "in_1"))
        acct = reload_account(db)
        assert acct.pending_local_cents == 0
        assert acct.last_payment_at is not None

        BillingRepository(db).increment(OWNER_ID, pending_local_cents=300)
        post_event(client, _usage_invoice_paid("evt_2", "in_2"))
        assert reload_account(db).pending_local_cents == 300

        post_event(client, _usage_invoice_paid("evt_3", "in_3", period_end=PERIOD_END + 86400))
        assert reload_account(db).pending_local_cents == 0

    def test_invoice_paid_clears_block(self, client, db, make_account):
        make_account(status="active", billing_blocked=True, billing_blocked_reason="payment_failed",
                     past_due_amount_cents=2500)

        post_event(client, _usage_invoice_paid("evt_1", "in_1"))

        acct = reload_account(db)
        assert acct.billing_blocked is False
        assert acct.billing_blocked_reason is None
        assert acct.past_due_amount_cents == 0

    def test_access_renewal_notifies_without_reset(self, client, db, gateway, make_account):
        make_account(status="active", pending=700)
        event = {
            "id": "evt_renew",
            "type": "invoice.paid",
            "data": {"object": {
                "id": "in_renew",
                "customer": CUSTOMER_ID,
                "subscription": "sub_access",
                "billing_reason": "subscription_cycle",
                "amount_paid": 1900,
                "period_end": PERIOD_END,
                "subscription_details": {"metadata": {"plan": "access", "uid": OWNER_ID}},
            }},
        }

        post_event(client, event)
        post_event(client, event)

        assert reload_account(db).pending_local_cents == 700
        assert len(_notifications(db, "subscription_renewed")) == 1

    def test_usage_invoice_detected_from_subscription(self, client, db, gateway, make_account):
        make_account(status="active", pending=400)
        gateway.add_subscription("sub_usage", metadata={"plan": "usage"})
        event = _usage_invoice_paid("evt_1", "in_1")
        del event["data"]["object"]["subscription_details"]

        post_event(client, event)

        assert reload_account(db).pending_local_cents == 0


class TestSubscriptions:
    def test_activation_after_grace_notifies_once(self, client, db, make_account):
        make_account(status="trialing")
        event = _subscription_event("evt_act", status="active", previous="trialing",
                                    created=int(time.time()) - 3600)

        post_event(client, event)
        post_event(client, event)

        assert len(_notifications(db, "subscription_active")) == 1
        acct = reload_account(db)
        assert acct.subscription_status == "active"
        assert acct.subscription_active is True

    def test_activation_inside_grace_is_suppressed(self, client, db, make_account):
        make_account(status="trialing")

        post_event(client, _subscription_event("evt_act", status="active", previous="trialing",
                                               created=int(time.time()) - 30))

        assert _notifications(db, "subscription_active") == []
        assert reload_account(db).subscription_status == "active"

    def test_created_trialing_notifies_trial_started(self, client, db, make_account):
        make_account(status="incomplete", granted=False)

        post_event(client, _subscription_event("evt_new", status="trialing",
                                               event_type="customer.subscription.created"))

        assert len(_notifications(db, "trial_started")) == 1
        acct = reload_account(db)
        assert acct.trial_credit_ever_granted is True
        assert acct.trial_credit_cents == 500

    def test_trial_update_replayed_seeds_credit_once(self, client, db, make_account):
        make_account(status="incomplete", granted=False)

        post_event(client, _subscription_event("evt_tr_1", status="trialing", previous="incomplete"))
        assert reload_account(db).trial_credit_cents == 500

        BillingRepository(db).increment(OWNER_ID, trial_credit_cents=-200)
        post_event(client, _subscription_event("evt_tr_2", status="trialing", previous="incomplete"))

        acct = reload_account(db)
        assert acct.trial_credit_cents == 300
        assert acct.trial_credit_ever_granted is True
        assert len(_notifications(db, "trial_started")) == 1

    def test_blocking_status_sets_block(self, client, db, make_account):
        make_account(status="active")

        post_event(client, _subscription_event("evt_pd", status="past_due", previous="active"))

        acct = reload_account(db)
        assert acct.billing_blocked is True
        assert acct.billing_blocked_reason == "subscription_past_due"
        assert acct.subscription_active is False

    def test_usage_subscription_does_not_touch_access_mirror(self, client, db, make_account):
        make_account(status="trialing")

        post_event(client, _subscription_event("evt_u1", status="past_due", plan="usage"))
        acct = reload_account(db)
        assert acct.plan == "access"
        assert acct.subscription_status == "trialing"
        assert acct.subscription_id == "sub_access"
        assert acct.billing_blocked is True

        post_event(client, _subscription_event("evt_u2", status="active", previous="past_due", plan="usage"))
        assert reload_account(db).billing_blocked is True

    def test_deleted_access_subscription_marks_canceled(self, client, db, make_account):
        make_account(status="active")

        post_event(client, _subscription_event("evt_del", status="canceled",
                                               event_type="customer.subscription.deleted"))

        acct = reload_account(db)
        assert acct.subscription_status == "canceled"
        assert acct.subscription_active is False


class TestCheckout:
    def test_checkout_seeds_trial_once_and_provisions_usage(self, client, db, gateway, make_account):
        make_account(status="incomplete", granted=False)
        gateway.subscriptions["sub_access"]["status"] = "trialing"
        gateway.subscriptions["sub_access"]["default_payment_method"] = "pm_1"

        post_event(client, _checkout_completed("evt_co_1"))

        acct = reload_account(db)
        assert acct.trial_used is True
        assert acct.subscription_status == "trialing"
        assert acct.trial_credit_cents == 500
        assert db.get(CustomerMapping, OWNER_ID).stripe_customer_id == CUSTOMER_ID
        assert (CUSTOMER_ID, {"invoice_settings": {"default_payment_method": "pm_1"}}) in gateway.customer_updates
        assert len([s for s in gateway.subscriptions.values() if is_usage_subscription(s)]) == 1

        BillingRepository(db).increment(OWNER_ID, trial_credit_cents=-200)
        post_event(client, _checkout_completed("evt_co_2"))

        acct = reload_account(db)
        assert acct.trial_credit_cents == 300
        assert len([s for s in gateway.subscriptions.values() if is_usage_subscription(s)]) == 1

    def test_unknown_payer_is_acknowledged(self, client, db, gateway):
        event = {
            "id": "evt_cust",
            "type": "invoice.payment_failed",
            "data": {"object": {"id": "in_x", "customer": "cus_unknown", "amount_due": 100}},
        }

        resp = post_event(client, event)

        assert resp.status_code == 200
        assert reload_account(db) is None


class TestCustomers:
    def test_customer_event_links_ledger(self, client, db):
        post_event(client, {
            "id": "evt_c",
            "type": "customer.created",
            "data": {"object": {"id": "cus_9", "email": "new@example.com", "metadata": {"uid": "user_9"}}},
        })

        acct = reload_account(db, "user_9")
        assert acct.stripe_customer_id == "cus_9"
        assert acct.email == "new@example.com"
        assert db.get(CustomerMapping, "user_9").stripe_link.endswith("/cus_9")


def test_handler_failure_is_swallowed(db, gateway, pricing, make_account, monkeypatch):
    make_account(status="active")
    svc = WebhookService(db, gateway, pricing)

    def boom(event):
        raise RuntimeError("reconciliation bug")

    monkeypatch.setitem(svc.handlers, "invoice.paid", boom)

    assert svc.handle(_usage_invoice_paid("evt_1", "in_1")) is True

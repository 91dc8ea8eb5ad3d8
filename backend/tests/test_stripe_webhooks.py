"""
Stripe webhook tests.
Each event id is applied once; credit grants are keyed by invoice/payment so
replays under a new event id do not double-grant; renewal applies the
rollover cap; failures are recorded and redelivery succeeds; subscription
events apply Stripe's current object; disputes hold and release credits;
failed events are recovered by re-fetching them from Stripe.
"""
import json

import pytest

from services.billing_errors import AccountDisputedError, ProviderError
from services.credit_service import CreditService
from services.plan_registry import PriceResolver
from services.stripe_webhook_service import MAX_WEBHOOK_RETRIES, StripeWebhookService
from services.subscription_sync_service import SubscriptionSyncService

from billing_factories import make_profile, make_local_subscription, make_stripe_subscription

pytestmark = pytest.mark.asyncio

ACCOUNT = "acct_hook"
HOBBY = "price_1SZmVyALMLhQocpf0H7n5ls8"
PRO = "price_1SZmVzALMLhQocpfPyRX2W8D"


@pytest.fixture
def service(fake_db, stripe_mock):
    resolver = PriceResolver.from_config(use_env_overrides=False)
    credits = CreditService()
    sync = SubscriptionSyncService(resolver, stripe_mock, credits)
    return StripeWebhookService(resolver, stripe_mock, credits, sync)


@pytest.fixture
def account(fake_db):
    fake_db.profiles.docs.append(make_profile(account_id=ACCOUNT, customer_id="cus_1", balance=0))
    return fake_db.profiles.docs[0]


def _event(event_id, event_type, obj):
    return {"id": event_id, "type": event_type, "livemode": False, "data": {"object": obj}}


def _pack_session(payment_intent="pi_pack_1"):
    return {
        "id": "cs_pack_1",
        "mode": "payment",
        "customer": "cus_1",
        "payment_status": "paid",
        "payment_intent": payment_intent,
        "metadata": {"account_id": ACCOUNT, "type": "pack", "pack_key": "small", "credits": "50"},
    }


def _invoice(invoice_id, billing_reason, subscription="sub_1"):
    return {"id": invoice_id, "object": "invoice", "billing_reason": billing_reason, "subscription": subscription}


class TestIdempotency:

    async def test_pack_purchase_credits_once(self, service, fake_db, account):
        ok, message, _ = await service.process_event(_event("evt_1", "checkout.session.completed", _pack_session()))
        assert ok and message == "Processed"
        assert account["credits_balance"] == 50

        ok, message, _ = await service.process_event(_event("evt_1", "checkout.session.completed", _pack_session()))
        assert ok and message == "Already processed"
        assert account["credits_balance"] == 50

    async def test_same_payment_under_new_event_id_is_not_regranted(self, service, fake_db, account):
        await service.process_event(_event("evt_1", "checkout.session.completed", _pack_session()))
        ok, _, _ = await service.process_event(
            _event("evt_2", "checkout.session.async_payment_succeeded", _pack_session())
        )
        assert ok
        assert account["credits_balance"] == 50
        assert len(fake_db.credit_transactions.docs) == 1
        assert fake_db.credit_transactions.docs[0]["reference_id"] == "pi_pack_1"

    async def test_unpaid_pack_session_waits(self, service, fake_db, account):
        session = dict(_pack_session(), payment_status="unpaid")
        ok, _, result = await service.process_event(_event("evt_1", "checkout.session.completed", session))
        assert ok and result["awaiting_payment"] is True
        assert account["credits_balance"] == 0

    async def test_failure_is_recorded_and_redelivery_succeeds(self, service, fake_db, stripe_mock, account):
        fake_db.subscriptions.docs.append(make_local_subscription(account_id=ACCOUNT, price_id=HOBBY))
        stripe_mock.retrieve_subscription.side_effect = ProviderError("Stripe unavailable")

        ok, message, details = await service.process_event(
            _event("evt_fail", "invoice.paid", _invoice("in_1", "subscription_cycle"))
        )
        assert ok is False
        assert message == "Event processing failed"
        record = fake_db.stripe_events.docs[0]
        assert record["status"] == "FAILED"
        assert record["error"] == "Stripe unavailable"

        stripe_mock.retrieve_subscription.side_effect = None
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(price_id=HOBBY)
        ok, message, _ = await service.process_event(
            _event("evt_fail", "invoice.paid", _invoice("in_1", "subscription_cycle"))
        )
        assert ok and message == "Processed"
        assert fake_db.stripe_events.docs[0]["status"] == "PROCESSED"
        assert account["credits_balance"] == 200


class TestInvoices:

    async def test_renewal_applies_rollover_cap(self, service, fake_db, stripe_mock, account):
        account["credits_balance"] = 1100
        fake_db.credit_transactions.docs.append({
            "transaction_id": "CTX-SEED", "account_id": ACCOUNT, "amount": 1100, "balance_after": 1100,
            "type": "bonus", "description": "seed", "reference_id": None,
        })
        fake_db.subscriptions.docs.append(make_local_subscription(account_id=ACCOUNT, price_id=HOBBY))
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(price_id=HOBBY)

        ok, _, result = await service.process_event(
            _event("evt_renew", "invoice.payment_succeeded", _invoice("in_renew", "subscription_cycle"))
        )

        assert ok
        assert result["credits_added"] == 100
        assert account["credits_balance"] == 1200

        # invoice.paid for the same invoice arrives too
        ok, _, result = await service.process_event(
            _event("evt_renew_2", "invoice.paid", _invoice("in_renew", "subscription_cycle"))
        )
        assert result["credits_added"] == 0
        assert account["credits_balance"] == 1200

    async def test_first_invoice_grants_plan_credits(self, service, fake_db, stripe_mock, account):
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(price_id=HOBBY)
        ok, _, result = await service.process_event(
            _event("evt_create", "invoice.paid", _invoice("in_first", "subscription_create"))
        )
        assert ok
        assert result["credits_added"] == 200
        assert fake_db.subscriptions.docs[0]["subscription_id"] == "sub_1"
        assert account["subscription_tier"] == "hobby"

    async def test_manual_invoice_grants_nothing(self, service, fake_db, stripe_mock, account):
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(price_id=HOBBY)
        ok, _, result = await service.process_event(
            _event("evt_manual", "invoice.paid", _invoice("in_manual", "subscription_update"))
        )
        assert ok and result["credits_added"] == 0
        assert account["credits_balance"] == 0

    async def test_non_subscription_invoice_is_ignored(self, service, stripe_mock, account):
        ok, _, result = await service.process_event(
            _event("evt_one_off", "invoice.paid", _invoice("in_x", "manual", subscription=None))
        )
        assert ok and result["ignored"] is True
        stripe_mock.retrieve_subscription.assert_not_called()

    async def test_payment_failure_marks_past_due(self, service, fake_db, stripe_mock, account):
        fake_db.subscriptions.docs.append(make_local_subscription(account_id=ACCOUNT, price_id=HOBBY))
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(price_id=HOBBY, status="past_due")

        ok, _, _ = await service.process_event(
            _event("evt_failpay", "invoice.payment_failed", _invoice("in_due", "subscription_cycle"))
        )

        assert ok
        assert account["subscription_status"] == "past_due"
        assert fake_db.subscriptions.docs[0]["status"] == "past_due"


class TestSubscriptionEvents:

    async def test_deleted_subscription_cancels_account(self, service, fake_db, account):
        fake_db.subscriptions.docs.append(make_local_subscription(account_id=ACCOUNT, price_id=HOBBY))
        subscription = make_stripe_subscription(price_id=HOBBY, status="canceled", canceled_at=1_701_000_000)

        ok, _, result = await service.process_event(_event("evt_del", "customer.subscription.deleted", subscription))

        assert ok
        assert result["account_id"] == ACCOUNT
        assert account["subscription_status"] == "canceled"
        assert account["subscription_tier"] is None

    async def test_stale_update_arriving_last_does_not_roll_back(self, service, fake_db, stripe_mock, account):
        """Stripe delivers out of order: the older snapshot is processed after the newer one."""
        fake_db.subscriptions.docs.append(make_local_subscription(account_id=ACCOUNT, price_id=HOBBY))
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(price_id=PRO)

        await service.process_event(
            _event("evt_newer", "customer.subscription.updated", make_stripe_subscription(price_id=PRO))
        )
        ok, _, _ = await service.process_event(
            _event("evt_older", "customer.subscription.updated", make_stripe_subscription(price_id=HOBBY))
        )

        assert ok
        assert fake_db.subscriptions.docs[0]["price_id"] == PRO
        assert account["subscription_tier"] == "pro"
        assert stripe_mock.retrieve_subscription.await_count == 2
        stripe_mock.retrieve_subscription.assert_awaited_with("sub_1")

    async def test_created_event_reads_current_subscription(self, service, fake_db, stripe_mock, account):
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(price_id=HOBBY, status="active")
        snapshot = make_stripe_subscription(price_id=HOBBY, status="incomplete")

        ok, _, result = await service.process_event(_event("evt_created", "customer.subscription.created", snapshot))

        assert ok and result["subscription_id"] == "sub_1"
        assert fake_db.subscriptions.docs[0]["status"] == "active"
        assert account["subscription_status"] == "active"

    async def test_update_for_vanished_subscription_is_ignored(self, service, fake_db, stripe_mock, account):
        fake_db.subscriptions.docs.append(make_local_subscription(account_id=ACCOUNT, price_id=HOBBY))
        stripe_mock.retrieve_subscription.side_effect = ProviderError(
            "No such subscription: 'sub_1'", status_code=404,
        )

        ok, _, result = await service.process_event(
            _event("evt_gone", "customer.subscription.updated", make_stripe_subscription(price_id=PRO))
        )

        assert ok and result["ignored"] is True
        assert fake_db.subscriptions.docs[0]["price_id"] == HOBBY

    async def test_plan_checkout_syncs_subscription(self, service, fake_db, stripe_mock, account):
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(
            subscription_id="sub_new", price_id=HOBBY,
        )
        session = {
            "id": "cs_plan",
            "mode": "subscription",
            "customer": "cus_1",
            "subscription": "sub_new",
            "metadata": {"account_id": ACCOUNT, "type": "plan", "plan_key": "hobby"},
        }
        ok, _, result = await service.process_event(_event("evt_plan", "checkout.session.completed", session))

        assert ok
        stripe_mock.retrieve_subscription.assert_awaited_once_with("sub_new")
        assert fake_db.subscriptions.docs[0]["account_id"] == ACCOUNT
        assert account["subscription_status"] == "active"

    async def test_unhandled_event_is_acknowledged(self, service, fake_db):
        ok, message, result = await service.process_event(_event("evt_misc", "customer.updated", {"id": "cus_1"}))
        assert ok and result == {"ignored": True}
        assert fake_db.stripe_events.docs[0]["status"] == "PROCESSED"


class TestRefunds:

    async def _buy_pack(self, service):
        await service.process_event(_event("evt_buy", "checkout.session.completed", _pack_session("pi_refund")))

    async def test_full_refund_claws_back_pack_credits(self, service, fake_db, account):
        await self._buy_pack(service)
        charge = {"id": "ch_1", "payment_intent": "pi_refund", "refunded": True, "amount": 499, "amount_refunded": 499}

        ok, _, result = await service.process_event(_event("evt_refund", "charge.refunded", charge))

        assert ok and result["clawed_back"] == 50
        assert account["credits_balance"] == 0
        assert fake_db.credit_transactions.docs[-1]["description"] == "Clawback: refunded payment pi_refund"

    async def test_partial_refund_keeps_credits(self, service, fake_db, account):
        await self._buy_pack(service)
        charge = {"id": "ch_2", "payment_intent": "pi_refund", "refunded": False, "amount": 499, "amount_refunded": 100}

        ok, _, result = await service.process_event(_event("evt_partial", "charge.refunded", charge))

        assert ok and result["clawed_back"] == 0
        assert account["credits_balance"] == 50


class TestParsing:

    async def test_invalid_json_without_secret(self, service, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
        ok, message, _ = await service.process_webhook(b"{not json", None)
        assert ok is False
        assert message == "Invalid payload"

    async def test_bad_signature_is_rejected(self, service, fake_db, monkeypatch):
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
        payload = json.dumps(_event("evt_sig", "customer.updated", {"id": "cus_1"})).encode()
        ok, message, _ = await service.process_webhook(payload, "t=1,v1=deadbeef")
        assert ok is False
        assert message == "Invalid signature"
        assert fake_db.stripe_events.docs == []

    async def test_unsigned_payload_is_processed_when_no_secret(self, service, fake_db, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
        payload = json.dumps(_event("evt_plain", "customer.updated", {"id": "cus_1"})).encode()
        ok, message, _ = await service.process_webhook(payload, None)
        assert ok and message == "Processed"


def _dispute(dispute_id="dp_1", amount=1500, status="needs_response"):
    return {
        "id": dispute_id,
        "object": "dispute",
        "charge": "ch_disputed",
        "amount": amount,
        "reason": "fraudulent",
        "status": status,
    }


class TestDisputes:

    @pytest.fixture
    def funded(self, fake_db, stripe_mock, account):
        account["credits_balance"] = 500
        fake_db.credit_transactions.docs.append({
            "transaction_id": "CTX-SEED", "account_id": ACCOUNT, "amount": 500, "balance_after": 500,
            "type": "bonus", "description": "seed", "reference_id": None,
        })
        stripe_mock.retrieve_charge.return_value = {"id": "ch_disputed", "customer": "cus_1"}
        return account

    async def test_dispute_holds_credits_and_freezes_usage(self, service, fake_db, stripe_mock, funded):
        ok, _, result = await service.process_event(_event("evt_dp", "charge.dispute.created", _dispute()))

        assert ok and result["credits_held"] == 150
        stripe_mock.retrieve_charge.assert_awaited_once_with("ch_disputed")
        assert funded["credits_balance"] == 350
        assert funded["dispute_status"] == "pending"
        row = fake_db.dispute_events.docs[0]
        assert row["status"] == "created"
        assert row["credits_requested"] == 150
        assert row["credits_held"] == 150
        assert any(a["action"] == "DISPUTE_OPENED" for a in fake_db.audit_logs.docs)

        with pytest.raises(AccountDisputedError) as exc_info:
            await CreditService().debit(ACCOUNT, 10)
        assert exc_info.value.status_code == 403
        assert funded["credits_balance"] == 350

    async def test_hold_never_takes_balance_below_zero(self, service, fake_db, funded):
        ok, _, result = await service.process_event(
            _event("evt_dp_big", "charge.dispute.created", _dispute(amount=10_000))
        )

        assert ok and result["credits_held"] == 500
        assert funded["credits_balance"] == 0
        assert fake_db.dispute_events.docs[0]["credits_requested"] == 1000

    async def test_redelivered_dispute_is_held_once(self, service, fake_db, funded):
        await service.process_event(_event("evt_dp_a", "charge.dispute.created", _dispute()))
        ok, _, result = await service.process_event(_event("evt_dp_b", "charge.dispute.created", _dispute()))

        assert ok and result["credits_held"] == 150
        assert funded["credits_balance"] == 350
        assert fake_db.dispute_events.docs[0]["credits_held"] == 150
        assert await CreditService().verify_conservation(ACCOUNT) == {
            "balance": 350, "ledger_sum": 350, "consistent": True,
        }

    async def test_won_dispute_releases_hold(self, service, fake_db, funded):
        await service.process_event(_event("evt_dp", "charge.dispute.created", _dispute()))
        ok, _, result = await service.process_event(
            _event("evt_dp_won", "charge.dispute.closed", _dispute(status="won"))
        )

        assert ok and result["credits_released"] == 150
        assert funded["credits_balance"] == 500
        assert funded["dispute_status"] == "resolved"
        assert fake_db.dispute_events.docs[0]["status"] == "closed"
        assert await CreditService().debit(ACCOUNT, 10) == 490

    async def test_won_update_then_close_releases_once(self, service, fake_db, funded):
        await service.process_event(_event("evt_dp", "charge.dispute.created", _dispute()))
        await service.process_event(_event("evt_dp_upd", "charge.dispute.updated", _dispute(status="won")))
        await service.process_event(_event("evt_dp_close", "charge.dispute.closed", _dispute(status="won")))

        assert funded["credits_balance"] == 500

    async def test_lost_dispute_keeps_hold(self, service, fake_db, funded):
        await service.process_event(_event("evt_dp", "charge.dispute.created", _dispute()))
        ok, _, result = await service.process_event(
            _event("evt_dp_lost", "charge.dispute.closed", _dispute(status="lost"))
        )

        assert ok and result["credits_released"] == 0
        assert funded["credits_balance"] == 350
        assert funded["dispute_status"] == "lost"
        assert await CreditService().debit(ACCOUNT, 10) == 340

    async def test_other_open_dispute_keeps_account_frozen(self, service, fake_db, funded):
        await service.process_event(_event("evt_dp_1", "charge.dispute.created", _dispute("dp_1", amount=100)))
        await service.process_event(_event("evt_dp_2", "charge.dispute.created", _dispute("dp_2", amount=100)))

        await service.process_event(_event("evt_dp_1_won", "charge.dispute.closed", _dispute("dp_1", status="won")))

        assert funded["dispute_status"] == "pending"
        with pytest.raises(AccountDisputedError):
            await CreditService().debit(ACCOUNT, 1)

    async def test_update_for_unrecorded_dispute_fails_for_retry(self, service, fake_db, funded):
        ok, message, _ = await service.process_event(
            _event("evt_dp_early", "charge.dispute.updated", _dispute(status="under_review"))
        )

        assert ok is False
        assert fake_db.stripe_events.docs[0]["status"] == "FAILED"


class TestRecovery:

    async def _fail_invoice_event(self, service, fake_db, stripe_mock):
        fake_db.subscriptions.docs.append(make_local_subscription(account_id=ACCOUNT, price_id=HOBBY))
        event = _event("evt_lost", "invoice.paid", _invoice("in_lost", "subscription_cycle"))
        stripe_mock.retrieve_subscription.side_effect = ProviderError("Stripe unavailable")
        ok, _, _ = await service.process_event(event)
        assert ok is False
        return event

    async def test_failed_event_is_refetched_and_applied(self, service, fake_db, stripe_mock, account):
        event = await self._fail_invoice_event(service, fake_db, stripe_mock)
        assert fake_db.stripe_events.docs[0]["retry_count"] == 0
        stripe_mock.retrieve_subscription.side_effect = None
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(price_id=HOBBY)
        stripe_mock.retrieve_event.return_value = event

        summary = await service.recover_failed_events()

        assert summary == {"processed": 1, "recovered": 1, "unrecoverable": 0, "failed": 0}
        stripe_mock.retrieve_event.assert_awaited_once_with("evt_lost")
        assert fake_db.stripe_events.docs[0]["status"] == "PROCESSED"
        assert account["credits_balance"] == 200

    async def test_event_missing_from_stripe_is_unrecoverable(self, service, fake_db, stripe_mock, account):
        await self._fail_invoice_event(service, fake_db, stripe_mock)
        stripe_mock.retrieve_event.side_effect = ProviderError("No such event: 'evt_lost'", status_code=404)

        summary = await service.recover_failed_events()

        assert summary["unrecoverable"] == 1
        assert fake_db.stripe_events.docs[0]["status"] == "UNRECOVERABLE"

    async def test_retries_stop_after_the_limit(self, service, fake_db, stripe_mock, account):
        event = await self._fail_invoice_event(service, fake_db, stripe_mock)
        stripe_mock.retrieve_event.return_value = event

        for _ in range(MAX_WEBHOOK_RETRIES - 1):
            summary = await service.recover_failed_events()
            assert summary["failed"] == 1
            assert fake_db.stripe_events.docs[0]["status"] == "FAILED"

        summary = await service.recover_failed_events()
        assert summary["unrecoverable"] == 1
        assert fake_db.stripe_events.docs[0]["status"] == "UNRECOVERABLE"

        summary = await service.recover_failed_events()
        assert summary["processed"] == 0
        assert account["credits_balance"] == 0

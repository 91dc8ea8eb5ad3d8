"""
Admin subscription override tests.
Overrides on a live subscription go through Stripe and are read back with the
sync service; without one only the profile changes; every override is audited
with the acting admin. Route tests cover the admin-only credit, subscription
and job endpoints.
"""
from unittest.mock import AsyncMock, patch

import pytest

from auth import create_access_token
from services.admin_billing_service import AdminBillingService
from services.billing_errors import NotFoundError, ProviderError, ValidationError
from services.credit_service import CreditService
from services.plan_registry import PriceResolver
from services.subscription_change_service import SubscriptionChangeService
from services.subscription_sync_service import SubscriptionSyncService

from billing_factories import make_profile, make_local_subscription, make_stripe_subscription

ACCOUNT = "acct_admin"
HOBBY = "price_1SZmVyALMLhQocpf0H7n5ls8"
PRO = "price_1SZmVzALMLhQocpfPyRX2W8D"
BUSINESS = "price_1SZmVzALMLhQocpfqPk9spg4"

RESOLVER = PriceResolver.from_config(use_env_overrides=False)


@pytest.fixture
def service(fake_db, stripe_mock):
    credits = CreditService()
    return AdminBillingService(
        RESOLVER,
        stripe_mock,
        SubscriptionSyncService(RESOLVER, stripe_mock, credits),
        SubscriptionChangeService(RESOLVER, stripe_mock, credits),
    )


def _seed(fake_db, price_id=PRO, tier="pro", status="active"):
    fake_db.profiles.docs.append(make_profile(account_id=ACCOUNT, tier=tier))
    fake_db.subscriptions.docs.append(make_local_subscription(
        account_id=ACCOUNT, price_id=price_id, status=status, created_at="2026-01-01T00:00:00+00:00",
    ))


def _profile(fake_db):
    return fake_db.profiles.docs[0]


def _admin_headers():
    return {"Authorization": f"Bearer {create_access_token({'sub': 'ops', 'role': 'admin'})}"}


class TestOverride:

    async def test_cancel_goes_through_stripe_and_is_synced(self, service, fake_db, stripe_mock):
        _seed(fake_db)
        stripe_mock.cancel_subscription.return_value = make_stripe_subscription(price_id=PRO, status="canceled")

        result = await service.override_subscription(ACCOUNT, "cancel", actor_id="ops")

        stripe_mock.cancel_subscription.assert_awaited_once_with("sub_1")
        assert result["action"] == "canceled"
        assert result["subscription_id"] == "sub_1"
        assert fake_db.subscriptions.docs[0]["status"] == "canceled"
        assert _profile(fake_db)["subscription_status"] == "canceled"
        assert _profile(fake_db)["subscription_tier"] is None
        assert fake_db.billing_locks.docs == []

    async def test_change_releases_schedule_and_prorates(self, service, fake_db, stripe_mock):
        _seed(fake_db)
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(price_id=PRO, schedule="sub_sched_1")
        stripe_mock.modify_subscription.return_value = make_stripe_subscription(price_id=BUSINESS)

        result = await service.override_subscription(ACCOUNT, "change", actor_id="ops", target_price_id=BUSINESS)

        stripe_mock.release_schedule.assert_awaited_once_with("sub_sched_1")
        stripe_mock.modify_subscription.assert_awaited_once_with(
            "sub_1", items=[{"id": "si_1", "price": BUSINESS}], proration_behavior="create_prorations",
        )
        assert result == {"action": "changed", "subscription_id": "sub_1", "status": "active", "plan": "Business"}
        assert fake_db.subscriptions.docs[0]["price_id"] == BUSINESS
        assert _profile(fake_db)["subscription_tier"] == "business"

    async def test_without_live_subscription_only_profile_changes(self, service, fake_db, stripe_mock):
        _seed(fake_db, status="canceled", tier=None)

        result = await service.override_subscription(ACCOUNT, "change", actor_id="ops", target_price_id=HOBBY)

        assert result["action"] == "profile_updated"
        assert result["subscription_id"] is None
        stripe_mock.modify_subscription.assert_not_called()
        stripe_mock.cancel_subscription.assert_not_called()
        assert _profile(fake_db)["subscription_status"] == "active"
        assert _profile(fake_db)["subscription_tier"] == "hobby"

    async def test_override_is_audited_with_admin(self, service, fake_db, stripe_mock):
        fake_db.profiles.docs.append(make_profile(account_id=ACCOUNT, tier="pro"))

        await service.override_subscription(ACCOUNT, "cancel", actor_id="ops")

        audit = [a for a in fake_db.audit_logs.docs if a["action"] == "ADMIN_SUBSCRIPTION_OVERRIDE"]
        assert len(audit) == 1
        assert audit[0]["actor_id"] == "ops"
        assert audit[0]["before_state"] == {"subscription_status": "active", "subscription_tier": "pro"}
        assert audit[0]["after_state"] == {"subscription_status": None, "subscription_tier": None}

    async def test_stripe_failure_propagates_and_writes_nothing(self, service, fake_db, stripe_mock):
        _seed(fake_db)
        stripe_mock.cancel_subscription.side_effect = ProviderError("Stripe unavailable", status_code=503)

        with pytest.raises(ProviderError):
            await service.override_subscription(ACCOUNT, "cancel", actor_id="ops")

        assert fake_db.subscriptions.docs[0]["status"] == "active"
        assert _profile(fake_db)["subscription_tier"] == "pro"
        assert not any(a["action"] == "ADMIN_SUBSCRIPTION_OVERRIDE" for a in fake_db.audit_logs.docs)

    @pytest.mark.parametrize("action,target", [("pause", None), ("change", None), ("change", "price_not_a_plan")])
    async def test_invalid_requests_are_rejected(self, service, fake_db, stripe_mock, action, target):
        _seed(fake_db)
        with pytest.raises(ValidationError):
            await service.override_subscription(ACCOUNT, action, actor_id="ops", target_price_id=target)
        stripe_mock.retrieve_subscription.assert_not_called()

    async def test_unknown_account(self, service, fake_db):
        with pytest.raises(NotFoundError) as exc_info:
            await service.override_subscription(ACCOUNT, "cancel", actor_id="ops")
        assert exc_info.value.code == "ACCOUNT_NOT_FOUND"


class TestAccountSubscription:

    async def test_local_row_with_live_view(self, service, fake_db, stripe_mock):
        _seed(fake_db)
        stripe_mock.retrieve_subscription.return_value = make_stripe_subscription(
            price_id=PRO, cancel_at_period_end=True,
        )

        view = await service.get_account_subscription(ACCOUNT)

        assert view["subscription"]["subscription_id"] == "sub_1"
        assert view["stripe_subscription"]["price_id"] == PRO
        assert view["stripe_subscription"]["cancel_at_period_end"] is True

    async def test_subscription_missing_in_stripe(self, service, fake_db, stripe_mock):
        _seed(fake_db)
        stripe_mock.retrieve_subscription.side_effect = ProviderError("No such subscription", status_code=404)

        view = await service.get_account_subscription(ACCOUNT)

        assert view["subscription"]["subscription_id"] == "sub_1"
        assert view["stripe_subscription"] is None

    async def test_account_without_subscription(self, service, fake_db, stripe_mock):
        fake_db.profiles.docs.append(make_profile(account_id=ACCOUNT))
        assert await service.get_account_subscription(ACCOUNT) == {"subscription": None, "stripe_subscription": None}
        stripe_mock.retrieve_subscription.assert_not_called()


class TestAdminBillingRoutes:

    def test_set_credits(self, client, fake_db):
        fake_db.profiles.docs.append(make_profile(account_id=ACCOUNT, balance=10))
        response = client.post(
            f"/api/admin/billing/accounts/{ACCOUNT}/credits",
            json={"new_balance": 250, "reason": "Migration"},
            headers=_admin_headers(),
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"previous_balance": 10, "balance": 250, "delta": 240}
        assert fake_db.credit_transactions.docs[-1]["type"] == "bonus"

    def test_negative_credits_use_error_envelope(self, client, fake_db):
        fake_db.profiles.docs.append(make_profile(account_id=ACCOUNT, balance=10))
        response = client.post(
            f"/api/admin/billing/accounts/{ACCOUNT}/credits", json={"new_balance": -5}, headers=_admin_headers(),
        )
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_credits_require_admin(self, client, fake_db):
        token = create_access_token({"sub": ACCOUNT})
        response = client.post(
            f"/api/admin/billing/accounts/{ACCOUNT}/credits",
            json={"new_balance": 1000},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 403

    def test_override_route_passes_admin_as_actor(self, client, fake_db):
        from services.admin_billing_service import admin_billing_service

        result = {"action": "canceled", "subscription_id": "sub_1", "status": "canceled", "plan": None}
        with patch.object(admin_billing_service, "override_subscription", AsyncMock(return_value=result)) as run:
            response = client.post(
                f"/api/admin/billing/accounts/{ACCOUNT}/subscription",
                json={"action": "cancel"},
                headers=_admin_headers(),
            )
        assert response.status_code == 200
        assert response.json()["data"] == result
        run.assert_awaited_once_with(ACCOUNT, "cancel", actor_id="ops", target_price_id=None)

    def test_job_triggers(self, client, fake_db):
        expirations = {"message": "Checked 0 expired subscriptions, fixed 0", "count": 0, "errors": 0}
        recovery = {"message": "Recovered 0 of 0 failed webhook events", "count": 0, "errors": 0, "unrecoverable": 0}
        with patch("routes.admin_billing.run_expiration_check", AsyncMock(return_value=expirations)), \
                patch("routes.admin_billing.run_webhook_recovery", AsyncMock(return_value=recovery)) as recover:
            first = client.post("/api/admin/billing/jobs/check-expirations", headers=_admin_headers())
            second = client.post("/api/admin/billing/jobs/recover-webhooks?limit=5", headers=_admin_headers())
        assert first.json()["data"] == expirations
        assert second.json()["data"] == recovery
        recover.assert_awaited_once_with(limit=5)

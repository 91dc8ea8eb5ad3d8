"""Admin Billing Service - operator view and override of an account's subscription.

Overrides go through Stripe when the account has a live subscription and are
then read back with the sync service, so local rows still only reflect what
Stripe reports. Without a live subscription the override is profile-only.

Every override is audited with the acting admin.
"""
import logging
from typing import Any, Dict, Optional

from database import database
from models import AuditAction, SubscriptionStatus, timestamp_to_iso, utc_now_iso
from services.billing_errors import NotFoundError, ProviderError, ValidationError
from services.plan_registry import PriceResolver, price_resolver
from services.stripe_client import StripeClient, stripe_client, is_not_found_error
from services.subscription_change_service import (
    SubscriptionChangeService,
    subscription_change_service,
    subscription_item_id,
    subscription_period_end,
    subscription_price_id,
    subscription_schedule_id,
)
from services.subscription_sync_service import SubscriptionSyncService, subscription_sync_service
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

OVERRIDE_ACTIONS = ("cancel", "change")
# Local statuses with nothing left to modify in Stripe
_CLOSED_STATUSES = ("canceled", "incomplete", "incomplete_expired")


class AdminBillingService:

    def __init__(
        self,
        resolver: PriceResolver = price_resolver,
        client: StripeClient = stripe_client,
        sync: SubscriptionSyncService = subscription_sync_service,
        changes: SubscriptionChangeService = subscription_change_service,
    ):
        self.resolver = resolver
        self.stripe = client
        self.sync = sync
        self.changes = changes

    async def _require_profile(self, account_id: str) -> Dict[str, Any]:
        db = database.get_db()
        profile = await db.profiles.find_one({"account_id": account_id}, {"_id": 0})
        if not profile:
            raise NotFoundError(f"Account {account_id} not found", code="ACCOUNT_NOT_FOUND")
        return profile

    async def _latest_subscription(self, account_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        cursor = db.subscriptions.find({"account_id": account_id}, {"_id": 0}).sort("created_at", -1).limit(1)
        rows = await cursor.to_list(length=1)
        return rows[0] if rows else None

    async def get_account_subscription(self, account_id: str) -> Dict[str, Any]:
        """Latest local subscription row next to Stripe's live view of it."""
        await self._require_profile(account_id)
        local = await self._latest_subscription(account_id)
        if not local:
            return {"subscription": None, "stripe_subscription": None}

        try:
            live = await self.stripe.retrieve_subscription(local["subscription_id"])
        except ProviderError as e:
            if not is_not_found_error(e):
                raise
            logger.info("ADMIN_SUBSCRIPTION_MISSING_IN_STRIPE subscription_id=%s", local["subscription_id"])
            return {"subscription": local, "stripe_subscription": None}

        return {
            "subscription": local,
            "stripe_subscription": {
                "id": live.get("id"),
                "status": live.get("status"),
                "price_id": subscription_price_id(live),
                "cancel_at_period_end": bool(live.get("cancel_at_period_end")),
                "current_period_end": timestamp_to_iso(subscription_period_end(live)),
                "canceled_at": timestamp_to_iso(live.get("canceled_at")),
            },
        }

    async def override_subscription(
        self,
        account_id: str,
        action: str,
        actor_id: str,
        target_price_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Cancel immediately, or swap the price with prorations, on behalf of the account."""
        if action not in OVERRIDE_ACTIONS:
            raise ValidationError('action must be "cancel" or "change"', details={"action": action})
        target = None
        if action == "change":
            if not target_price_id:
                raise ValidationError("target_price_id is required for plan changes")
            target = self.resolver.resolve_plan(target_price_id)
            if target is None:
                raise ValidationError(
                    "Invalid price ID", code="INVALID_PRICE_ID", details={"price_id": target_price_id}
                )

        profile = await self._require_profile(account_id)
        local = await self._latest_subscription(account_id)
        before = {
            "subscription_status": profile.get("subscription_status"),
            "subscription_tier": profile.get("subscription_tier"),
        }

        if local and local.get("status") not in _CLOSED_STATUSES:
            subscription_id = local["subscription_id"]
            async with self.changes.subscription_lock(subscription_id):
                if action == "cancel":
                    updated = await self.stripe.cancel_subscription(subscription_id)
                else:
                    live = await self.stripe.retrieve_subscription(subscription_id)
                    schedule_id = subscription_schedule_id(live)
                    if schedule_id:
                        await self.stripe.release_schedule(schedule_id)
                    updated = await self.stripe.modify_subscription(
                        subscription_id,
                        items=[{"id": subscription_item_id(live), "price": target.price_id}],
                        proration_behavior="create_prorations",
                    )
                await self.sync.sync_subscription(updated, account_id=account_id)
            result = {
                "action": "canceled" if action == "cancel" else "changed",
                "subscription_id": subscription_id,
                "status": updated.get("status"),
                "plan": target.display_name if target else None,
            }
        else:
            # Nothing to modify in Stripe: admin override of the profile only.
            if action == "cancel":
                profile_update = {"subscription_status": None, "subscription_tier": None}
            else:
                profile_update = {"subscription_status": SubscriptionStatus.ACTIVE.value, "subscription_tier": target.key}
            db = database.get_db()
            await db.profiles.update_one(
                {"account_id": account_id},
                {"$set": {**profile_update, "updated_at": utc_now_iso()}},
            )
            result = {
                "action": "profile_updated",
                "subscription_id": None,
                "plan": target.display_name if target else None,
                "note": "Profile updated directly. No Stripe subscription was modified.",
            }

        after = await self._require_profile(account_id)
        logger.warning(
            "ADMIN_SUBSCRIPTION_OVERRIDE admin=%s account_id=%s action=%s result=%s target_price_id=%s",
            actor_id, account_id, action, result["action"], target_price_id,
        )
        await create_audit_log(
            action=AuditAction.ADMIN_SUBSCRIPTION_OVERRIDE,
            actor_id=actor_id,
            account_id=account_id,
            resource_type="subscription",
            resource_id=result["subscription_id"],
            before_state=before,
            after_state={
                "subscription_status": after.get("subscription_status"),
                "subscription_tier": after.get("subscription_tier"),
            },
            metadata={"action": action, "result": result["action"], "target_price_id": target_price_id},
        )
        return result


admin_billing_service = AdminBillingService()

"""Subscription Sync Service - reconcile local billing state from Stripe.

Stripe is the source of truth for subscription state. This service:
- Upserts local subscription rows from Stripe subscription objects
- Derives profile subscription_status / subscription_tier from the primary
  subscription of the account
- Clears scheduled downgrade fields once Stripe has switched the price or
  the schedule is gone
- Repairs drifted accounts per customer or for all customers, with a dry-run
  mode that reports every write without performing it
- Catches live subscriptions whose period ended without a renewal webhook

Used by webhooks (single subscription), scripts/fix_subscription.py, the
admin reconcile endpoint (batch) and the expiration check job.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from database import database
from models import (
    AuditAction,
    ResolutionConfidence,
    SubscriptionStatus,
    LIVE_SUBSCRIPTION_STATUSES,
    timestamp_to_iso,
    utc_now_iso,
)
from services.billing_errors import NotFoundError, ProviderError
from services.credit_service import CreditService, credit_service
from services.plan_registry import PriceResolver, price_resolver
from services.stripe_client import StripeClient, stripe_client, is_not_found_error
from services.subscription_change_service import (
    subscription_period_end,
    subscription_period_start,
    subscription_price_id,
    subscription_schedule_id,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# Stripe subscription status -> profiles.subscription_status
ACCOUNT_STATUS_BY_STRIPE_STATUS = {
    "trialing": SubscriptionStatus.TRIALING.value,
    "active": SubscriptionStatus.ACTIVE.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "paused": SubscriptionStatus.PAST_DUE.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "incomplete_expired": SubscriptionStatus.CANCELED.value,
    "incomplete": None,
}

# Lower rank wins when choosing which subscription drives the profile
_PRIMARY_RANK = {
    "active": 0,
    "trialing": 1,
    "past_due": 2,
    "unpaid": 3,
    "paused": 4,
    "incomplete": 5,
    "incomplete_expired": 6,
    "canceled": 7,
}

ENTITLED_ACCOUNT_STATUSES = (
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
)


def choose_primary_subscription(subscriptions: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Most relevant subscription: best status, then most recently created."""
    candidates = list(subscriptions)
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda s: (_PRIMARY_RANK.get(s.get("status"), 99), -(s.get("created") or 0)),
    )


def subscription_fields(subscription: Dict[str, Any]) -> Dict[str, Any]:
    """Provider-owned fields of a local subscription row."""
    return {
        "status": subscription.get("status"),
        "price_id": subscription_price_id(subscription),
        "current_period_start": timestamp_to_iso(subscription_period_start(subscription)),
        "current_period_end": timestamp_to_iso(subscription_period_end(subscription)),
        "trial_end": timestamp_to_iso(subscription.get("trial_end")),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "canceled_at": timestamp_to_iso(subscription.get("canceled_at")),
    }


def _changes(before: Optional[Dict[str, Any]], after: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    before = before or {}
    return {
        key: {"from": before.get(key), "to": value}
        for key, value in after.items()
        if before.get(key) != value
    }


class SubscriptionSyncService:
    """Applies Stripe subscription state to local records."""

    def __init__(
        self,
        resolver: PriceResolver = price_resolver,
        client: StripeClient = stripe_client,
        credits: CreditService = credit_service,
    ):
        self.resolver = resolver
        self.stripe = client
        self.credits = credits

    async def get_account_id_for_customer(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        db = database.get_db()
        profile = await db.profiles.find_one({"stripe_customer_id": customer_id}, {"_id": 0, "account_id": 1})
        return profile.get("account_id") if profile else None

    async def _has_other_live_subscription(self, account_id: str, subscription_id: str) -> bool:
        db = database.get_db()
        other = await db.subscriptions.find_one(
            {
                "account_id": account_id,
                "subscription_id": {"$ne": subscription_id},
                "status": {"$in": list(LIVE_SUBSCRIPTION_STATUSES)},
            },
            {"_id": 0, "subscription_id": 1},
        )
        return other is not None

    # =========================================================================
    # Single subscription
    # =========================================================================

    async def sync_subscription(
        self,
        subscription: Dict[str, Any],
        account_id: Optional[str] = None,
        dry_run: bool = False,
        update_profile: bool = True,
    ) -> Dict[str, Any]:
        """
        Upsert the local row for a Stripe subscription and refresh the profile.

        Args:
            subscription: Stripe subscription object (dict)
            account_id: Known account; otherwise taken from metadata or the customer mapping
            dry_run: Compute mutations without writing
            update_profile: False when another subscription of the account drives the profile

        Returns:
            Dict with subscription_id, account_id, resolution and the list of mutations
        """
        subscription_id = subscription["id"]
        account_id = (
            account_id
            or (subscription.get("metadata") or {}).get("account_id")
            or await self.get_account_id_for_customer(subscription.get("customer"))
        )
        if not account_id:
            raise NotFoundError(
                f"No account linked to Stripe customer {subscription.get('customer')}",
                code="ACCOUNT_NOT_FOUND",
            )

        db = database.get_db()
        fields = subscription_fields(subscription)
        existing = await db.subscriptions.find_one({"subscription_id": subscription_id}, {"_id": 0})

        scheduled_price_id = (existing or {}).get("scheduled_price_id")
        if scheduled_price_id and (
            fields["price_id"] == scheduled_price_id
            or not subscription_schedule_id(subscription)
            or fields["status"] not in LIVE_SUBSCRIPTION_STATUSES
        ):
            fields["scheduled_price_id"] = None
            fields["scheduled_change_date"] = None

        mutations: List[Dict[str, Any]] = []
        subscription_changes = _changes(existing, fields)
        if existing is None or existing.get("account_id") != account_id:
            subscription_changes["account_id"] = {"from": (existing or {}).get("account_id"), "to": account_id}
        if subscription_changes:
            mutations.append({
                "collection": "subscriptions",
                "key": subscription_id,
                "action": "insert" if existing is None else "update",
                "changes": subscription_changes,
            })

        resolution = self.resolver.resolve_with_fallback(fields["price_id"]) if fields["price_id"] else None

        profile_update: Dict[str, Any] = {}
        if update_profile:
            account_status = ACCOUNT_STATUS_BY_STRIPE_STATUS.get(fields["status"])
            if account_status not in LIVE_SUBSCRIPTION_STATUSES and await self._has_other_live_subscription(
                account_id, subscription_id
            ):
                logger.info(
                    "SUBSCRIPTION_SYNC_PROFILE_SKIPPED subscription_id=%s status=%s (account has another live subscription)",
                    subscription_id, fields["status"],
                )
            else:
                tier = None
                if account_status in ENTITLED_ACCOUNT_STATUSES and resolution:
                    # Only a configured price yields a tier key; guesses stay display labels.
                    if resolution.confidence == ResolutionConfidence.EXACT and resolution.plan_key:
                        tier = resolution.plan_key
                    else:
                        tier = resolution.display_name
                profile_update = {"subscription_status": account_status, "subscription_tier": tier}

        if profile_update:
            profile = await db.profiles.find_one({"account_id": account_id}, {"_id": 0})
            profile_changes = _changes(profile, profile_update)
            if profile_changes:
                mutations.append({
                    "collection": "profiles",
                    "key": account_id,
                    "action": "update",
                    "changes": profile_changes,
                })

        if not dry_run and mutations:
            now = utc_now_iso()
            await db.subscriptions.update_one(
                {"subscription_id": subscription_id},
                {
                    "$set": {**fields, "account_id": account_id, "updated_at": now},
                    "$setOnInsert": {"subscription_id": subscription_id, "created_at": now},
                },
                upsert=True,
            )
            if profile_update:
                await db.profiles.update_one(
                    {"account_id": account_id},
                    {"$set": {**profile_update, "updated_at": now}},
                )

        logger.info(
            "SUBSCRIPTION_SYNCED subscription_id=%s account_id=%s status=%s price_id=%s mutations=%s dry_run=%s",
            subscription_id, account_id, fields["status"], fields["price_id"], len(mutations), dry_run,
        )
        return {
            "subscription_id": subscription_id,
            "account_id": account_id,
            "status": fields["status"],
            "price_id": fields["price_id"],
            "plan_name": resolution.display_name if resolution else None,
            "resolution": resolution.confidence.value if resolution else None,
            "mutations": mutations,
        }

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile_customer(self, customer_id: str, dry_run: bool = False) -> Dict[str, Any]:
        """Repair every local subscription of one Stripe customer from Stripe's records."""
        result: Dict[str, Any] = {
            "customer_id": customer_id,
            "account_id": None,
            "status": "skipped",
            "reason": None,
            "subscriptions": [],
            "mutations": [],
            "ledger": None,
            "dry_run": dry_run,
        }

        account_id = await self.get_account_id_for_customer(customer_id)
        if not account_id:
            result["reason"] = "no_profile"
            logger.info("RECONCILE_SKIPPED customer_id=%s reason=no_profile", customer_id)
            return result
        result["account_id"] = account_id

        subscriptions = await self.stripe.list_subscriptions(customer_id, limit=10)
        if not subscriptions:
            result["reason"] = "no_subscriptions"
            logger.info("RECONCILE_SKIPPED customer_id=%s reason=no_subscriptions", customer_id)
            return result

        primary = choose_primary_subscription(subscriptions)
        # The primary subscription is applied last so the profile ends on its state.
        ordered = [s for s in subscriptions if s is not primary] + [primary]
        for subscription in ordered:
            synced = await self.sync_subscription(
                subscription,
                account_id=account_id,
                dry_run=dry_run,
                update_profile=subscription is primary,
            )
            if synced["resolution"] and synced["resolution"] != ResolutionConfidence.EXACT.value:
                logger.warning(
                    "RECONCILE_DEGRADED_PLAN_NAME customer_id=%s subscription_id=%s price_id=%s plan_name=%s resolution=%s",
                    customer_id, synced["subscription_id"], synced["price_id"], synced["plan_name"], synced["resolution"],
                )
            result["subscriptions"].append({
                "subscription_id": synced["subscription_id"],
                "status": synced["status"],
                "price_id": synced["price_id"],
                "plan_name": synced["plan_name"],
                "resolution": synced["resolution"],
            })
            result["mutations"].extend(synced["mutations"])

        ledger = await self.credits.verify_conservation(account_id)
        result["ledger"] = ledger
        if not ledger["consistent"]:
            await create_audit_log(
                action=AuditAction.LEDGER_DRIFT_DETECTED,
                actor_id="SYSTEM",
                account_id=account_id,
                resource_type="credits",
                resource_id=account_id,
                metadata=ledger,
            )

        if result["mutations"] and not dry_run:
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_RECONCILED,
                actor_id="SYSTEM",
                account_id=account_id,
                resource_type="customer",
                resource_id=customer_id,
                metadata={"mutations": result["mutations"]},
            )

        result["status"] = "processed"
        return result

    async def reconcile_customers(self, customer_ids: Iterable[str], dry_run: bool = False) -> Dict[str, Any]:
        """Reconcile a batch; one customer's failure is counted, not raised."""
        summary: Dict[str, Any] = {
            "total": 0,
            "processed": 0,
            "errors": 0,
            "skipped": 0,
            "dry_run": dry_run,
            "results": [],
        }
        for customer_id in customer_ids:
            summary["total"] += 1
            try:
                result = await self.reconcile_customer(customer_id, dry_run=dry_run)
            except Exception as e:
                logger.error(f"Reconciliation failed for customer {customer_id}: {e}", exc_info=True)
                result = {"customer_id": customer_id, "status": "error", "error": str(e), "mutations": []}

            if result["status"] == "processed":
                summary["processed"] += 1
            elif result["status"] == "error":
                summary["errors"] += 1
            else:
                summary["skipped"] += 1
            summary["results"].append(result)

        logger.info(
            "RECONCILE_SUMMARY total=%s processed=%s errors=%s skipped=%s dry_run=%s",
            summary["total"], summary["processed"], summary["errors"], summary["skipped"], dry_run,
        )
        return summary

    async def reconcile_all(self, dry_run: bool = False) -> Dict[str, Any]:
        customer_ids = await self.stripe.list_all_customer_ids()
        logger.info(f"Reconciling {len(customer_ids)} Stripe customers (dry_run={dry_run})")
        return await self.reconcile_customers(customer_ids, dry_run=dry_run)

    # =========================================================================
    # Expiration check
    # =========================================================================

    async def _expire_locally(self, local: Dict[str, Any]) -> None:
        """Stripe no longer knows the subscription: close it out locally."""
        db = database.get_db()
        now = utc_now_iso()
        await db.subscriptions.update_one(
            {"subscription_id": local["subscription_id"]},
            {"$set": {
                "status": SubscriptionStatus.CANCELED.value,
                "canceled_at": now,
                "scheduled_price_id": None,
                "scheduled_change_date": None,
                "updated_at": now,
            }},
        )
        if not await self._has_other_live_subscription(local["account_id"], local["subscription_id"]):
            await db.profiles.update_one(
                {"account_id": local["account_id"]},
                {"$set": {
                    "subscription_status": SubscriptionStatus.CANCELED.value,
                    "subscription_tier": None,
                    "updated_at": now,
                }},
            )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_EXPIRED,
            actor_id="SYSTEM",
            account_id=local["account_id"],
            resource_type="subscription",
            resource_id=local["subscription_id"],
            before_state={"status": local.get("status")},
            after_state={"status": SubscriptionStatus.CANCELED.value},
            metadata={"current_period_end": local.get("current_period_end"), "reason": "missing_in_stripe"},
        )

    async def check_expirations(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Resync live local subscriptions whose period already ended (missed renewal webhooks)."""
        now = now or datetime.now(timezone.utc)
        db = database.get_db()
        cursor = db.subscriptions.find(
            {
                "status": {"$in": list(LIVE_SUBSCRIPTION_STATUSES)},
                "current_period_end": {"$lt": now.isoformat()},
            },
            {"_id": 0},
        )
        expired = await cursor.to_list(length=None)

        summary = {"processed": 0, "fixed": 0, "errors": 0}
        for local in expired:
            summary["processed"] += 1
            subscription_id = local["subscription_id"]
            try:
                live = await self.stripe.retrieve_subscription(subscription_id)
            except ProviderError as e:
                if not is_not_found_error(e):
                    logger.error("EXPIRATION_CHECK_FAILED subscription_id=%s error=%s", subscription_id, e.message)
                    summary["errors"] += 1
                    continue
                logger.warning("EXPIRATION_CHECK_MISSING_IN_STRIPE subscription_id=%s", subscription_id)
                await self._expire_locally(local)
                summary["fixed"] += 1
                continue

            try:
                await self.sync_subscription(live, account_id=local.get("account_id"))
            except Exception as e:
                logger.error(f"Expiration resync failed for subscription {subscription_id}: {e}", exc_info=True)
                summary["errors"] += 1
                continue
            summary["fixed"] += 1

        logger.info(
            "EXPIRATION_CHECK_COMPLETE processed=%s fixed=%s errors=%s",
            summary["processed"], summary["fixed"], summary["errors"],
        )
        return summary


subscription_sync_service = SubscriptionSyncService()

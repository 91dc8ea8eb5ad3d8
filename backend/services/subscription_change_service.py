"""Subscription Change Service - upgrades, downgrades and schedule management.

Flow for a plan change:
1. Validate the target price (registry only, no Stripe call)
2. Take the per-subscription lease (a second request gets ConflictError)
3. Read the live subscription and correct local price drift (Stripe wins),
   committing before the current tier is read
4. Compare credits_per_cycle of current tier vs target:
   - more credits: upgrade now, invoice the proration immediately and fail
     the whole change if that invoice cannot be paid
   - fewer credits: two-phase subscription schedule switching price at
     period end; local tier is untouched until Stripe reports the switch
   - equal: nothing to do

Key Principles:
- Direction is decided by entitlement (credits), never by price id strings
- No local write happens before Stripe confirms the change
- scheduled_price_id is only set while a downgrade is pending and any upgrade
  or cancellation clears it
- Once a schedule is released the local scheduled fields are cleared, even
  when the rest of the change fails
"""
import calendar
import uuid
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    Plan,
    ChangeDirection,
    CreditTransactionType,
    AuditAction,
    LIVE_SUBSCRIPTION_STATUSES,
    timestamp_to_iso,
    utc_now_iso,
)
from services.billing_errors import (
    ValidationError,
    NotFoundError,
    ConflictError,
    ProviderError,
    InternalError,
)
from services.credit_service import CreditService, credit_service
from services.plan_registry import CURRENCY, PriceResolver, price_resolver
from services.stripe_client import StripeClient, stripe_client, worst_case_call_seconds
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

UPGRADE_PRORATION_BEHAVIOR = "always_invoice"
UPGRADE_PAYMENT_BEHAVIOR = "error_if_incomplete"
# Stripe calls a single change can make while holding the lease
# (retrieve, release, schedule create, schedule modify, release on failure)
MAX_PROVIDER_CALLS_PER_CHANGE = 5
LEASE_MARGIN_SECONDS = 30

_INTERVAL_DAYS = {"day": 1, "week": 7}


# ============================================================================
# Pure helpers
# ============================================================================

def lease_ttl_seconds(client: StripeClient) -> float:
    """Lease lifetime that outlasts the slowest possible change against this client."""
    return MAX_PROVIDER_CALLS_PER_CHANGE * worst_case_call_seconds(client) + LEASE_MARGIN_SECONDS


def detect_change_direction(current: Plan, target: Plan) -> ChangeDirection:
    """Classify a plan change by credits per cycle."""
    if target.credits_per_cycle > current.credits_per_cycle:
        return ChangeDirection.UPGRADE
    if target.credits_per_cycle < current.credits_per_cycle:
        return ChangeDirection.DOWNGRADE
    return ChangeDirection.UNCHANGED


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    return (_first_item(subscription).get("price") or {}).get("id")


def subscription_item_id(subscription: Dict[str, Any]) -> Optional[str]:
    return _first_item(subscription).get("id")


def subscription_schedule_id(subscription: Dict[str, Any]) -> Optional[str]:
    schedule = subscription.get("schedule")
    if isinstance(schedule, dict):
        return schedule.get("id")
    return schedule or None


def _add_interval(timestamp: int, interval: str, count: int) -> int:
    start = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    if interval in _INTERVAL_DAYS:
        return int((start + timedelta(days=_INTERVAL_DAYS[interval] * count)).timestamp())
    months = count * (12 if interval == "year" else 1)
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return int(start.replace(year=year, month=month, day=day).timestamp())


def subscription_period_start(subscription: Dict[str, Any]) -> Optional[int]:
    return subscription.get("current_period_start") or _first_item(subscription).get("current_period_start")


def subscription_period_end(subscription: Dict[str, Any], now: Optional[int] = None) -> Optional[int]:
    """Current period end from the subscription, its first item, or billing_cycle_anchor + interval."""
    explicit = subscription.get("current_period_end") or _first_item(subscription).get("current_period_end")
    if explicit:
        return explicit

    anchor = subscription.get("billing_cycle_anchor")
    if not anchor:
        return None
    recurring = (_first_item(subscription).get("price") or {}).get("recurring") or {}
    interval = recurring.get("interval") or "month"
    count = recurring.get("interval_count") or 1
    now = now or int(datetime.now(timezone.utc).timestamp())
    # Always step from the anchor so month-end anchors do not drift.
    cycles = 1
    period_end = _add_interval(anchor, interval, count)
    while period_end <= now:
        cycles += 1
        period_end = _add_interval(anchor, interval, count * cycles)
    return period_end


def build_downgrade_phases(
    current_price_id: str,
    target_price_id: str,
    phase_start: int,
    period_end: int,
) -> List[Dict[str, Any]]:
    """Phase 1 keeps the current price until period end, phase 2 switches to the target."""
    return [
        {
            "items": [{"price": current_price_id, "quantity": 1}],
            "start_date": phase_start,
            "end_date": period_end,
            "proration_behavior": "none",
        },
        {
            "items": [{"price": target_price_id, "quantity": 1}],
            "start_date": period_end,
            "proration_behavior": "none",
        },
    ]


def period_fields(subscription: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "current_period_start": timestamp_to_iso(subscription_period_start(subscription)),
        "current_period_end": timestamp_to_iso(subscription_period_end(subscription)),
    }


def proration_amount(invoice: Dict[str, Any]) -> int:
    """Sum of proration lines of a preview invoice (falls back to amount_due)."""
    lines = (invoice.get("lines") or {}).get("data") or []
    proration_lines = [
        line for line in lines
        if line.get("proration")
        or ((line.get("parent") or {}).get("subscription_item_details") or {}).get("proration")
        or "Unused time on" in (line.get("description") or "")
        or "Remaining time on" in (line.get("description") or "")
    ]
    if not proration_lines:
        return int(invoice.get("amount_due") or 0)
    return sum(int(line.get("amount") or 0) for line in proration_lines)


def _plan_summary(plan: Optional[Plan]) -> Optional[Dict[str, Any]]:
    if plan is None:
        return None
    return {
        "key": plan.key,
        "name": plan.display_name,
        "price_id": plan.price_id,
        "credits_per_cycle": plan.credits_per_cycle,
    }


# ============================================================================
# Service
# ============================================================================

class SubscriptionChangeService:
    """Plan change state machine for live subscriptions."""

    def __init__(
        self,
        resolver: PriceResolver = price_resolver,
        client: StripeClient = stripe_client,
        credits: CreditService = credit_service,
    ):
        self.resolver = resolver
        self.stripe = client
        self.credits = credits

    # =========================================================================
    # Per-subscription lease
    # =========================================================================

    @asynccontextmanager
    async def subscription_lock(self, subscription_id: str):
        """Exclusive lease on a subscription; raises ConflictError if already held."""
        db = database.get_db()
        lock_id = f"subscription:{subscription_id}"
        owner = uuid.uuid4().hex
        now = datetime.now(timezone.utc)
        lease = {"lock_id": lock_id, "owner": owner, "acquired_at": now, "expires_at": now + timedelta(seconds=lease_ttl_seconds(self.stripe))}

        try:
            await db.billing_locks.insert_one(dict(lease))
        except DuplicateKeyError:
            stale = await db.billing_locks.delete_one({"lock_id": lock_id, "expires_at": {"$lt": now}})
            if stale.deleted_count == 0:
                logger.warning("SUBSCRIPTION_CHANGE_CONFLICT subscription_id=%s", subscription_id)
                raise ConflictError(
                    "Another change to this subscription is already in progress. Please retry shortly.",
                    details={"subscription_id": subscription_id},
                )
            try:
                await db.billing_locks.insert_one(dict(lease))
            except DuplicateKeyError:
                raise ConflictError(
                    "Another change to this subscription is already in progress. Please retry shortly.",
                    details={"subscription_id": subscription_id},
                )
        try:
            yield
        finally:
            await db.billing_locks.delete_one({"lock_id": lock_id, "owner": owner})

    # =========================================================================
    # Lookups
    # =========================================================================

    def _target_plan(self, target_price_id: Optional[str]) -> Plan:
        if not target_price_id or not target_price_id.strip():
            raise ValidationError("Target price ID is required")
        record = self.resolver.assert_known(target_price_id)
        if not isinstance(record, Plan):
            raise ValidationError(
                "Target price is a credit pack, not a subscription plan",
                code="INVALID_PRICE_ID",
                details={"price_id": target_price_id},
            )
        return record

    async def _get_profile(self, account_id: str) -> Dict[str, Any]:
        db = database.get_db()
        profile = await db.profiles.find_one({"account_id": account_id}, {"_id": 0})
        if not profile:
            raise NotFoundError(f"Account {account_id} not found", code="ACCOUNT_NOT_FOUND")
        return profile

    async def _get_billing_context(self, account_id: str):
        profile = await self._get_profile(account_id)
        if not profile.get("stripe_customer_id"):
            raise NotFoundError(
                "No billing customer found for this account",
                code="STRIPE_CUSTOMER_NOT_FOUND",
            )
        db = database.get_db()
        subscription = await db.subscriptions.find_one(
            {"account_id": account_id, "status": {"$in": list(LIVE_SUBSCRIPTION_STATUSES)}},
            {"_id": 0},
        )
        if not subscription:
            raise NotFoundError("No active subscription found", code="NO_ACTIVE_SUBSCRIPTION")
        return profile, subscription

    async def _current_plan(self, account_id: str, live_price_id: Optional[str]) -> Plan:
        # Fresh read: the drift correction may just have rewritten the tier.
        profile = await self._get_profile(account_id)
        plan = self.resolver.get_plan(profile.get("subscription_tier")) or self.resolver.resolve_plan(live_price_id)
        if plan is None:
            raise NotFoundError(
                "Current plan could not be determined; run subscription reconciliation",
                code="CURRENT_PLAN_UNKNOWN",
                details={"subscription_tier": profile.get("subscription_tier"), "price_id": live_price_id},
            )
        return plan

    async def _correct_price_drift(
        self, account_id: str, local: Dict[str, Any], live: Dict[str, Any]
    ) -> Optional[str]:
        """Overwrite the local price (and tier) with what Stripe reports. Returns the live price id."""
        live_price_id = subscription_price_id(live)
        if not live_price_id or live_price_id == local.get("price_id"):
            return live_price_id

        db = database.get_db()
        update: Dict[str, Any] = {"price_id": live_price_id, "updated_at": utc_now_iso()}
        if local.get("scheduled_price_id") == live_price_id:
            # The scheduled phase already switched the price.
            update.update({"scheduled_price_id": None, "scheduled_change_date": None})
        await db.subscriptions.update_one({"subscription_id": local["subscription_id"]}, {"$set": update})

        live_plan = self.resolver.resolve_plan(live_price_id)
        if live_plan:
            await db.profiles.update_one(
                {"account_id": account_id},
                {"$set": {"subscription_tier": live_plan.key, "updated_at": utc_now_iso()}},
            )

        logger.warning(
            "PRICE_DRIFT_CORRECTED subscription_id=%s local_price_id=%s stripe_price_id=%s",
            local["subscription_id"], local.get("price_id"), live_price_id,
        )
        await create_audit_log(
            action=AuditAction.PRICE_DRIFT_CORRECTED,
            actor_id="SYSTEM",
            account_id=account_id,
            resource_type="subscription",
            resource_id=local["subscription_id"],
            before_state={"price_id": local.get("price_id")},
            after_state={"price_id": live_price_id},
        )
        return live_price_id

    async def _release_schedule(self, schedule_id: str, subscription_id: str) -> None:
        await self.stripe.release_schedule(schedule_id)
        logger.info("SUBSCRIPTION_SCHEDULE_RELEASED schedule_id=%s subscription_id=%s", schedule_id, subscription_id)

    async def _clear_scheduled_change(self, subscription_id: str, released_schedule_id: str) -> None:
        """Local scheduled fields after a released schedule, when the rest of the change failed."""
        db = database.get_db()
        await db.subscriptions.update_one(
            {"subscription_id": subscription_id},
            {"$set": {"scheduled_price_id": None, "scheduled_change_date": None, "updated_at": utc_now_iso()}},
        )
        logger.warning(
            "SCHEDULED_CHANGE_CLEARED_AFTER_FAILURE subscription_id=%s released_schedule_id=%s",
            subscription_id, released_schedule_id,
        )

    # =========================================================================
    # Change
    # =========================================================================

    async def change_subscription(self, account_id: str, target_price_id: str) -> Dict[str, Any]:
        """Upgrade immediately or schedule a downgrade to target_price_id."""
        target = self._target_plan(target_price_id)
        _, local = await self._get_billing_context(account_id)
        subscription_id = local["subscription_id"]

        async with self.subscription_lock(subscription_id):
            live = await self.stripe.retrieve_subscription(subscription_id)
            live_price_id = await self._correct_price_drift(account_id, local, live)

            if target.price_id == live_price_id:
                raise ValidationError("You are already on this plan", code="SAME_PLAN")

            current = await self._current_plan(account_id, live_price_id)
            direction = detect_change_direction(current, target)
            logger.info(
                "SUBSCRIPTION_CHANGE_REQUESTED account_id=%s subscription_id=%s from=%s to=%s direction=%s",
                account_id, subscription_id, current.key, target.key, direction.value,
            )

            if direction == ChangeDirection.UNCHANGED:
                return {
                    "status": "unchanged",
                    "direction": direction.value,
                    "subscription_id": subscription_id,
                    "current_plan": _plan_summary(current),
                    "new_plan": _plan_summary(target),
                }
            if direction == ChangeDirection.UPGRADE:
                return await self._apply_upgrade(account_id, local, live, current, target)
            return await self._schedule_downgrade(account_id, local, live, live_price_id, current, target)

    async def _apply_upgrade(
        self,
        account_id: str,
        local: Dict[str, Any],
        live: Dict[str, Any],
        current: Plan,
        target: Plan,
    ) -> Dict[str, Any]:
        subscription_id = local["subscription_id"]
        item_id = subscription_item_id(live)
        if not item_id:
            raise InternalError("Subscription has no items", code="INVALID_SUBSCRIPTION_STATE")

        schedule_id = subscription_schedule_id(live)
        if schedule_id:
            await self._release_schedule(schedule_id, subscription_id)

        try:
            updated = await self.stripe.modify_subscription(
                subscription_id,
                items=[{"id": item_id, "price": target.price_id}],
                proration_behavior=UPGRADE_PRORATION_BEHAVIOR,
                payment_behavior=UPGRADE_PAYMENT_BEHAVIOR,
            )
        except ProviderError:
            if schedule_id:
                # The pending downgrade is gone on Stripe's side either way.
                await self._clear_scheduled_change(subscription_id, schedule_id)
            raise

        db = database.get_db()
        subscription_update = {
            "price_id": target.price_id,
            "status": updated.get("status") or local.get("status"),
            "scheduled_price_id": None,
            "scheduled_change_date": None,
            "updated_at": utc_now_iso(),
        }
        subscription_update.update({k: v for k, v in period_fields(updated).items() if v})
        await db.subscriptions.update_one({"subscription_id": subscription_id}, {"$set": subscription_update})
        await db.profiles.update_one(
            {"account_id": account_id},
            {"$set": {"subscription_tier": target.key, "updated_at": utc_now_iso()}},
        )

        difference = target.credits_per_cycle - current.credits_per_cycle
        latest_invoice = updated.get("latest_invoice")
        if isinstance(latest_invoice, dict):
            latest_invoice = latest_invoice.get("id")
        grant = await self.credits.grant_capped(
            account_id,
            difference,
            cap=target.max_rollover,
            transaction_type=CreditTransactionType.SUBSCRIPTION,
            description=f"Plan upgrade from {current.display_name} to {target.display_name} - {difference} credits",
            reference_id=f"upgrade:{latest_invoice}" if latest_invoice else None,
        )

        logger.info(
            "SUBSCRIPTION_UPGRADED subscription_id=%s account_id=%s from=%s to=%s credits_added=%s",
            subscription_id, account_id, current.key, target.key, grant["credits_added"],
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_UPGRADED,
            actor_id=account_id,
            account_id=account_id,
            resource_type="subscription",
            resource_id=subscription_id,
            before_state={"price_id": current.price_id, "subscription_tier": current.key,
                          "scheduled_price_id": local.get("scheduled_price_id")},
            after_state={"price_id": target.price_id, "subscription_tier": target.key,
                         "scheduled_price_id": None},
            metadata={"credits_added": grant["credits_added"], "latest_invoice": latest_invoice},
        )
        return {
            "status": "upgraded",
            "direction": ChangeDirection.UPGRADE.value,
            "subscription_id": subscription_id,
            "current_plan": _plan_summary(current),
            "new_plan": _plan_summary(target),
            "effective_immediately": True,
            "credits_added": grant["credits_added"],
        }

    async def _schedule_downgrade(
        self,
        account_id: str,
        local: Dict[str, Any],
        live: Dict[str, Any],
        live_price_id: str,
        current: Plan,
        target: Plan,
    ) -> Dict[str, Any]:
        subscription_id = local["subscription_id"]
        period_end = subscription_period_end(live)
        if not period_end:
            raise InternalError(
                "Could not determine the current billing period end",
                code="INVALID_SUBSCRIPTION_STATE",
            )

        existing_schedule_id = subscription_schedule_id(live)
        if existing_schedule_id:
            await self._release_schedule(existing_schedule_id, subscription_id)

        try:
            schedule = await self._create_downgrade_schedule(subscription_id, live, live_price_id, target, period_end)
        except ProviderError:
            if existing_schedule_id:
                await self._clear_scheduled_change(subscription_id, existing_schedule_id)
            raise

        effective_date = timestamp_to_iso(period_end)
        db = database.get_db()
        await db.subscriptions.update_one(
            {"subscription_id": subscription_id},
            {"$set": {
                "scheduled_price_id": target.price_id,
                "scheduled_change_date": effective_date,
                "updated_at": utc_now_iso(),
            }},
        )

        logger.info(
            "SUBSCRIPTION_DOWNGRADE_SCHEDULED subscription_id=%s schedule_id=%s from=%s to=%s effective=%s",
            subscription_id, schedule["id"], current.key, target.key, effective_date,
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_DOWNGRADE_SCHEDULED,
            actor_id=account_id,
            account_id=account_id,
            resource_type="subscription",
            resource_id=subscription_id,
            before_state={"scheduled_price_id": local.get("scheduled_price_id")},
            after_state={"scheduled_price_id": target.price_id, "scheduled_change_date": effective_date},
            metadata={"schedule_id": schedule["id"], "released_schedule_id": existing_schedule_id},
        )
        return {
            "status": "scheduled",
            "direction": ChangeDirection.DOWNGRADE.value,
            "subscription_id": subscription_id,
            "schedule_id": schedule["id"],
            "current_plan": _plan_summary(current),
            "new_plan": _plan_summary(target),
            "effective_immediately": False,
            "effective_date": effective_date,
        }

    async def _create_downgrade_schedule(
        self,
        subscription_id: str,
        live: Dict[str, Any],
        live_price_id: str,
        target: Plan,
        period_end: int,
    ) -> Dict[str, Any]:
        schedule = await self.stripe.create_schedule_from_subscription(subscription_id)
        phases = schedule.get("phases") or []
        phase_start = (phases[0].get("start_date") if phases else None) or subscription_period_start(live)

        try:
            await self.stripe.modify_schedule(
                schedule["id"],
                end_behavior="release",
                phases=build_downgrade_phases(live_price_id, target.price_id, phase_start, period_end),
            )
        except ProviderError:
            logger.error(
                "SUBSCRIPTION_SCHEDULE_UPDATE_FAILED schedule_id=%s subscription_id=%s - releasing",
                schedule["id"], subscription_id,
            )
            try:
                await self.stripe.release_schedule(schedule["id"])
            except ProviderError as release_err:
                logger.error(f"Failed to release schedule {schedule['id']} after error: {release_err.message}")
            raise
        return schedule

    # =========================================================================
    # Preview
    # =========================================================================

    async def preview_change(self, account_id: str, target_price_id: str) -> Dict[str, Any]:
        """Direction, effective date and (for upgrades) the prorated charge. Writes nothing."""
        target = self._target_plan(target_price_id)
        profile, local = await self._get_billing_context(account_id)

        live = await self.stripe.retrieve_subscription(local["subscription_id"])
        live_price_id = subscription_price_id(live) or local.get("price_id")
        if target.price_id == live_price_id:
            raise ValidationError("You are already on this plan", code="SAME_PLAN")

        current = None
        if live_price_id != local.get("price_id"):
            # Local row lags Stripe; the live price decides.
            current = self.resolver.resolve_plan(live_price_id)
        current = current or await self._current_plan(account_id, live_price_id)
        direction = detect_change_direction(current, target)

        period_start = subscription_period_start(live)
        period_end = subscription_period_end(live)
        proration = {
            "amount_due": 0,
            "currency": CURRENCY,
            "period_start": timestamp_to_iso(period_start),
            "period_end": timestamp_to_iso(period_end),
        }

        if direction == ChangeDirection.UPGRADE:
            item_id = subscription_item_id(live)
            if not item_id:
                raise InternalError("Subscription has no items", code="INVALID_SUBSCRIPTION_STATE")
            invoice = await self.stripe.preview_invoice(
                customer=profile["stripe_customer_id"],
                subscription=local["subscription_id"],
                subscription_details={
                    "items": [{"id": item_id, "price": target.price_id}],
                    "proration_behavior": "create_prorations",
                },
            )
            proration = {
                "amount_due": proration_amount(invoice),
                "currency": invoice.get("currency") or CURRENCY,
                "period_start": timestamp_to_iso(invoice.get("period_start")),
                "period_end": timestamp_to_iso(invoice.get("period_end")),
            }

        return {
            "direction": direction.value,
            "proration": proration,
            "current_plan": _plan_summary(current),
            "new_plan": _plan_summary(target),
            "effective_immediately": direction == ChangeDirection.UPGRADE,
            "effective_date": timestamp_to_iso(period_end) if direction == ChangeDirection.DOWNGRADE else None,
            "is_downgrade": direction == ChangeDirection.DOWNGRADE,
        }

    # =========================================================================
    # Scheduled change / cancellation
    # =========================================================================

    async def cancel_scheduled_change(self, account_id: str) -> Dict[str, Any]:
        """Release a pending downgrade schedule and clear the scheduled fields."""
        db = database.get_db()
        local = await db.subscriptions.find_one(
            {
                "account_id": account_id,
                "status": {"$in": list(LIVE_SUBSCRIPTION_STATUSES)},
                "scheduled_price_id": {"$ne": None},
            },
            {"_id": 0},
        )
        if not local:
            raise NotFoundError("No scheduled change to cancel", code="NO_SCHEDULED_CHANGE")
        subscription_id = local["subscription_id"]

        async with self.subscription_lock(subscription_id):
            live = await self.stripe.retrieve_subscription(subscription_id)
            schedule_id = subscription_schedule_id(live)
            if schedule_id:
                await self._release_schedule(schedule_id, subscription_id)

            await db.subscriptions.update_one(
                {"subscription_id": subscription_id},
                {"$set": {"scheduled_price_id": None, "scheduled_change_date": None, "updated_at": utc_now_iso()}},
            )

        logger.info(
            "SUBSCRIPTION_SCHEDULED_CHANGE_CANCELED subscription_id=%s scheduled_price_id=%s",
            subscription_id, local.get("scheduled_price_id"),
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_SCHEDULED_CHANGE_CANCELED,
            actor_id=account_id,
            account_id=account_id,
            resource_type="subscription",
            resource_id=subscription_id,
            before_state={"scheduled_price_id": local.get("scheduled_price_id"),
                          "scheduled_change_date": local.get("scheduled_change_date")},
            after_state={"scheduled_price_id": None, "scheduled_change_date": None},
            metadata={"schedule_id": schedule_id},
        )
        return {
            "status": "canceled",
            "subscription_id": subscription_id,
            "canceled_price_id": local.get("scheduled_price_id"),
        }

    async def cancel_subscription(self, account_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """Cancel at period end. Supersedes any pending downgrade."""
        _, local = await self._get_billing_context(account_id)
        subscription_id = local["subscription_id"]

        async with self.subscription_lock(subscription_id):
            live = await self.stripe.retrieve_subscription(subscription_id)
            schedule_id = subscription_schedule_id(live)
            if schedule_id:
                await self._release_schedule(schedule_id, subscription_id)

            params: Dict[str, Any] = {"cancel_at_period_end": True}
            if reason:
                params["cancellation_details"] = {"comment": reason[:500]}
            try:
                updated = await self.stripe.modify_subscription(subscription_id, **params)
            except ProviderError:
                if schedule_id:
                    await self._clear_scheduled_change(subscription_id, schedule_id)
                raise

            db = database.get_db()
            await db.subscriptions.update_one(
                {"subscription_id": subscription_id},
                {"$set": {
                    "cancel_at_period_end": bool(updated.get("cancel_at_period_end", True)),
                    "status": updated.get("status") or local.get("status"),
                    "scheduled_price_id": None,
                    "scheduled_change_date": None,
                    "updated_at": utc_now_iso(),
                }},
            )

        cancel_at = timestamp_to_iso(subscription_period_end(updated))
        logger.info("SUBSCRIPTION_CANCEL_REQUESTED subscription_id=%s cancel_at=%s", subscription_id, cancel_at)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCEL_REQUESTED,
            actor_id=account_id,
            account_id=account_id,
            resource_type="subscription",
            resource_id=subscription_id,
            metadata={"reason": reason, "cancel_at": cancel_at, "released_schedule_id": schedule_id},
        )
        return {"status": "cancel_scheduled", "subscription_id": subscription_id, "cancel_at": cancel_at}

    # =========================================================================
    # Read
    # =========================================================================

    async def get_subscription_status(self, account_id: str) -> Dict[str, Any]:
        """Local view of the account's billing state."""
        profile = await self._get_profile(account_id)
        db = database.get_db()
        cursor = db.subscriptions.find({"account_id": account_id}, {"_id": 0}).sort("updated_at", -1).limit(1)
        rows = await cursor.to_list(length=1)
        subscription = rows[0] if rows else None

        scheduled_plan = None
        if subscription and subscription.get("scheduled_price_id"):
            scheduled_plan = _plan_summary(self.resolver.resolve_plan(subscription["scheduled_price_id"]))

        return {
            "subscription_status": profile.get("subscription_status"),
            "subscription_tier": profile.get("subscription_tier"),
            "credits_balance": profile.get("credits_balance", 0),
            "plan": _plan_summary(self.resolver.get_plan(profile.get("subscription_tier"))),
            "subscription": subscription,
            "scheduled_plan": scheduled_plan,
        }


subscription_change_service = SubscriptionChangeService()

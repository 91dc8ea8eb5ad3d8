"""Stripe Webhook Service - idempotent application of Stripe events.

Key Principles:
1. Idempotency: every event id is applied at most once (stripe_events)
2. Signature verification: all events must be signed when a secret is configured
3. Provider wins: subscription state is read back from Stripe, never inferred
4. Ledger grants carry the invoice / payment id so replays are no-ops
5. A failed event is marked FAILED and answered with an error so Stripe redelivers it

Events Handled:
- checkout.session.completed / checkout.session.async_payment_succeeded
- customer.subscription.created / updated / deleted
- invoice.payment_succeeded / invoice.paid (subscription credit grants)
- invoice.payment_failed
- charge.refunded (credit pack clawback)
- charge.dispute.created / updated / closed (credit hold and account flag)

Failed events are retried by recover_failed_events (scheduled job), which
re-fetches each event from Stripe up to MAX_WEBHOOK_RETRIES times.
"""
import json
import math
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import stripe
from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction, CreditTransactionType, DisputeStatus, WebhookEventStatus, PriceType, utc_now_iso
from services.billing_errors import ProviderError
from services.credit_service import CreditService, credit_service
from services.plan_registry import PriceResolver, price_resolver
from services.stripe_client import StripeClient, stripe_client, is_not_found_error, to_plain
from services.subscription_change_service import subscription_price_id
from services.subscription_sync_service import SubscriptionSyncService, subscription_sync_service
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)

# Failed events are re-fetched and replayed at most this many times
MAX_WEBHOOK_RETRIES = 3

# Dispute holds value a credit at ten cents
DISPUTE_CENTS_PER_CREDIT = 10
OPEN_DISPUTE_ROW_STATUSES = ("created", "updated")


def _get_webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription id from an invoice (classic field or parent.subscription_details)."""
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    if subscription:
        return subscription
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


class StripeWebhookService:
    """Stripe webhook handler with idempotency."""

    def __init__(
        self,
        resolver: PriceResolver = price_resolver,
        client: StripeClient = stripe_client,
        credits: CreditService = credit_service,
        sync: SubscriptionSyncService = subscription_sync_service,
    ):
        self.resolver = resolver
        self.stripe = client
        self.credits = credits
        self.sync = sync

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify and decode a webhook payload. Raises ValueError / SignatureVerificationError."""
        webhook_secret = _get_webhook_secret()
        if webhook_secret:
            event = stripe.Webhook.construct_event(payload, signature, webhook_secret)
            return to_plain(event)
        logger.warning("STRIPE_WEBHOOK_SECRET not set - skipping signature verification")
        return json.loads(payload)

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details)
        """
        try:
            event = self.parse_event(payload, signature)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            return False, "Invalid signature", {"error": str(e)}
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", {"error": str(e)}

        return await self.process_event(event)

    async def process_event(self, event: Dict[str, Any]) -> Tuple[bool, str, Optional[Dict]]:
        event_id = event.get("id")
        event_type = event.get("type")
        logger.info("WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s", event_id, event_type, event.get("livemode"))

        db = database.get_db()
        existing = await db.stripe_events.find_one({"event_id": event_id}, {"_id": 0})
        if existing and existing.get("status") == WebhookEventStatus.PROCESSED.value:
            logger.info(f"Event {event_id} already processed - skipping")
            return True, "Already processed", {"event_id": event_id}

        event_record = {
            "event_id": event_id,
            "type": event_type,
            "status": WebhookEventStatus.PROCESSING.value,
            "received_at": datetime.now(timezone.utc),
            "processed_at": None,
            "error": None,
        }
        if existing:
            # Redelivery of a FAILED (or interrupted) event
            await db.stripe_events.update_one({"event_id": event_id}, {"$set": event_record})
        else:
            try:
                await db.stripe_events.insert_one({**event_record, "retry_count": 0})
            except DuplicateKeyError:
                logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                return True, "Already processed", {"event_id": event_id}

        try:
            result = await self._handle_event(event)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e), exc_info=True,
            )
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": {
                    "status": WebhookEventStatus.FAILED.value,
                    "processed_at": datetime.now(timezone.utc),
                    "error": str(e),
                }},
            )
            await create_audit_log(
                action=AuditAction.STRIPE_EVENT_FAILED,
                actor_id="SYSTEM",
                metadata={"event_id": event_id, "event_type": event_type, "error": str(e)},
            )
            return False, "Event processing failed", {"event_id": event_id, "error": str(e)}

        await db.stripe_events.update_one(
            {"event_id": event_id},
            {"$set": {
                "status": WebhookEventStatus.PROCESSED.value,
                "processed_at": datetime.now(timezone.utc),
                "account_id": result.get("account_id"),
                "subscription_id": result.get("subscription_id"),
            }},
        )
        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s account_id=%s",
            event_id, event_type, result.get("account_id"),
        )
        return True, "Processed", result

    async def _handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            return await self._handle_checkout_completed(obj)
        if event_type in SUBSCRIPTION_EVENTS:
            return await self._handle_subscription_event(event_type, obj)
        if event_type in ("invoice.payment_succeeded", "invoice.paid"):
            return await self._handle_invoice_paid(obj)
        if event_type == "invoice.payment_failed":
            return await self._handle_invoice_failed(obj)
        if event_type == "charge.refunded":
            return await self._handle_charge_refunded(obj)
        if event_type == "charge.dispute.created":
            return await self._handle_dispute_created(obj)
        if event_type in ("charge.dispute.updated", "charge.dispute.closed"):
            return await self._handle_dispute_changed(event_type, obj)

        logger.info(f"Unhandled event type: {event_type}")
        return {"ignored": True}

    # =========================================================================
    # Checkout
    # =========================================================================

    async def _handle_checkout_completed(self, session: Dict[str, Any]) -> Dict[str, Any]:
        metadata = session.get("metadata") or {}
        account_id = metadata.get("account_id") or session.get("client_reference_id")
        if not account_id:
            account_id = await self.sync.get_account_id_for_customer(session.get("customer"))
        if not account_id:
            raise ValueError(f"Checkout session {session.get('id')} has no account_id")

        if metadata.get("type") == PriceType.PACK.value:
            if session.get("payment_status") != "paid":
                logger.info(
                    "CHECKOUT_PACK_AWAITING_PAYMENT session_id=%s payment_status=%s",
                    session.get("id"), session.get("payment_status"),
                )
                return {"account_id": account_id, "awaiting_payment": True}

            pack = self.resolver.get_pack(metadata.get("pack_key"))
            if pack is None:
                raise ValueError(f"Unknown credit pack '{metadata.get('pack_key')}' on session {session.get('id')}")
            reference_id = session.get("payment_intent") or session.get("id")
            balance = await self.credits.credit(
                account_id,
                pack.credits,
                CreditTransactionType.PURCHASE,
                f"Credit pack purchase - {pack.display_name} ({pack.credits} credits)",
                reference_id=reference_id,
            )
            return {"account_id": account_id, "credits": pack.credits, "balance": balance}

        subscription_id = session.get("subscription")
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")
        if not subscription_id:
            raise ValueError(f"Subscription checkout {session.get('id')} has no subscription")

        subscription = await self.stripe.retrieve_subscription(subscription_id)
        synced = await self.sync.sync_subscription(subscription, account_id=account_id)
        return {"account_id": account_id, "subscription_id": subscription_id, "mutations": len(synced["mutations"])}

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def _handle_subscription_event(self, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if event_type == "customer.subscription.deleted":
            # Terminal: the payload is the final state.
            subscription = payload
        else:
            # Events arrive out of order; apply the current object, not the event snapshot.
            try:
                subscription = await self.stripe.retrieve_subscription(payload["id"])
            except ProviderError as e:
                if not is_not_found_error(e):
                    raise
                logger.warning(
                    "SUBSCRIPTION_EVENT_OBJECT_GONE subscription_id=%s event_type=%s",
                    payload.get("id"), event_type,
                )
                return {"ignored": True, "reason": "subscription no longer exists"}

        synced = await self.sync.sync_subscription(subscription)
        return {"account_id": synced["account_id"], "subscription_id": synced["subscription_id"]}

    # =========================================================================
    # Invoices
    # =========================================================================

    async def _handle_invoice_paid(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return {"ignored": True, "reason": "not a subscription invoice"}

        subscription = await self.stripe.retrieve_subscription(subscription_id)
        synced = await self.sync.sync_subscription(subscription)
        account_id = synced["account_id"]

        plan = self.resolver.resolve_plan(subscription_price_id(subscription))
        if plan is None:
            logger.warning(
                "INVOICE_PAID_UNKNOWN_PLAN invoice_id=%s subscription_id=%s price_id=%s - no credits granted",
                invoice.get("id"), subscription_id, synced["price_id"],
            )
            return {"account_id": account_id, "subscription_id": subscription_id, "credits_added": 0}

        billing_reason = invoice.get("billing_reason")
        reference_id = invoice.get("id")
        credits_added = 0

        if billing_reason == "subscription_create":
            if subscription.get("status") == "trialing" and plan.trial_enabled:
                amount = plan.trial.trial_credits
                description = f"Trial started - {plan.display_name} ({amount} credits)"
            else:
                amount = plan.credits_per_cycle
                description = f"Subscription started - {plan.display_name} ({amount} credits)"
            if amount > 0:
                grant = await self.credits.grant_capped(
                    account_id,
                    amount,
                    cap=plan.max_rollover,
                    transaction_type=CreditTransactionType.SUBSCRIPTION,
                    description=description,
                    reference_id=reference_id,
                )
                credits_added = grant["credits_added"]
        elif billing_reason == "subscription_cycle":
            rollover = await self.credits.apply_cycle_rollover(account_id, plan, reference_id=reference_id)
            credits_added = rollover["credits_added"]
        else:
            logger.info(
                "INVOICE_PAID_NO_GRANT invoice_id=%s billing_reason=%s",
                invoice.get("id"), billing_reason,
            )

        return {"account_id": account_id, "subscription_id": subscription_id, "credits_added": credits_added}

    async def _handle_invoice_failed(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return {"ignored": True, "reason": "not a subscription invoice"}

        subscription = await self.stripe.retrieve_subscription(subscription_id)
        synced = await self.sync.sync_subscription(subscription)
        logger.warning(
            "INVOICE_PAYMENT_FAILED invoice_id=%s subscription_id=%s stripe_status=%s attempt=%s",
            invoice.get("id"), subscription_id, synced["status"], invoice.get("attempt_count"),
        )
        return {"account_id": synced["account_id"], "subscription_id": subscription_id}

    # =========================================================================
    # Refunds
    # =========================================================================

    async def _handle_charge_refunded(self, charge: Dict[str, Any]) -> Dict[str, Any]:
        payment_intent = charge.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        if not payment_intent:
            return {"ignored": True, "reason": "no payment_intent"}

        db = database.get_db()
        purchase = await db.credit_transactions.find_one(
            {"type": CreditTransactionType.PURCHASE.value, "reference_id": payment_intent},
            {"_id": 0},
        )
        if not purchase:
            return {"ignored": True, "reason": "not a credit pack payment"}

        if not charge.get("refunded"):
            logger.warning(
                "PARTIAL_REFUND_NOT_CLAWED_BACK charge_id=%s amount_refunded=%s amount=%s",
                charge.get("id"), charge.get("amount_refunded"), charge.get("amount"),
            )
            return {"account_id": purchase["account_id"], "clawed_back": 0}

        result = await self.credits.clawback(
            purchase["account_id"],
            purchase["amount"],
            f"refunded payment {payment_intent}",
            reference_id=f"refund:{charge.get('id')}",
        )
        return {"account_id": purchase["account_id"], "clawed_back": -result["credits_added"]}

    # =========================================================================
    # Disputes
    # =========================================================================

    async def _held_credits(self, account_id: str, dispute_id: str) -> int:
        """Credits actually removed by the dispute hold, read from the ledger."""
        db = database.get_db()
        row = await db.credit_transactions.find_one(
            {
                "account_id": account_id,
                "type": CreditTransactionType.REFUND.value,
                "reference_id": f"dispute:{dispute_id}",
            },
            {"_id": 0, "amount": 1},
        )
        return -int(row["amount"]) if row else 0

    async def _handle_dispute_created(self, dispute: Dict[str, Any]) -> Dict[str, Any]:
        """Flag the account and hold credits worth the disputed amount."""
        dispute_id = dispute.get("id")
        charge_id = dispute.get("charge")
        if isinstance(charge_id, dict):
            charge_id = charge_id.get("id")
        if not charge_id:
            raise ValueError(f"Dispute {dispute_id} has no charge")

        charge = await self.stripe.retrieve_charge(charge_id)
        customer_id = charge.get("customer")
        if isinstance(customer_id, dict):
            customer_id = customer_id.get("id")
        if not customer_id:
            raise ValueError(f"Charge {charge_id} has no customer")

        account_id = await self.sync.get_account_id_for_customer(customer_id)
        if not account_id:
            raise ValueError(f"No account found for customer {customer_id} (dispute {dispute_id})")

        db = database.get_db()
        await db.profiles.update_one(
            {"account_id": account_id},
            {"$set": {"dispute_status": DisputeStatus.PENDING.value, "updated_at": utc_now_iso()}},
        )

        amount_cents = int(dispute.get("amount") or 0)
        credits_requested = math.ceil(amount_cents / DISPUTE_CENTS_PER_CREDIT)
        if credits_requested > 0:
            await self.credits.clawback(
                account_id,
                credits_requested,
                f"dispute hold {dispute_id}",
                reference_id=f"dispute:{dispute_id}",
            )
        credits_held = await self._held_credits(account_id, dispute_id)

        await db.dispute_events.update_one(
            {"dispute_id": dispute_id},
            {
                "$set": {
                    "account_id": account_id,
                    "charge_id": charge_id,
                    "amount_cents": amount_cents,
                    "credits_requested": credits_requested,
                    "credits_held": credits_held,
                    "status": "created",
                    "reason": dispute.get("reason"),
                    "updated_at": utc_now_iso(),
                },
                "$setOnInsert": {"created_at": utc_now_iso()},
            },
            upsert=True,
        )

        logger.warning(
            "DISPUTE_ALERT account_id=%s dispute_id=%s charge_id=%s amount_cents=%s reason=%s credits_held=%s",
            account_id, dispute_id, charge_id, amount_cents, dispute.get("reason"), credits_held,
        )
        await create_audit_log(
            action=AuditAction.DISPUTE_OPENED,
            actor_id="SYSTEM",
            account_id=account_id,
            resource_type="dispute",
            resource_id=dispute_id,
            metadata={
                "charge_id": charge_id,
                "amount_cents": amount_cents,
                "credits_requested": credits_requested,
                "credits_held": credits_held,
                "reason": dispute.get("reason"),
            },
        )
        return {"account_id": account_id, "dispute_id": dispute_id, "credits_held": credits_held}

    async def _handle_dispute_changed(self, event_type: str, dispute: Dict[str, Any]) -> Dict[str, Any]:
        """Track dispute status; a won dispute releases the hold, a lost one keeps it."""
        dispute_id = dispute.get("id")
        outcome = dispute.get("status")
        db = database.get_db()
        row = await db.dispute_events.find_one({"dispute_id": dispute_id}, {"_id": 0})
        if not row:
            # charge.dispute.created has not been applied yet; fail so it is retried.
            raise ValueError(f"Dispute {dispute_id} has not been recorded")
        account_id = row["account_id"]

        if event_type == "charge.dispute.closed":
            row_status = "closed"
        else:
            row_status = "won" if outcome == "won" else "updated"
        await db.dispute_events.update_one(
            {"dispute_id": dispute_id},
            {"$set": {"status": row_status, "outcome": outcome, "updated_at": utc_now_iso()}},
        )
        logger.info("DISPUTE_UPDATED dispute_id=%s status=%s outcome=%s", dispute_id, row_status, outcome)

        if outcome not in ("won", "lost"):
            return {"account_id": account_id, "dispute_id": dispute_id, "status": row_status}

        released = 0
        if outcome == "won":
            held = await self._held_credits(account_id, dispute_id)
            if held > 0:
                await self.credits.credit(
                    account_id,
                    held,
                    CreditTransactionType.REFUND,
                    f"Dispute won: hold released ({dispute_id})",
                    reference_id=f"dispute_release:{dispute_id}",
                )
                released = held

        other_open = await db.dispute_events.count_documents({
            "account_id": account_id,
            "dispute_id": {"$ne": dispute_id},
            "status": {"$in": list(OPEN_DISPUTE_ROW_STATUSES)},
        })
        if other_open:
            account_status = DisputeStatus.PENDING
        else:
            account_status = DisputeStatus.RESOLVED if outcome == "won" else DisputeStatus.LOST
        await db.profiles.update_one(
            {"account_id": account_id},
            {"$set": {"dispute_status": account_status.value, "updated_at": utc_now_iso()}},
        )

        await create_audit_log(
            action=AuditAction.DISPUTE_RESOLVED,
            actor_id="SYSTEM",
            account_id=account_id,
            resource_type="dispute",
            resource_id=dispute_id,
            metadata={"outcome": outcome, "credits_released": released, "dispute_status": account_status.value},
        )
        return {
            "account_id": account_id,
            "dispute_id": dispute_id,
            "status": row_status,
            "credits_released": released,
        }

    # =========================================================================
    # Recovery of failed events
    # =========================================================================

    async def _mark_unrecoverable(self, event_id: str, reason: str) -> None:
        db = database.get_db()
        await db.stripe_events.update_one(
            {"event_id": event_id},
            {"$set": {
                "status": WebhookEventStatus.UNRECOVERABLE.value,
                "processed_at": datetime.now(timezone.utc),
                "error": reason,
            }},
        )
        logger.error("WEBHOOK_UNRECOVERABLE event_id=%s reason=%s", event_id, reason)

    async def recover_failed_events(self, limit: int = 50) -> Dict[str, int]:
        """Re-fetch FAILED events from Stripe and replay them, oldest first."""
        db = database.get_db()
        cursor = db.stripe_events.find(
            {"status": WebhookEventStatus.FAILED.value, "retry_count": {"$lt": MAX_WEBHOOK_RETRIES}},
            {"_id": 0},
        ).sort("received_at", 1).limit(limit)
        failed = await cursor.to_list(length=limit)

        summary = {"processed": 0, "recovered": 0, "unrecoverable": 0, "failed": 0}
        for record in failed:
            event_id = record["event_id"]
            summary["processed"] += 1
            try:
                event = await self.stripe.retrieve_event(event_id)
            except ProviderError as e:
                if is_not_found_error(e):
                    await self._mark_unrecoverable(event_id, f"Event no longer available from Stripe: {e.message}")
                    summary["unrecoverable"] += 1
                    continue
                event = None
                logger.warning("WEBHOOK_RECOVERY_FETCH_FAILED event_id=%s error=%s", event_id, e.message)

            if event is not None:
                success, _, _ = await self.process_event(event)
                if success:
                    summary["recovered"] += 1
                    logger.info("WEBHOOK_RECOVERED event_id=%s", event_id)
                    continue

            retry_count = int(record.get("retry_count") or 0) + 1
            if retry_count >= MAX_WEBHOOK_RETRIES:
                await self._mark_unrecoverable(event_id, f"Failed after {retry_count} recovery attempts")
                summary["unrecoverable"] += 1
            else:
                await db.stripe_events.update_one({"event_id": event_id}, {"$set": {"retry_count": retry_count}})
                summary["failed"] += 1

        logger.info(
            "WEBHOOK_RECOVERY_COMPLETE processed=%s recovered=%s unrecoverable=%s failed=%s",
            summary["processed"], summary["recovered"], summary["unrecoverable"], summary["failed"],
        )
        return summary


stripe_webhook_service = StripeWebhookService()

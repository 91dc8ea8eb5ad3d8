"""Checkout Service - Stripe checkout sessions for plans and credit packs.

This service handles:
- Price validation (syntax, then registry) before any Stripe call
- One live subscription per account
- Get-or-create of the Stripe customer, persisted once
- Billing mode check (recurring vs one_time) against Stripe
- Hosted and embedded checkout sessions
- Trial eligibility (one trial per account unless the plan allows more)
- Customer billing portal sessions

Key Principles:
- Uses plan_registry as single source of truth for pricing
- Metadata always carries account_id and the resolved type/key so webhooks
  and reconciliation can correlate the session
- Stripe failures surface as InternalError with the provider message attached
"""
import os
import logging
from typing import Any, Dict, Optional, Union

from pymongo import ReturnDocument

from database import database
from models import (
    Plan,
    CreditPack,
    Profile,
    UiMode,
    AuditAction,
    LIVE_SUBSCRIPTION_STATUSES,
    utc_now_iso,
)
from services.billing_errors import (
    ValidationError,
    InvalidPriceError,
    NotFoundError,
    UnknownPriceError,
    AlreadySubscribedError,
    ProviderError,
    ProviderTimeoutError,
    InternalError,
)
from services.plan_registry import PriceResolver, price_resolver, is_plausible_price_id
from services.stripe_client import StripeClient, stripe_client
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

ALREADY_SUBSCRIBED_MESSAGE = (
    "You already have an active subscription. Please manage your subscription "
    "through the billing portal to upgrade or downgrade."
)

# Metadata keys callers cannot override
RESERVED_METADATA_KEYS = frozenset({
    "account_id", "type", "plan_key", "credits_per_cycle", "max_rollover", "pack_key", "credits",
})


def _frontend_url() -> str:
    return (os.environ.get("FRONTEND_URL") or "http://localhost:3000").rstrip("/")


class CheckoutService:
    """Creates Stripe checkout sessions for subscriptions and credit packs."""

    def __init__(self, resolver: PriceResolver = price_resolver, client: StripeClient = stripe_client):
        self.resolver = resolver
        self.stripe = client

    async def create_checkout_session(
        self,
        account_id: str,
        price_id: str,
        ui_mode: UiMode = UiMode.HOSTED,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        return_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a checkout session for a plan or credit pack.

        Args:
            account_id: Authenticated account (MANDATORY for webhook correlation)
            price_id: Stripe price id of a configured plan or pack
            ui_mode: hosted (redirect URL) or embedded (client secret)
            success_url / cancel_url: hosted mode redirects, defaults under FRONTEND_URL
            return_url: embedded mode return page
            metadata: extra session metadata
            email: prefill for a newly created Stripe customer

        Returns:
            Dict with url, session_id, client_secret, type and key
        """
        record = self._validate_price(price_id)
        ui_mode = UiMode(ui_mode)

        trial_eligible = True
        if isinstance(record, Plan):
            await self._ensure_not_subscribed(account_id)
            trial_eligible = await self._trial_eligible(account_id, record)

        try:
            customer_id = await self.get_or_create_customer(account_id, email=email)
            await self._check_billing_mode(record)

            params = self._build_session_params(
                record, account_id, customer_id, ui_mode,
                success_url=success_url,
                cancel_url=cancel_url,
                return_url=return_url,
                metadata=metadata,
                trial_eligible=trial_eligible,
            )
            session = await self.stripe.create_checkout_session(**params)
        except (InvalidPriceError, ProviderTimeoutError):
            raise
        except ProviderError as e:
            logger.error(f"Stripe checkout error for account {account_id}: {e.message}")
            raise InternalError(
                f"Failed to create checkout session: {e.message}",
                details=e.details,
            )

        logger.info(
            "CHECKOUT_SESSION_CREATED account_id=%s session_id=%s type=%s key=%s ui_mode=%s",
            account_id, session.get("id"), record.type, record.key, ui_mode.value,
        )
        await create_audit_log(
            action=AuditAction.CHECKOUT_SESSION_CREATED,
            actor_id=account_id,
            account_id=account_id,
            resource_type="checkout_session",
            resource_id=session.get("id"),
            metadata={"price_id": price_id, "type": record.type, "key": record.key, "ui_mode": ui_mode.value},
        )
        return {
            "url": session.get("url"),
            "session_id": session.get("id"),
            "client_secret": session.get("client_secret"),
            "type": record.type,
            "key": record.key,
        }

    # =========================================================================
    # Validation
    # =========================================================================

    def _validate_price(self, price_id: Optional[str]) -> Union[Plan, CreditPack]:
        if not price_id or not price_id.strip():
            raise ValidationError("Price ID is required")
        if not is_plausible_price_id(price_id):
            raise InvalidPriceError(
                f"Invalid price ID format: {price_id}",
                details={"price_id": price_id},
            )
        try:
            return self.resolver.assert_known(price_id)
        except UnknownPriceError as e:
            raise InvalidPriceError(e.message, details={"price_id": price_id})

    async def _ensure_not_subscribed(self, account_id: str) -> None:
        db = database.get_db()
        existing = await db.subscriptions.find_one(
            {"account_id": account_id, "status": {"$in": list(LIVE_SUBSCRIPTION_STATUSES)}},
            {"_id": 0, "subscription_id": 1, "status": 1},
        )
        if existing:
            logger.info(
                "CHECKOUT_REJECTED_ALREADY_SUBSCRIBED account_id=%s subscription_id=%s status=%s",
                account_id, existing.get("subscription_id"), existing.get("status"),
            )
            raise AlreadySubscribedError(
                ALREADY_SUBSCRIBED_MESSAGE,
                details={"subscription_id": existing.get("subscription_id")},
            )

    async def _trial_eligible(self, account_id: str, plan: Plan) -> bool:
        """False when the plan allows a single trial and the account already had one."""
        if not plan.trial_enabled or plan.trial.allow_multiple_trials:
            return True
        db = database.get_db()
        previous = await db.subscriptions.find_one(
            {"account_id": account_id, "trial_end": {"$ne": None}},
            {"_id": 0, "subscription_id": 1},
        )
        if previous:
            logger.info(
                "CHECKOUT_TRIAL_SKIPPED account_id=%s plan=%s previous_trial_subscription=%s",
                account_id, plan.key, previous.get("subscription_id"),
            )
            return False
        return True

    async def _check_billing_mode(self, record: Union[Plan, CreditPack]) -> None:
        price = await self.stripe.retrieve_price(record.price_id)
        price_type = price.get("type")
        if isinstance(record, Plan) and price_type != "recurring":
            raise InvalidPriceError(
                "Invalid price type. Subscription plans must be recurring.",
                details={"price_id": record.price_id, "stripe_type": price_type},
            )
        if isinstance(record, CreditPack) and price_type != "one_time":
            raise InvalidPriceError(
                "Invalid price type. Credit packs must be one-time payments.",
                details={"price_id": record.price_id, "stripe_type": price_type},
            )

    # =========================================================================
    # Customer
    # =========================================================================

    async def get_or_create_customer(self, account_id: str, email: Optional[str] = None) -> str:
        """Return the account's Stripe customer id, creating and persisting it once."""
        db = database.get_db()
        defaults = Profile(account_id=account_id, email=email).model_dump(mode="json")
        defaults.pop("account_id")
        defaults.pop("updated_at")
        profile = await db.profiles.find_one_and_update(
            {"account_id": account_id},
            {"$setOnInsert": defaults, "$set": {"updated_at": utc_now_iso()}},
            projection={"_id": 0},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        if profile.get("stripe_customer_id"):
            return profile["stripe_customer_id"]

        customer = await self.stripe.create_customer(
            email=profile.get("email") or email,
            metadata={"account_id": account_id},
        )
        customer_id = customer["id"]

        result = await db.profiles.update_one(
            {"account_id": account_id, "stripe_customer_id": None},
            {"$set": {"stripe_customer_id": customer_id, "updated_at": utc_now_iso()}},
        )
        if result.modified_count == 0:
            # A concurrent request stored its customer first; keep that one.
            profile = await db.profiles.find_one({"account_id": account_id}, {"_id": 0})
            winner = profile.get("stripe_customer_id")
            logger.warning(
                "STRIPE_CUSTOMER_RACE account_id=%s kept=%s orphaned=%s",
                account_id, winner, customer_id,
            )
            return winner

        logger.info(f"Created Stripe customer {customer_id} for account {account_id}")
        await create_audit_log(
            action=AuditAction.STRIPE_CUSTOMER_CREATED,
            actor_id=account_id,
            account_id=account_id,
            resource_type="profile",
            resource_id=account_id,
            metadata={"stripe_customer_id": customer_id},
        )
        return customer_id

    # =========================================================================
    # Session parameters
    # =========================================================================

    def _build_session_params(
        self,
        record: Union[Plan, CreditPack],
        account_id: str,
        customer_id: str,
        ui_mode: UiMode,
        success_url: Optional[str],
        cancel_url: Optional[str],
        return_url: Optional[str],
        metadata: Optional[Dict[str, Any]],
        trial_eligible: bool = True,
    ) -> Dict[str, Any]:
        is_plan = isinstance(record, Plan)

        session_metadata: Dict[str, str] = {
            str(k): str(v) for k, v in (metadata or {}).items() if k not in RESERVED_METADATA_KEYS
        }
        session_metadata.update({"account_id": account_id, "type": record.type})
        if is_plan:
            session_metadata.update({
                "plan_key": record.key,
                "credits_per_cycle": str(record.credits_per_cycle),
                "max_rollover": str(record.max_rollover),
            })
        else:
            session_metadata.update({"pack_key": record.key, "credits": str(record.credits)})

        params: Dict[str, Any] = {
            "customer": customer_id,
            "line_items": [{"price": record.price_id, "quantity": 1}],
            "mode": "subscription" if is_plan else "payment",
            "ui_mode": ui_mode.value,
            "metadata": session_metadata,
            "client_reference_id": account_id,
        }

        if is_plan:
            subscription_data: Dict[str, Any] = {
                "metadata": {"account_id": account_id, "plan_key": record.key},
            }
            if record.trial_enabled and trial_eligible:
                subscription_data["trial_period_days"] = record.trial.duration_days
                if not record.trial.require_payment_method:
                    params["payment_method_collection"] = "if_required"
                if not record.trial.auto_convert_to_paid:
                    # Trial ends in cancellation unless a payment method was added.
                    subscription_data["trial_settings"] = {"end_behavior": {"missing_payment_method": "cancel"}}
            params["subscription_data"] = subscription_data

        base = _frontend_url()
        if ui_mode == UiMode.EMBEDDED:
            params["return_url"] = return_url or f"{base}/checkout/return?session_id={{CHECKOUT_SESSION_ID}}"
        else:
            if is_plan:
                default_success = f"{base}/success?session_id={{CHECKOUT_SESSION_ID}}&type=subscription"
            else:
                default_success = (
                    f"{base}/success?session_id={{CHECKOUT_SESSION_ID}}&type=credits&credits={record.credits}"
                )
            params["success_url"] = success_url or default_success
            params["cancel_url"] = cancel_url or f"{base}/canceled"

        return params

    # =========================================================================
    # Billing portal
    # =========================================================================

    async def create_portal_session(self, account_id: str, return_url: Optional[str] = None) -> Dict[str, Any]:
        """Stripe customer portal session for an account that already has a customer."""
        db = database.get_db()
        profile = await db.profiles.find_one({"account_id": account_id}, {"_id": 0, "stripe_customer_id": 1})
        customer_id = (profile or {}).get("stripe_customer_id")
        if not customer_id:
            raise NotFoundError(
                "Activate a subscription to manage billing.",
                code="STRIPE_CUSTOMER_NOT_FOUND",
            )

        session = await self.stripe.create_billing_portal_session(
            customer_id, return_url or f"{_frontend_url()}/dashboard/billing",
        )
        logger.info("BILLING_PORTAL_SESSION_CREATED account_id=%s customer_id=%s", account_id, customer_id)
        return {"url": session.get("url")}


checkout_service = CheckoutService()

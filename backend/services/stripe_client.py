"""Stripe Client - the only module that talks to the Stripe SDK.

This module handles:
- Running blocking SDK calls in the default executor
- Bounded timeouts on every outbound call
- Exponential backoff on rate limiting
- Mapping Stripe exceptions into the billing error taxonomy

Key Principles:
- A timeout never means success or failure: it raises ProviderTimeoutError
  (retryable, outcome unknown) and the caller must reconcile
- Client-caused 4xx responses keep their status code
- Responses are returned as plain dicts
"""
import asyncio
import functools
import os
import logging
from typing import Any, Callable, Dict, List, Optional

import stripe

from services.billing_errors import ProviderError, ProviderTimeoutError

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

DEFAULT_TIMEOUT_SECONDS = float(os.getenv("STRIPE_TIMEOUT_SECONDS", "20"))
DEFAULT_MAX_RETRIES = int(os.getenv("STRIPE_MAX_RETRIES", "2"))
DEFAULT_BACKOFF_SECONDS = 0.5


def to_plain(obj: Any) -> Any:
    """StripeObject -> dict. Plain values pass through unchanged."""
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return obj


def is_not_found_error(exc: Exception) -> bool:
    """True for mapped Stripe 'No such ...' / 404 errors."""
    return isinstance(exc, ProviderError) and (exc.status_code == 404 or "No such" in exc.message)


def worst_case_call_seconds(client: "StripeClient") -> float:
    """Longest a single call can take: every attempt times out, plus all backoff sleeps."""
    backoffs = sum(client.backoff_seconds * (2 ** attempt) for attempt in range(client.max_retries))
    return (client.max_retries + 1) * client.timeout + backoffs


class StripeClient:
    """Async facade over the synchronous Stripe SDK."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    ):
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds

    # =========================================================================
    # Call plumbing
    # =========================================================================

    async def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        attempt = 0
        while True:
            loop = asyncio.get_running_loop()
            try:
                result = await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(fn, *args, **kwargs)),
                    timeout=self.timeout,
                )
                return to_plain(result)
            except asyncio.TimeoutError:
                logger.error("STRIPE_TIMEOUT operation=%s timeout=%ss", operation, self.timeout)
                raise ProviderTimeoutError(
                    f"Stripe did not respond to {operation} within {self.timeout}s; outcome unknown",
                    details={"operation": operation, "retryable": True},
                )
            except stripe.RateLimitError as e:
                if attempt >= self.max_retries:
                    logger.error("STRIPE_RATE_LIMITED operation=%s attempts=%s", operation, attempt + 1)
                    raise self._map_error(operation, e)
                delay = self.backoff_seconds * (2 ** attempt)
                attempt += 1
                logger.warning(
                    "STRIPE_RATE_LIMITED operation=%s retry=%s delay=%.2fs",
                    operation, attempt, delay,
                )
                await asyncio.sleep(delay)
            except stripe.StripeError as e:
                raise self._map_error(operation, e)

    def _map_error(self, operation: str, exc: "stripe.StripeError") -> ProviderError:
        http_status = getattr(exc, "http_status", None)
        message = getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__
        status_code = http_status if http_status and 400 <= http_status < 500 and http_status != 429 else 502
        logger.error(
            "STRIPE_ERROR operation=%s type=%s http_status=%s code=%s message=%s",
            operation, exc.__class__.__name__, http_status, getattr(exc, "code", None), message,
        )
        return ProviderError(
            message,
            status_code=status_code,
            details={
                "operation": operation,
                "provider_code": getattr(exc, "code", None),
                "provider_status": http_status,
            },
        )

    # =========================================================================
    # Customers
    # =========================================================================

    async def create_customer(self, email: Optional[str], metadata: Dict[str, str]) -> Dict[str, Any]:
        params: Dict[str, Any] = {"metadata": metadata}
        if email:
            params["email"] = email
        return await self._call("customer.create", stripe.Customer.create, **params)

    async def list_customers(self, limit: int = 100, starting_after: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": limit}
        if starting_after:
            params["starting_after"] = starting_after
        return await self._call("customer.list", stripe.Customer.list, **params)

    async def list_all_customer_ids(self, page_size: int = 100) -> List[str]:
        """All customer ids, following the starting_after cursor."""
        customer_ids: List[str] = []
        starting_after = None
        while True:
            page = await self.list_customers(limit=page_size, starting_after=starting_after)
            data = page.get("data") or []
            customer_ids.extend(c["id"] for c in data)
            if not page.get("has_more") or not data:
                return customer_ids
            starting_after = data[-1]["id"]

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        return await self._call(
            "billing_portal.session.create", stripe.billing_portal.Session.create,
            customer=customer_id, return_url=return_url,
        )

    # =========================================================================
    # Prices & checkout
    # =========================================================================

    async def retrieve_price(self, price_id: str) -> Dict[str, Any]:
        return await self._call("price.retrieve", stripe.Price.retrieve, price_id)

    async def create_checkout_session(self, **params) -> Dict[str, Any]:
        return await self._call("checkout.session.create", stripe.checkout.Session.create, **params)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._call("subscription.retrieve", stripe.Subscription.retrieve, subscription_id)

    async def modify_subscription(self, subscription_id: str, **params) -> Dict[str, Any]:
        return await self._call("subscription.modify", stripe.Subscription.modify, subscription_id, **params)

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Immediate cancellation (not cancel_at_period_end)."""
        return await self._call("subscription.cancel", stripe.Subscription.cancel, subscription_id)

    async def list_subscriptions(self, customer_id: str, limit: int = 10, status: str = "all") -> List[Dict[str, Any]]:
        page = await self._call(
            "subscription.list", stripe.Subscription.list,
            customer=customer_id, status=status, limit=limit,
        )
        return list(page.get("data") or [])

    # =========================================================================
    # Subscription schedules
    # =========================================================================

    async def create_schedule_from_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._call(
            "subscription_schedule.create", stripe.SubscriptionSchedule.create,
            from_subscription=subscription_id,
        )

    async def modify_schedule(self, schedule_id: str, **params) -> Dict[str, Any]:
        return await self._call(
            "subscription_schedule.modify", stripe.SubscriptionSchedule.modify, schedule_id, **params
        )

    async def release_schedule(self, schedule_id: str) -> Dict[str, Any]:
        return await self._call("subscription_schedule.release", stripe.SubscriptionSchedule.release, schedule_id)

    # =========================================================================
    # Invoices
    # =========================================================================

    async def preview_invoice(self, **params) -> Dict[str, Any]:
        return await self._call("invoice.create_preview", stripe.Invoice.create_preview, **params)

    # =========================================================================
    # Charges & events
    # =========================================================================

    async def retrieve_charge(self, charge_id: str) -> Dict[str, Any]:
        return await self._call("charge.retrieve", stripe.Charge.retrieve, charge_id)

    async def retrieve_event(self, event_id: str) -> Dict[str, Any]:
        return await self._call("event.retrieve", stripe.Event.retrieve, event_id)


stripe_client = StripeClient()

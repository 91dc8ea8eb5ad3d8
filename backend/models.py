from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, Literal, Union, Annotated
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PriceType(str, Enum):
    PLAN = "plan"
    PACK = "pack"

class UiMode(str, Enum):
    HOSTED = "hosted"
    EMBEDDED = "embedded"

class SubscriptionStatus(str, Enum):
    """Account-level subscription status (profiles.subscription_status)."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"

# Subscription statuses that count as "currently subscribed"
LIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")

class CreditTransactionType(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    SUBSCRIPTION = "subscription"
    REFUND = "refund"
    BONUS = "bonus"

class ChangeDirection(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    UNCHANGED = "unchanged"

class ResolutionConfidence(str, Enum):
    EXACT = "exact"
    LEGACY = "legacy"
    UNKNOWN = "unknown"

class WebhookEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    UNRECOVERABLE = "UNRECOVERABLE"

class DisputeStatus(str, Enum):
    """Account-level dispute flag; PENDING blocks credit usage."""
    PENDING = "pending"
    RESOLVED = "resolved"
    LOST = "lost"

class AuditAction(str, Enum):
    # Checkout
    CHECKOUT_SESSION_CREATED = "CHECKOUT_SESSION_CREATED"
    STRIPE_CUSTOMER_CREATED = "STRIPE_CUSTOMER_CREATED"

    # Plan changes
    SUBSCRIPTION_UPGRADED = "SUBSCRIPTION_UPGRADED"
    SUBSCRIPTION_DOWNGRADE_SCHEDULED = "SUBSCRIPTION_DOWNGRADE_SCHEDULED"
    SUBSCRIPTION_SCHEDULED_CHANGE_CANCELED = "SUBSCRIPTION_SCHEDULED_CHANGE_CANCELED"
    SUBSCRIPTION_CANCEL_REQUESTED = "SUBSCRIPTION_CANCEL_REQUESTED"
    PRICE_DRIFT_CORRECTED = "PRICE_DRIFT_CORRECTED"
    ADMIN_SUBSCRIPTION_OVERRIDE = "ADMIN_SUBSCRIPTION_OVERRIDE"

    # Reconciliation
    SUBSCRIPTION_RECONCILED = "SUBSCRIPTION_RECONCILED"
    LEDGER_DRIFT_DETECTED = "LEDGER_DRIFT_DETECTED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"

    # Credits
    CREDITS_REFUNDED = "CREDITS_REFUNDED"
    CREDITS_CLAWED_BACK = "CREDITS_CLAWED_BACK"
    CREDITS_ADJUSTED = "CREDITS_ADJUSTED"

    # Disputes
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"

    # Webhooks
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def timestamp_to_iso(value: Optional[int]) -> Optional[str]:
    """Convert a Stripe Unix timestamp to an ISO-8601 UTC string."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()

# ============================================================================
# PRICE CATALOGUE (immutable configuration)
# ============================================================================

class TrialConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    duration_days: int = 0
    trial_credits: int = 0
    require_payment_method: bool = True
    allow_multiple_trials: bool = False
    auto_convert_to_paid: bool = True


class Plan(BaseModel):
    """Recurring subscription tier with a fixed credits-per-cycle entitlement."""
    model_config = ConfigDict(frozen=True)

    type: Literal["plan"] = "plan"
    key: str
    display_name: str
    price_id: str
    credits_per_cycle: int
    max_rollover_multiplier: int = 6
    price_in_cents: int = 0
    interval: str = "month"
    trial: Optional[TrialConfig] = None

    @property
    def max_rollover(self) -> int:
        return self.credits_per_cycle * self.max_rollover_multiplier

    @property
    def trial_enabled(self) -> bool:
        return bool(self.trial and self.trial.enabled and self.trial.duration_days > 0)


class CreditPack(BaseModel):
    """One-time purchase granting a fixed credit amount."""
    model_config = ConfigDict(frozen=True)

    type: Literal["pack"] = "pack"
    key: str
    display_name: str
    price_id: str
    credits: int
    price_in_cents: int = 0


PriceRecord = Annotated[Union[Plan, CreditPack], Field(discriminator="type")]


class PlanResolution(BaseModel):
    """Result of resolving a price id for display/tier purposes, with confidence."""
    model_config = ConfigDict(frozen=True)

    price_id: str
    confidence: ResolutionConfidence
    display_name: str
    plan_key: Optional[str] = None
    record: Optional[PriceRecord] = None

# ============================================================================
# PERSISTED RECORDS
# ============================================================================

class Profile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_id: str
    email: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    credits_balance: int = 0
    subscription_status: Optional[SubscriptionStatus] = None
    subscription_tier: Optional[str] = None
    dispute_status: Optional[DisputeStatus] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class CreditTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transaction_id: str = Field(default_factory=lambda: f"CTX-{uuid.uuid4().hex[:12].upper()}")
    account_id: str
    amount: int
    balance_after: int
    type: CreditTransactionType
    description: str
    reference_id: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)


class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    account_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: str = Field(default_factory=utc_now_iso)

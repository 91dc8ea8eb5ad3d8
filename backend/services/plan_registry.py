"""Price Registry - Single Source of Truth for plan and credit pack pricing.

This is the AUTHORITATIVE mapping from Stripe price ids to:
- Subscription plans (credits per cycle, rollover cap, trial settings)
- One-time credit packs (credit amount)

NON-NEGOTIABLE RULES:
1. The index is built once at import and never mutated afterwards
2. Two entries sharing a price id is a configuration error, raised at build time
3. Every price id crossing a system boundary goes through assert_known()
4. Legacy name guessing is a separate, logged, lower-confidence path
   (resolve_with_fallback) and is only used for display/repair

Catalogue:
- hobby: Hobby (200 credits/month, 6x rollover)
- pro: Professional (1000 credits/month, 6x rollover, trial defined but disabled)
- business: Business (5000 credits/month, 6x rollover)
- small / medium: one-time credit packs

Each price id can be overridden with STRIPE_PRICE_<KEY> (e.g. STRIPE_PRICE_HOBBY)
so test and live mode can point at different Stripe objects.
"""
import os
import logging
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

from models import Plan, CreditPack, TrialConfig, PlanResolution, ResolutionConfidence
from services.billing_errors import UnknownPriceError, PriceConfigurationError

logger = logging.getLogger(__name__)

CURRENCY = "usd"
PRICE_ID_PREFIX = "price_"
MIN_PRICE_ID_LENGTH = 10


# ============================================================================
# CATALOGUE - default Stripe price ids
# ============================================================================
DEFAULT_PLANS: Tuple[Plan, ...] = (
    Plan(
        key="hobby",
        display_name="Hobby",
        price_id="price_1SZmVyALMLhQocpf0H7n5ls8",
        credits_per_cycle=200,
        max_rollover_multiplier=6,
        price_in_cents=1900,
    ),
    Plan(
        key="pro",
        display_name="Professional",
        price_id="price_1SZmVzALMLhQocpfPyRX2W8D",
        credits_per_cycle=1000,
        max_rollover_multiplier=6,
        price_in_cents=4900,
        trial=TrialConfig(
            enabled=False,
            duration_days=0,
            trial_credits=0,
            require_payment_method=True,
            allow_multiple_trials=False,
            auto_convert_to_paid=True,
        ),
    ),
    Plan(
        key="business",
        display_name="Business",
        price_id="price_1SZmVzALMLhQocpfqPk9spg4",
        credits_per_cycle=5000,
        max_rollover_multiplier=6,
        price_in_cents=14900,
    ),
)

DEFAULT_PACKS: Tuple[CreditPack, ...] = (
    CreditPack(
        key="small",
        display_name="Small Pack",
        price_id="price_1SbAASALMLhQocpfGUg3wLXM",
        credits=50,
        price_in_cents=499,
    ),
    CreditPack(
        key="medium",
        display_name="Medium Pack",
        price_id="price_1SbAASALMLhQocpf7nw3wRj7",
        credits=200,
        price_in_cents=1499,
    ),
)

# Naming conventions of retired price ids / product names, checked in order.
LEGACY_PLAN_NAMES: Tuple[Tuple[str, str], ...] = (
    ("hobby", "Hobby"),
    ("business", "Business"),
    ("pro", "Professional"),
)

CREDIT_PURCHASE_LABEL = "Credit Purchase"


def apply_env_overrides(records: Iterable[Union[Plan, CreditPack]]) -> Tuple[Union[Plan, CreditPack], ...]:
    """Replace price ids from STRIPE_PRICE_<KEY> environment variables when set."""
    result = []
    for record in records:
        override = (os.environ.get(f"STRIPE_PRICE_{record.key.upper()}") or "").strip()
        if override and override != record.price_id:
            logger.info("Stripe price override key=%s price_id=%s", record.key, override)
            record = record.model_copy(update={"price_id": override})
        result.append(record)
    return tuple(result)


def is_plausible_price_id(price_id: Optional[str]) -> bool:
    """Syntactic check only, no lookup."""
    return bool(
        price_id
        and price_id.startswith(PRICE_ID_PREFIX)
        and len(price_id) >= MIN_PRICE_ID_LENGTH
    )


# ============================================================================
# PRICE INDEX
# ============================================================================
class PriceIndex:
    """Immutable price id -> PriceRecord lookup."""

    def __init__(
        self,
        by_price_id: Mapping[str, Union[Plan, CreditPack]],
        plans_by_key: Mapping[str, Plan],
        packs_by_key: Mapping[str, CreditPack],
    ):
        self._by_price_id = MappingProxyType(dict(by_price_id))
        self._plans_by_key = MappingProxyType(dict(plans_by_key))
        self._packs_by_key = MappingProxyType(dict(packs_by_key))

    @classmethod
    def build(cls, plans: Iterable[Plan], packs: Iterable[CreditPack]) -> "PriceIndex":
        """Build the index, failing fast on duplicate price ids or keys."""
        by_price_id: Dict[str, Union[Plan, CreditPack]] = {}
        plans_by_key: Dict[str, Plan] = {}
        packs_by_key: Dict[str, CreditPack] = {}

        for record in list(plans) + list(packs):
            if not record.price_id:
                raise PriceConfigurationError(f"{record.type} '{record.key}' has no price id")
            existing = by_price_id.get(record.price_id)
            if existing is not None:
                raise PriceConfigurationError(
                    f"Duplicate price id {record.price_id}: "
                    f"{existing.type} '{existing.key}' and {record.type} '{record.key}'"
                )
            by_price_id[record.price_id] = record

            registry = plans_by_key if isinstance(record, Plan) else packs_by_key
            if record.key in registry:
                raise PriceConfigurationError(f"Duplicate {record.type} key '{record.key}'")
            registry[record.key] = record

        return cls(by_price_id, plans_by_key, packs_by_key)

    def get(self, price_id: str) -> Optional[Union[Plan, CreditPack]]:
        return self._by_price_id.get(price_id)

    def plans(self) -> Tuple[Plan, ...]:
        return tuple(self._plans_by_key.values())

    def packs(self) -> Tuple[CreditPack, ...]:
        return tuple(self._packs_by_key.values())

    def plan_by_key(self, key: str) -> Optional[Plan]:
        return self._plans_by_key.get(key)

    def pack_by_key(self, key: str) -> Optional[CreditPack]:
        return self._packs_by_key.get(key)


# ============================================================================
# RESOLVER
# ============================================================================
class PriceResolver:
    """Resolves opaque Stripe price ids into typed plan/pack records."""

    def __init__(self, index: PriceIndex):
        self.index = index

    @classmethod
    def from_config(
        cls,
        plans: Iterable[Plan] = DEFAULT_PLANS,
        packs: Iterable[CreditPack] = DEFAULT_PACKS,
        use_env_overrides: bool = True,
    ) -> "PriceResolver":
        if use_env_overrides:
            plans = apply_env_overrides(plans)
            packs = apply_env_overrides(packs)
        return cls(PriceIndex.build(plans, packs))

    def resolve(self, price_id: Optional[str]) -> Optional[Union[Plan, CreditPack]]:
        """O(1) lookup; None for empty or unknown ids."""
        if not price_id or price_id == PRICE_ID_PREFIX:
            return None
        return self.index.get(price_id)

    def assert_known(self, price_id: Optional[str]) -> Union[Plan, CreditPack]:
        record = self.resolve(price_id)
        if record is None:
            raise UnknownPriceError(
                f"Unknown price ID: {price_id}. This price is not configured in the subscription config.",
                details={"price_id": price_id},
            )
        return record

    def resolve_plan(self, price_id: Optional[str]) -> Optional[Plan]:
        record = self.resolve(price_id)
        return record if isinstance(record, Plan) else None

    def get_plan(self, key: Optional[str]) -> Optional[Plan]:
        if not key:
            return None
        return self.index.plan_by_key(key)

    def get_pack(self, key: Optional[str]) -> Optional[CreditPack]:
        if not key:
            return None
        return self.index.pack_by_key(key)

    def plans(self) -> Tuple[Plan, ...]:
        return self.index.plans()

    def packs(self) -> Tuple[CreditPack, ...]:
        return self.index.packs()

    def resolve_with_fallback(self, price_id: str) -> PlanResolution:
        """
        Resolve a price id for tier labelling during repair/sync.

        Order:
        1. Configured index (exact)
        2. Legacy naming substrings, lower or capitalized (legacy, logged as WARNING)
        3. Truncated price id label (unknown, logged as WARNING)
        """
        record = self.resolve(price_id)
        if isinstance(record, Plan):
            return PlanResolution(
                price_id=price_id,
                confidence=ResolutionConfidence.EXACT,
                display_name=record.display_name,
                plan_key=record.key,
                record=record,
            )
        if isinstance(record, CreditPack):
            return PlanResolution(
                price_id=price_id,
                confidence=ResolutionConfidence.EXACT,
                display_name=CREDIT_PURCHASE_LABEL,
                record=record,
            )

        price_id = price_id or ""
        for legacy_key, legacy_name in LEGACY_PLAN_NAMES:
            # Case-sensitive: random Stripe id characters must not spell a plan name.
            if legacy_key in price_id or legacy_key.capitalize() in price_id:
                logger.warning(
                    "PRICE_RESOLUTION_LEGACY price_id=%s matched legacy name=%s (not in current config)",
                    price_id, legacy_name,
                )
                return PlanResolution(
                    price_id=price_id,
                    confidence=ResolutionConfidence.LEGACY,
                    display_name=legacy_name,
                    plan_key=legacy_key,
                )

        label = f"Plan ({(price_id or '')[:12]}...)"
        logger.warning(
            "PRICE_RESOLUTION_UNKNOWN price_id=%s labelled=%s (no config or legacy match)",
            price_id, label,
        )
        return PlanResolution(
            price_id=price_id,
            confidence=ResolutionConfidence.UNKNOWN,
            display_name=label,
        )


def catalogue_summary(resolver: "PriceResolver") -> Dict[str, list]:
    """Public catalogue payload for GET /api/billing/plans."""
    return {
        "currency": CURRENCY,
        "plans": [
            {
                "key": p.key,
                "name": p.display_name,
                "price_id": p.price_id,
                "credits_per_cycle": p.credits_per_cycle,
                "max_rollover": p.max_rollover,
                "price_in_cents": p.price_in_cents,
                "interval": p.interval,
                "trial_days": p.trial.duration_days if p.trial_enabled else 0,
            }
            for p in resolver.plans()
        ],
        "packs": [
            {
                "key": p.key,
                "name": p.display_name,
                "price_id": p.price_id,
                "credits": p.credits,
                "price_in_cents": p.price_in_cents,
            }
            for p in resolver.packs()
        ],
    }


# Built once at import; services receive it through their constructors.
price_resolver = PriceResolver.from_config()

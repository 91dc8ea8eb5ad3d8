"""Credit Ledger Service

Handles all credit operations:
- Atomic balance mutation (credit / debit)
- Append-only transaction log (credit_transactions)
- Renewal rollover cap
- Compensating refunds and refund clawbacks
- Operator balance adjustments

Key Principles:
- profiles.credits_balance is written only by this service
- The sum of an account's transaction amounts always equals its balance
- A balance change and its transaction row succeed or fail together: if the
  row cannot be written the balance change is reversed
- A reference_id (invoice id, checkout session id, ...) makes a grant
  replay-safe: the same (account, type, reference_id) is applied once
- Usage is frozen while a payment dispute is pending on the account
"""
from typing import Any, Callable, Dict, Optional
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    Plan,
    CreditTransaction,
    CreditTransactionType,
    AuditAction,
    DisputeStatus,
    utc_now_iso,
)
from services.billing_errors import (
    ValidationError,
    NotFoundError,
    InsufficientCreditsError,
    AccountDisputedError,
    ConflictError,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# Compare-and-set attempts for rollover/capped grants before giving up
MAX_CAS_ATTEMPTS = 5


def renewal_description(credits: int, added: int, cap: int) -> str:
    if added == credits:
        return f"Monthly subscription renewal - {credits} credits"
    if added >= 0:
        return (
            f"Monthly subscription renewal - {added} credits "
            f"(capped from {credits} due to rollover limit of {cap})"
        )
    return (
        f"Monthly subscription renewal - balance capped at rollover limit of {cap} "
        f"({-added} credits expired)"
    )


class CreditService:
    """Credit ledger for accounts."""

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_balance(self, account_id: str) -> int:
        db = database.get_db()
        profile = await db.profiles.find_one(
            {"account_id": account_id}, {"_id": 0, "credits_balance": 1}
        )
        if not profile:
            raise NotFoundError(f"Account {account_id} not found", code="ACCOUNT_NOT_FOUND")
        return int(profile.get("credits_balance") or 0)

    async def get_transaction_history(
        self,
        account_id: str,
        limit: int = 50,
        offset: int = 0,
        transaction_type: Optional[CreditTransactionType] = None,
    ) -> Dict[str, Any]:
        """Newest-first transaction page for an account."""
        db = database.get_db()
        query: Dict[str, Any] = {"account_id": account_id}
        if transaction_type:
            query["type"] = CreditTransactionType(transaction_type).value

        total = await db.credit_transactions.count_documents(query)
        cursor = db.credit_transactions.find(query, {"_id": 0}).sort("created_at", -1).skip(offset).limit(limit)
        transactions = await cursor.to_list(length=limit)
        return {"transactions": transactions, "total": total, "limit": limit, "offset": offset}

    async def verify_conservation(self, account_id: str) -> Dict[str, Any]:
        """Compare the stored balance with the sum of the account's transactions."""
        db = database.get_db()
        balance = await self.get_balance(account_id)
        cursor = db.credit_transactions.find({"account_id": account_id}, {"_id": 0, "amount": 1})
        rows = await cursor.to_list(length=None)
        ledger_sum = sum(int(r.get("amount") or 0) for r in rows)
        consistent = ledger_sum == balance
        if not consistent:
            logger.error(
                "LEDGER_DRIFT account_id=%s balance=%s ledger_sum=%s",
                account_id, balance, ledger_sum,
            )
        return {"balance": balance, "ledger_sum": ledger_sum, "consistent": consistent}

    # =========================================================================
    # Mutations
    # =========================================================================

    async def credit(
        self,
        account_id: str,
        amount: int,
        transaction_type: CreditTransactionType,
        description: str,
        reference_id: Optional[str] = None,
    ) -> int:
        """Atomically add credits and append the transaction. Returns the new balance."""
        self._require_positive(amount)
        tx_type = CreditTransactionType(transaction_type)

        if reference_id and await self._already_applied(account_id, tx_type, reference_id):
            return await self.get_balance(account_id)

        db = database.get_db()
        profile = await db.profiles.find_one_and_update(
            {"account_id": account_id},
            {"$inc": {"credits_balance": amount}, "$set": {"updated_at": utc_now_iso()}},
            projection={"_id": 0, "credits_balance": 1},
            return_document=ReturnDocument.AFTER,
        )
        if profile is None:
            raise NotFoundError(f"Account {account_id} not found", code="ACCOUNT_NOT_FOUND")

        new_balance = profile["credits_balance"]
        applied = await self._append(account_id, amount, new_balance, tx_type, description, reference_id)
        if not applied:
            return await self.get_balance(account_id)

        logger.info(f"Added {amount} credits to account {account_id} ({tx_type.value}). New balance: {new_balance}")
        return new_balance

    async def debit(
        self,
        account_id: str,
        amount: int,
        transaction_type: CreditTransactionType = CreditTransactionType.USAGE,
        description: str = "Credit usage",
        reference_id: Optional[str] = None,
    ) -> int:
        """Atomically remove credits only if the balance covers them. Returns the new balance.

        Raises InsufficientCreditsError (or AccountDisputedError while a
        dispute is pending) without touching state otherwise.
        """
        self._require_positive(amount)
        tx_type = CreditTransactionType(transaction_type)

        if reference_id and await self._already_applied(account_id, tx_type, reference_id):
            return await self.get_balance(account_id)

        db = database.get_db()
        profile = await db.profiles.find_one_and_update(
            {
                "account_id": account_id,
                "credits_balance": {"$gte": amount},
                "dispute_status": {"$ne": DisputeStatus.PENDING.value},
            },
            {"$inc": {"credits_balance": -amount}, "$set": {"updated_at": utc_now_iso()}},
            projection={"_id": 0, "credits_balance": 1},
            return_document=ReturnDocument.AFTER,
        )
        if profile is None:
            await self._require_not_disputed(account_id)
            available = await self.get_balance(account_id)
            logger.warning(
                f"Insufficient credits for account {account_id}. Has {available}, needs {amount}"
            )
            raise InsufficientCreditsError(
                f"Insufficient credits: {amount} required, {available} available",
                details={"required": amount, "available": available},
            )

        new_balance = profile["credits_balance"]
        applied = await self._append(account_id, -amount, new_balance, tx_type, description, reference_id)
        if not applied:
            return await self.get_balance(account_id)

        logger.info(f"Deducted {amount} credits from account {account_id}. New balance: {new_balance}")
        return new_balance

    async def apply_cycle_rollover(
        self,
        account_id: str,
        plan: Plan,
        reference_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Renewal grant: balance becomes min(balance + credits_per_cycle, rollover cap).

        A balance already above the cap is brought down to it, the expired
        credits being recorded as a negative subscription transaction.
        """
        cap = plan.max_rollover
        credits = plan.credits_per_cycle

        result = await self._adjust_balance(
            account_id,
            compute_target=lambda balance: min(balance + credits, cap),
            transaction_type=CreditTransactionType.SUBSCRIPTION,
            describe=lambda delta: renewal_description(credits, delta, cap),
            reference_id=reference_id,
        )
        result["capped"] = result["credits_added"] < credits
        logger.info(
            "SUBSCRIPTION_RENEWAL_CREDITS account_id=%s plan=%s added=%s balance=%s cap=%s",
            account_id, plan.key, result["credits_added"], result["balance"], cap,
        )
        return result

    async def grant_capped(
        self,
        account_id: str,
        amount: int,
        cap: int,
        transaction_type: CreditTransactionType,
        description: str,
        reference_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Add up to `amount` credits without taking the balance above `cap`.

        Never removes credits: a balance already over the cap is left as is.
        """
        self._require_positive(amount)
        return await self._adjust_balance(
            account_id,
            compute_target=lambda balance: max(balance, min(balance + amount, cap)),
            transaction_type=transaction_type,
            describe=lambda delta: description if delta == amount else f"{description} (capped at {cap})",
            reference_id=reference_id,
        )

    async def refund(
        self,
        account_id: str,
        amount: int,
        original_description: str,
        reference_id: Optional[str] = None,
    ) -> int:
        """Compensating credit reversing an earlier debit."""
        new_balance = await self.credit(
            account_id,
            amount,
            CreditTransactionType.REFUND,
            f"Refund: {original_description}",
            reference_id=reference_id,
        )
        await create_audit_log(
            action=AuditAction.CREDITS_REFUNDED,
            actor_id="SYSTEM",
            account_id=account_id,
            resource_type="credits",
            resource_id=reference_id,
            metadata={"amount": amount, "original_description": original_description, "balance": new_balance},
        )
        return new_balance

    async def clawback(
        self,
        account_id: str,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Remove up to `amount` credits after a money refund, never going below zero."""
        self._require_positive(amount)
        result = await self._adjust_balance(
            account_id,
            compute_target=lambda balance: max(0, balance - amount),
            transaction_type=CreditTransactionType.REFUND,
            describe=lambda delta: f"Clawback: {description}",
            reference_id=reference_id,
        )
        await create_audit_log(
            action=AuditAction.CREDITS_CLAWED_BACK,
            actor_id="SYSTEM",
            account_id=account_id,
            resource_type="credits",
            resource_id=reference_id,
            metadata={"requested": amount, "removed": -result["credits_added"], "balance": result["balance"]},
        )
        return result

    async def set_balance(
        self,
        account_id: str,
        new_balance: int,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Operator adjustment: set the balance to new_balance, recording the delta as a bonus row."""
        if isinstance(new_balance, bool) or not isinstance(new_balance, int) or new_balance < 0:
            raise ValidationError(f"Credit balance must be a non-negative integer, got {new_balance!r}")

        previous = await self.get_balance(account_id)
        description = f"[Admin: {actor_id}] Set balance to {new_balance}"
        if reason:
            description = f"{description} - {reason}"
        result = await self._adjust_balance(
            account_id,
            compute_target=lambda balance: new_balance,
            transaction_type=CreditTransactionType.BONUS,
            describe=lambda delta: description,
            reference_id=None,
        )
        logger.info(
            "CREDITS_ADJUSTED account_id=%s actor=%s previous=%s new=%s delta=%s",
            account_id, actor_id, previous, result["balance"], result["credits_added"],
        )
        await create_audit_log(
            action=AuditAction.CREDITS_ADJUSTED,
            actor_id=actor_id,
            account_id=account_id,
            resource_type="credits",
            before_state={"credits_balance": previous},
            after_state={"credits_balance": result["balance"]},
            metadata={"delta": result["credits_added"], "reason": reason},
        )
        return {"previous_balance": previous, "balance": result["balance"], "delta": result["credits_added"]}

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _require_positive(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"Credit amount must be a positive integer, got {amount!r}")

    async def _require_not_disputed(self, account_id: str) -> None:
        db = database.get_db()
        profile = await db.profiles.find_one({"account_id": account_id}, {"_id": 0, "dispute_status": 1})
        if profile and profile.get("dispute_status") == DisputeStatus.PENDING.value:
            logger.warning("CREDIT_USAGE_BLOCKED_DISPUTE account_id=%s", account_id)
            raise AccountDisputedError(
                "Credit usage is suspended while a payment dispute is open on this account",
                details={"account_id": account_id},
            )

    async def _already_applied(
        self, account_id: str, tx_type: CreditTransactionType, reference_id: str
    ) -> bool:
        db = database.get_db()
        existing = await db.credit_transactions.find_one(
            {"account_id": account_id, "type": tx_type.value, "reference_id": reference_id},
            {"_id": 0, "transaction_id": 1},
        )
        if existing:
            logger.info(
                "LEDGER_REPLAY_SKIPPED account_id=%s type=%s reference_id=%s",
                account_id, tx_type.value, reference_id,
            )
            return True
        return False

    async def _adjust_balance(
        self,
        account_id: str,
        compute_target: Callable[[int], int],
        transaction_type: CreditTransactionType,
        describe: Callable[[int], str],
        reference_id: Optional[str],
    ) -> Dict[str, Any]:
        """Compare-and-set the balance to compute_target(balance) and record the delta."""
        tx_type = CreditTransactionType(transaction_type)
        if reference_id and await self._already_applied(account_id, tx_type, reference_id):
            return {"credits_added": 0, "balance": await self.get_balance(account_id), "replayed": True}

        db = database.get_db()
        for _ in range(MAX_CAS_ATTEMPTS):
            balance = await self.get_balance(account_id)
            target = compute_target(balance)
            delta = target - balance
            if delta == 0:
                return {"credits_added": 0, "balance": balance, "replayed": False}

            updated = await db.profiles.find_one_and_update(
                {"account_id": account_id, "credits_balance": balance},
                {"$set": {"credits_balance": target, "updated_at": utc_now_iso()}},
                projection={"_id": 0, "credits_balance": 1},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                # Balance moved underneath us
                continue

            applied = await self._append(account_id, delta, target, tx_type, describe(delta), reference_id)
            if not applied:
                return {"credits_added": 0, "balance": await self.get_balance(account_id), "replayed": True}
            return {"credits_added": delta, "balance": target, "replayed": False}

        raise ConflictError(
            f"Credit balance for account {account_id} kept changing; adjustment not applied",
            details={"account_id": account_id},
        )

    async def _append(
        self,
        account_id: str,
        amount: int,
        balance_after: int,
        tx_type: CreditTransactionType,
        description: str,
        reference_id: Optional[str],
    ) -> bool:
        """Insert the transaction row for an applied balance change.

        Returns False when another writer already recorded the same reference
        (the balance change is reversed). Any other failure reverses the
        balance change and re-raises.
        """
        db = database.get_db()
        transaction = CreditTransaction(
            account_id=account_id,
            amount=amount,
            balance_after=balance_after,
            type=tx_type,
            description=description,
            reference_id=reference_id,
        )
        try:
            await db.credit_transactions.insert_one(transaction.model_dump(mode="json"))
            return True
        except DuplicateKeyError:
            await self._reverse(account_id, amount)
            logger.info(
                "LEDGER_REPLAY_SKIPPED account_id=%s type=%s reference_id=%s (concurrent)",
                account_id, tx_type.value, reference_id,
            )
            return False
        except Exception as e:
            logger.error(f"Failed to record credit transaction for account {account_id}: {e}")
            await self._reverse(account_id, amount)
            raise

    async def _reverse(self, account_id: str, amount: int) -> None:
        db = database.get_db()
        await db.profiles.update_one(
            {"account_id": account_id},
            {"$inc": {"credits_balance": -amount}, "$set": {"updated_at": utc_now_iso()}},
        )


credit_service = CreditService()

from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)


def changed_fields(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Fields whose value differs between two billing snapshots, as {field: {from, to}}."""
    before = before or {}
    after = after or {}
    return {
        key: {"from": before.get(key), "to": after.get(key)}
        for key in sorted(set(before) | set(after))
        if before.get(key) != after.get(key)
    }


async def create_audit_log(
    action: AuditAction,
    actor_id: Optional[str] = None,
    account_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Record a billing mutation in audit_logs.

    Args:
        action: The audit action type
        actor_id: Account or "SYSTEM" performing the action
        account_id: Account whose billing state changed
        resource_type: e.g. 'subscription', 'profile', 'credits'
        resource_id: Stripe subscription id, transaction id, ...
        before_state: Snapshot before the change
        after_state: Snapshot after the change
        metadata: Additional context

    Returns the audit_id, or "" when the write failed. Audit failures never
    fail the billing operation that triggered them.
    """
    try:
        db = database.get_db()

        enriched_metadata = dict(metadata or {})
        if before_state is not None and after_state is not None:
            changes = changed_fields(before_state, after_state)
            if changes:
                enriched_metadata["changes"] = changes

        audit_log = AuditLog(
            action=action,
            actor_id=actor_id,
            account_id=account_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
        )
        await db.audit_logs.insert_one(audit_log.model_dump(mode="json"))
        logger.info("AUDIT action=%s account_id=%s resource_id=%s", action.value, account_id, resource_id)
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        return ""


async def get_audit_logs_for_account(account_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    db = database.get_db()
    cursor = db.audit_logs.find({"account_id": account_id}, {"_id": 0}).sort("timestamp", -1).limit(limit)
    return await cursor.to_list(length=limit)

"""Admin Billing Routes - operator repair surface.

Endpoints:
- POST /api/admin/billing/reconcile - Resync one customer or all customers from Stripe
- GET /api/admin/billing/accounts/{account_id}/ledger - Balance vs transaction sum
- GET /api/admin/billing/accounts/{account_id}/audit - Billing audit trail
- POST /api/admin/billing/accounts/{account_id}/credits - Set the credit balance
- GET /api/admin/billing/accounts/{account_id}/subscription - Local row and live Stripe view
- POST /api/admin/billing/accounts/{account_id}/subscription - Cancel or change on the account's behalf
- POST /api/admin/billing/jobs/check-expirations - Run the expiration check now
- POST /api/admin/billing/jobs/recover-webhooks - Replay failed webhook events now
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from typing import Optional
from middleware import require_admin
from job_runner import run_expiration_check, run_webhook_recovery
from services.admin_billing_service import admin_billing_service
from services.credit_service import credit_service
from services.subscription_sync_service import subscription_sync_service
from utils.audit import get_audit_logs_for_account
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/billing", tags=["admin-billing"])


class ReconcileRequest(BaseModel):
    customer_id: Optional[str] = None
    all_customers: bool = False
    dry_run: bool = True


class SetCreditsRequest(BaseModel):
    new_balance: int
    reason: Optional[str] = None


class SubscriptionOverrideRequest(BaseModel):
    action: str
    target_price_id: Optional[str] = None


@router.post("/reconcile")
async def reconcile(body: ReconcileRequest, admin: dict = Depends(require_admin)):
    """Dry-run by default; pass dry_run=false to write."""
    if bool(body.customer_id) == body.all_customers:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide exactly one of customer_id or all_customers"
        )

    logger.info(
        "ADMIN_RECONCILE admin=%s customer_id=%s all=%s dry_run=%s",
        admin.get("sub"), body.customer_id, body.all_customers, body.dry_run,
    )
    if body.all_customers:
        summary = await subscription_sync_service.reconcile_all(dry_run=body.dry_run)
    else:
        summary = await subscription_sync_service.reconcile_customers([body.customer_id], dry_run=body.dry_run)
    return {"success": summary["errors"] == 0, "data": summary}


@router.get("/accounts/{account_id}/ledger")
async def ledger_check(account_id: str, admin: dict = Depends(require_admin)):
    return {"success": True, "data": await credit_service.verify_conservation(account_id)}


@router.get("/accounts/{account_id}/audit")
async def account_audit(account_id: str, limit: int = 50, admin: dict = Depends(require_admin)):
    return {"success": True, "data": await get_audit_logs_for_account(account_id, limit=limit)}


@router.post("/accounts/{account_id}/credits")
async def set_credits(account_id: str, body: SetCreditsRequest, admin: dict = Depends(require_admin)):
    """Set the balance; the difference is recorded as a bonus transaction."""
    result = await credit_service.set_balance(
        account_id, body.new_balance, actor_id=admin.get("sub"), reason=body.reason,
    )
    return {"success": True, "data": result}


@router.get("/accounts/{account_id}/subscription")
async def get_subscription(account_id: str, admin: dict = Depends(require_admin)):
    return {"success": True, "data": await admin_billing_service.get_account_subscription(account_id)}


@router.post("/accounts/{account_id}/subscription")
async def override_subscription(
    account_id: str,
    body: SubscriptionOverrideRequest,
    admin: dict = Depends(require_admin),
):
    result = await admin_billing_service.override_subscription(
        account_id, body.action, actor_id=admin.get("sub"), target_price_id=body.target_price_id,
    )
    return {"success": True, "data": result}


@router.post("/jobs/check-expirations")
async def trigger_expiration_check(admin: dict = Depends(require_admin)):
    logger.info("ADMIN_JOB_TRIGGERED admin=%s job=check_expirations", admin.get("sub"))
    return {"success": True, "data": await run_expiration_check()}


@router.post("/jobs/recover-webhooks")
async def trigger_webhook_recovery(limit: int = 50, admin: dict = Depends(require_admin)):
    logger.info("ADMIN_JOB_TRIGGERED admin=%s job=recover_webhooks limit=%s", admin.get("sub"), limit)
    return {"success": True, "data": await run_webhook_recovery(limit=limit)}

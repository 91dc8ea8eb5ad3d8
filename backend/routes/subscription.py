"""Subscription Routes - plan changes for the authenticated account.

Endpoints:
- GET /api/billing/subscription - Current subscription, tier and scheduled change
- POST /api/billing/subscription/change - Upgrade now or schedule a downgrade
- POST /api/billing/subscription/preview-change - Proration preview, no changes made
- POST /api/billing/subscription/cancel-scheduled - Drop a pending downgrade
- POST /api/billing/subscription/cancel - Cancel at period end
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional
from middleware import require_account
from services.subscription_change_service import subscription_change_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing/subscription", tags=["subscription"])


class ChangePlanRequest(BaseModel):
    target_price_id: str = ""


class CancelRequest(BaseModel):
    reason: Optional[str] = None


@router.get("")
async def get_subscription(account_id: str = Depends(require_account)):
    data = await subscription_change_service.get_subscription_status(account_id)
    return {"success": True, "data": data}


@router.post("/change")
async def change_plan(body: ChangePlanRequest, account_id: str = Depends(require_account)):
    data = await subscription_change_service.change_subscription(account_id, body.target_price_id)
    return {"success": True, "data": data}


@router.post("/preview-change")
async def preview_change(body: ChangePlanRequest, account_id: str = Depends(require_account)):
    data = await subscription_change_service.preview_change(account_id, body.target_price_id)
    return {"success": True, "data": data}


@router.post("/cancel-scheduled")
async def cancel_scheduled_change(account_id: str = Depends(require_account)):
    data = await subscription_change_service.cancel_scheduled_change(account_id)
    return {"success": True, "data": data}


@router.post("/cancel")
async def cancel_subscription(body: CancelRequest = CancelRequest(), account_id: str = Depends(require_account)):
    data = await subscription_change_service.cancel_subscription(account_id, reason=body.reason)
    return {"success": True, "data": data}

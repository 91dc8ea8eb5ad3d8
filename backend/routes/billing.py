"""Billing Routes - catalogue and checkout.

Endpoints:
- GET /api/billing/plans - Plans and credit packs with their Stripe price ids
- POST /api/billing/checkout - Create checkout session for a plan or credit pack
- POST /api/billing/portal - Stripe customer portal session
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from models import UiMode
from middleware import require_account
from services.checkout_service import checkout_service
from services.plan_registry import price_resolver, catalogue_summary
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    price_id: str = ""
    ui_mode: UiMode = UiMode.HOSTED
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    return_url: Optional[str] = None
    email: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


@router.get("/plans")
async def list_plans():
    """Public pricing catalogue."""
    return {"success": True, "data": catalogue_summary(price_resolver)}


@router.post("/checkout")
async def create_checkout(body: CheckoutRequest, account_id: str = Depends(require_account)):
    """
    Create Stripe checkout session.

    Hosted mode returns a redirect url, embedded mode a client secret.
    Billing errors are rendered by the BillingError handler in server.py.
    """
    result = await checkout_service.create_checkout_session(
        account_id=account_id,
        price_id=body.price_id,
        ui_mode=body.ui_mode,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        return_url=body.return_url,
        metadata=body.metadata,
        email=body.email,
    )
    return {"success": True, "data": result}


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


@router.post("/portal")
async def create_portal(body: PortalRequest, account_id: str = Depends(require_account)):
    """Customer portal for payment methods and invoices."""
    result = await checkout_service.create_portal_session(account_id, return_url=body.return_url)
    return {"success": True, "data": result}

"""Stripe webhook endpoint.

Returns 200 for processed, duplicate and ignored events; 400 for bad
signatures or payloads; 500 when processing failed so Stripe redelivers.
"""
from fastapi import APIRouter, Request, HTTPException, status
from services.stripe_webhook_service import stripe_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    success, message, details = await stripe_webhook_service.process_webhook(payload, signature)
    if success:
        return {"received": True, "message": message}

    if message in ("Invalid signature", "Invalid payload"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"message": message, "event_id": (details or {}).get("event_id")},
    )

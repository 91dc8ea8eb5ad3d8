"""Credit Routes - balance and ledger history.

Endpoints:
- GET /api/credits/balance
- GET /api/credits/transactions?limit=&offset=&type=
"""
from fastapi import APIRouter, Depends, Query
from typing import Optional
from models import CreditTransactionType
from middleware import require_account
from services.credit_service import credit_service

router = APIRouter(prefix="/api/credits", tags=["credits"])


@router.get("/balance")
async def get_balance(account_id: str = Depends(require_account)):
    balance = await credit_service.get_balance(account_id)
    return {"success": True, "data": {"account_id": account_id, "credits_balance": balance}}


@router.get("/transactions")
async def get_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    type: Optional[CreditTransactionType] = Query(None),
    account_id: str = Depends(require_account),
):
    history = await credit_service.get_transaction_history(
        account_id, limit=limit, offset=offset, transaction_type=type
    )
    return {"success": True, "data": history}

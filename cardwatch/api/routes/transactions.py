"""
CardWatch — Transactions API

POST /api/v1/transactions            → record a transaction against a card
GET  /api/v1/transactions            → paginated list with filters
GET  /api/v1/transactions/{txn_id}   → single transaction
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cardwatch.api.routes.cards import fetch_card
from cardwatch.models.models import TransactionRecord
from cardwatch.models.schemas import Transaction, TransactionCreate, TransactionListResponse
from cardwatch.services.db import get_db

logger = logging.getLogger("cardwatch.api.transactions")
router = APIRouter()


# ===========================================================================
# POST  /api/v1/transactions
# ===========================================================================
@router.post(
    "/",
    status_code=status.HTTP_201_CREATED,
    response_model=Transaction,
    summary="Record a Transaction",
)
async def create_transaction(
    payload: TransactionCreate,
    db: AsyncSession = Depends(get_db),
):
    card = await fetch_card(db, payload.card_record_id)

    txn = TransactionRecord(**payload.model_dump())
    if not txn.card_number:
        txn.card_number = card.primary_card_number
    db.add(txn)
    await db.commit()
    await db.refresh(txn)
    logger.info(
        "Transaction recorded: id=%s card=%s amount=%.2f store=%s",
        txn.id, txn.card_record_id, txn.transaction_amount, txn.transaction_store,
    )
    return Transaction.model_validate(txn)


# ===========================================================================
# GET  /api/v1/transactions
# ===========================================================================
@router.get(
    "/",
    response_model=TransactionListResponse,
    summary="List Transactions",
    description="Paginated list with optional filters, newest first.",
)
async def list_transactions(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=200),
    card_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    conditions = []
    if card_id:
        conditions.append(TransactionRecord.card_record_id == card_id)

    stmt = select(TransactionRecord).order_by(
        TransactionRecord.transaction_datetime.desc(), TransactionRecord.id.asc()
    )
    if conditions:
        stmt = stmt.where(and_(*conditions))

    count_result = await db.execute(select(func.count()).select_from(stmt.subquery()))
    total: int = count_result.scalar() or 0

    result = await db.execute(stmt.offset((page - 1) * page_size).limit(page_size))
    return TransactionListResponse(
        total=total,
        page=page,
        page_size=page_size,
        items=[Transaction.model_validate(t) for t in result.scalars()],
    )


# ===========================================================================
# GET  /api/v1/transactions/{txn_id}
# ===========================================================================
@router.get(
    "/{txn_id}",
    response_model=Transaction,
    summary="Get a Transaction",
)
async def get_transaction(txn_id: str, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(TransactionRecord).where(TransactionRecord.id == txn_id))
    txn = result.scalar_one_or_none()
    if txn is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transaction not found",
        )
    return Transaction.model_validate(txn)

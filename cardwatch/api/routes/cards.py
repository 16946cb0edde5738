"""
CardWatch — Cards API
POST   /api/v1/cards            → register a card
GET    /api/v1/cards            → paginated list with filters
GET    /api/v1/cards/{card_id}  → single card
PUT    /api/v1/cards/{card_id}  → full update
DELETE /api/v1/cards/{card_id}  → delete (its transactions go with it)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cardwatch.models.models import CardRecord
from cardwatch.models.schemas import Card, CardCreate, CardListResponse
from cardwatch.services.db import get_db

logger = logging.getLogger("cardwatch.api.cards")
router = APIRouter()


@router.post(
    "/",
    status_code=status.HTTP_201_CREATED,
    response_model=Card,
    summary="Register a Card",
)
async def create_card(body: CardCreate, db: AsyncSession = Depends(get_db)):
    card = CardRecord(**body.model_dump())
    db.add(card)
    await db.commit()
    await db.refresh(card)
    logger.info("Card created: id=%s staff_id=%s", card.id, card.staff_id)
    return Card.model_validate(card)


@router.get(
    "/",
    response_model=CardListResponse,
    summary="List Cards",
    description="Paginated list with optional filters.",
)
async def list_cards(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=200),
    active: Optional[bool] = None,
    staff_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    conditions = []
    if active is not None:
        conditions.append(CardRecord.active.is_(active))
    if staff_id:
        conditions.append(CardRecord.staff_id == staff_id)

    stmt = select(CardRecord).order_by(CardRecord.staff_id.asc(), CardRecord.id.asc())
    if conditions:
        stmt = stmt.where(and_(*conditions))

    count_result = await db.execute(select(func.count()).select_from(stmt.subquery()))
    total: int = count_result.scalar() or 0

    result = await db.execute(stmt.offset((page - 1) * page_size).limit(page_size))
    return CardListResponse(
        total=total,
        page=page,
        page_size=page_size,
        items=[Card.model_validate(c) for c in result.scalars()],
    )


@router.get("/{card_id}", response_model=Card, summary="Get a Card")
async def get_card(card_id: str, db: AsyncSession = Depends(get_db)):
    return Card.model_validate(await fetch_card(db, card_id))


@router.put("/{card_id}", response_model=Card, summary="Replace a Card")
async def replace_card(card_id: str, body: CardCreate, db: AsyncSession = Depends(get_db)):
    card = await fetch_card(db, card_id)
    for name, value in body.model_dump().items():
        setattr(card, name, value)
    await db.commit()
    await db.refresh(card)
    logger.info("Card replaced: id=%s", card_id)
    return Card.model_validate(card)


@router.delete(
    "/{card_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a Card",
)
async def delete_card(card_id: str, db: AsyncSession = Depends(get_db)):
    card = await fetch_card(db, card_id)
    await db.delete(card)
    await db.commit()
    logger.info("Card deleted: id=%s", card_id)


async def fetch_card(db: AsyncSession, card_id: str) -> CardRecord:
    result = await db.execute(select(CardRecord).where(CardRecord.id == card_id))
    card = result.scalar_one_or_none()
    if card is None:
        raise HTTPException(status_code=404, detail=f"Card {card_id} not found.")
    return card

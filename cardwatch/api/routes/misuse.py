"""
CardWatch — Misuse Detection API

POST /api/v1/misuse/detect   → run detection over a supplied payload
GET  /api/v1/misuse/report   → run detection over the stored cards,
                               transactions and rules
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cardwatch.api.routes.rules import load_rules
from cardwatch.models.models import CardRecord, TransactionRecord
from cardwatch.models.schemas import DetectionRequest, DetectionResponse
from cardwatch.services.db import get_db
from cardwatch.services.detector import detect_card_misuse
from cardwatch.services.distance import DistanceProvider, get_distance_provider
from cardwatch.services.errors import DatabaseError

logger = logging.getLogger("cardwatch.api.misuse")
router = APIRouter()


def request_distance_provider(request: Request) -> DistanceProvider:
    """The provider built at startup, or a fresh one from settings."""
    provider = getattr(request.app.state, "distance_provider", None)
    if provider is None:
        provider = get_distance_provider()
        request.app.state.distance_provider = provider
    return provider


# ===========================================================================
# POST  /api/v1/misuse/detect
# ===========================================================================
@router.post(
    "/detect",
    response_model=DetectionResponse,
    summary="Detect Card Misuse",
    description=(
        "Evaluates the supplied rules against each card's transactions and "
        "returns the cards that violate at least one rule, with one reason "
        "per violated rule.  Malformed rules are skipped, not rejected."
    ),
)
async def detect(
    body: DetectionRequest,
    provider: DistanceProvider = Depends(request_distance_provider),
):
    flagged = await detect_card_misuse(
        body.cards, body.transactions, body.rules, distance_provider=provider
    )
    return DetectionResponse(
        flagged_cards=flagged,
        cards_supplied=len(body.cards),
        rules_supplied=len(body.rules),
    )


# ===========================================================================
# GET  /api/v1/misuse/report
# ===========================================================================
@router.get(
    "/report",
    response_model=DetectionResponse,
    summary="Misuse Report for Stored Cards",
)
async def misuse_report(
    db: AsyncSession = Depends(get_db),
    provider: DistanceProvider = Depends(request_distance_provider),
):
    try:
        rules = await load_rules(db)
        cards = list(
            (await db.execute(select(CardRecord).order_by(CardRecord.staff_id.asc(), CardRecord.id.asc())))
            .scalars()
        )
        transactions = list(
            (await db.execute(
                select(TransactionRecord).order_by(
                    TransactionRecord.transaction_datetime.asc(), TransactionRecord.id.asc()
                )
            )).scalars()
        )
    except SQLAlchemyError as exc:
        logger.error("Failed to load misuse report data: %s", exc, exc_info=True)
        raise DatabaseError("Failed to load cards, transactions or rules") from exc

    flagged = await detect_card_misuse(cards, transactions, rules, distance_provider=provider)
    logger.info("Misuse report: %d of %d cards flagged", len(flagged), len(cards))
    return DetectionResponse(
        flagged_cards=flagged,
        cards_supplied=len(cards),
        rules_supplied=len(rules),
    )

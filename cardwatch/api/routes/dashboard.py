"""
CardWatch — Dashboard API
GET  /api/v1/dashboard/summary   → card / transaction KPIs and daily series
"""

import logging
from collections import defaultdict
from datetime import date, timezone
from typing import Dict, List

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cardwatch.models.models import CardRecord, TransactionRecord
from cardwatch.models.schemas import DailyTotal, DashboardSummary
from cardwatch.services.db import get_db

logger = logging.getLogger("cardwatch.api.dashboard")
router = APIRouter()


@router.get(
    "/summary",
    response_model=DashboardSummary,
    summary="Dashboard KPI Summary",
    description=(
        "Returns card and transaction counts, the total amount spent, "
        "transactions per day (count and amount) and new cards issued per day."
    ),
)
async def dashboard_summary(db: AsyncSession = Depends(get_db)):
    # ── cards ──────────────────────────────────────────────────────────────
    total_cards: int = (await db.execute(select(func.count()).select_from(CardRecord))).scalar() or 0
    active_cards: int = (
        await db.execute(
            select(func.count()).select_from(CardRecord).where(CardRecord.active.is_(True))
        )
    ).scalar() or 0

    # ── transactions ───────────────────────────────────────────────────────
    total_transactions: int = (
        await db.execute(select(func.count()).select_from(TransactionRecord))
    ).scalar() or 0
    total_amount = (
        await db.execute(select(func.coalesce(func.sum(TransactionRecord.transaction_amount), 0.0)))
    ).scalar()

    # Bucketed in Python so the same code runs on PostgreSQL and SQLite.
    tx_rows = (
        await db.execute(
            select(TransactionRecord.transaction_datetime, TransactionRecord.transaction_amount)
        )
    ).all()
    tx_counts: Dict[date, int] = defaultdict(int)
    tx_amounts: Dict[date, float] = defaultdict(float)
    for when, amount in tx_rows:
        if when.tzinfo is not None:
            when = when.astimezone(timezone.utc)
        tx_counts[when.date()] += 1
        tx_amounts[when.date()] += amount

    issue_rows = (
        await db.execute(
            select(CardRecord.primary_card_issue_date, func.count(CardRecord.id))
            .where(CardRecord.primary_card_issue_date.is_not(None))
            .group_by(CardRecord.primary_card_issue_date)
        )
    ).all()

    return DashboardSummary(
        total_cards=total_cards,
        active_cards=active_cards,
        total_transactions=total_transactions,
        total_amount=round(float(total_amount or 0.0), 2),
        transactions_per_day=_series(tx_counts, tx_amounts),
        new_cards_per_day=sorted(
            (DailyTotal(day=day, count=count) for day, count in issue_rows),
            key=lambda row: row.day,
        ),
    )


def _series(counts: Dict[date, int], amounts: Dict[date, float]) -> List[DailyTotal]:
    return [
        DailyTotal(day=day, count=counts[day], amount=round(amounts[day], 2))
        for day in sorted(counts)
    ]

"""
CardWatch — Misuse Rules API  (CRUD)
POST   /api/v1/rules            → create a rule
GET    /api/v1/rules            → list all rules in evaluation order
GET    /api/v1/rules/{rule_id}  → single rule
PUT    /api/v1/rules/{rule_id}  → full update
PATCH  /api/v1/rules/{rule_id}  → partial update
DELETE /api/v1/rules/{rule_id}  → delete
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cardwatch.models.models import MisuseRuleRecord
from cardwatch.models.schemas import MisuseRuleCreate, MisuseRuleResponse, MisuseRuleUpdate
from cardwatch.services.db import get_db

logger = logging.getLogger("cardwatch.api.rules")
router = APIRouter()


# ===========================================================================
# POST  /api/v1/rules
# ===========================================================================
@router.post(
    "/",
    status_code=status.HTTP_201_CREATED,
    response_model=MisuseRuleResponse,
    summary="Create a Misuse Rule",
)
async def create_rule(
    body: MisuseRuleCreate,
    db: AsyncSession = Depends(get_db),
):
    rule = MisuseRuleRecord(field=body.field, operator=body.operator, value=body.value)
    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    logger.info("Rule created: id=%s %s %s %s", rule.id, rule.field, rule.operator, rule.value)
    return MisuseRuleResponse.model_validate(rule)


# ===========================================================================
# GET  /api/v1/rules
# ===========================================================================
@router.get(
    "/",
    response_model=list[MisuseRuleResponse],
    summary="List Misuse Rules",
    description="Rules are returned in the order the detector evaluates them.",
)
async def list_rules(db: AsyncSession = Depends(get_db)):
    rules = await load_rules(db)
    return [MisuseRuleResponse.model_validate(r) for r in rules]


# ===========================================================================
# GET  /api/v1/rules/{rule_id}
# ===========================================================================
@router.get(
    "/{rule_id}",
    response_model=MisuseRuleResponse,
    summary="Get a Misuse Rule",
)
async def get_rule(rule_id: str, db: AsyncSession = Depends(get_db)):
    rule = await _fetch_rule(db, rule_id)
    return MisuseRuleResponse.model_validate(rule)


# ===========================================================================
# PUT  /api/v1/rules/{rule_id}  (full replace)
# ===========================================================================
@router.put(
    "/{rule_id}",
    response_model=MisuseRuleResponse,
    summary="Replace a Misuse Rule",
)
async def replace_rule(
    rule_id: str,
    body: MisuseRuleCreate,
    db: AsyncSession = Depends(get_db),
):
    rule = await _fetch_rule(db, rule_id)
    rule.field = body.field
    rule.operator = body.operator
    rule.value = body.value
    await db.commit()
    await db.refresh(rule)
    logger.info("Rule replaced: id=%s", rule_id)
    return MisuseRuleResponse.model_validate(rule)


# ===========================================================================
# PATCH /api/v1/rules/{rule_id}  (partial update)
# ===========================================================================
@router.patch(
    "/{rule_id}",
    response_model=MisuseRuleResponse,
    summary="Partial-Update a Misuse Rule",
)
async def patch_rule(
    rule_id: str,
    body: MisuseRuleUpdate,
    db: AsyncSession = Depends(get_db),
):
    rule = await _fetch_rule(db, rule_id)

    if body.field is not None:
        rule.field = body.field
    if body.operator is not None:
        rule.operator = body.operator
    if body.value is not None:
        rule.value = body.value

    await db.commit()
    await db.refresh(rule)
    logger.info("Rule patched: id=%s %s %s %s", rule_id, rule.field, rule.operator, rule.value)
    return MisuseRuleResponse.model_validate(rule)


# ===========================================================================
# DELETE /api/v1/rules/{rule_id}
# ===========================================================================
@router.delete(
    "/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a Misuse Rule",
)
async def delete_rule(rule_id: str, db: AsyncSession = Depends(get_db)):
    rule = await _fetch_rule(db, rule_id)
    await db.delete(rule)
    await db.commit()
    logger.info("Rule deleted: id=%s", rule_id)


# ===========================================================================
# Helpers
# ===========================================================================
async def load_rules(db: AsyncSession) -> list[MisuseRuleRecord]:
    """All stored rules, oldest first (the detector's evaluation order)."""
    stmt = select(MisuseRuleRecord).order_by(
        MisuseRuleRecord.created_at.asc(), MisuseRuleRecord.id.asc()
    )
    result = await db.execute(stmt)
    return list(result.scalars())


async def _fetch_rule(db: AsyncSession, rule_id: str) -> MisuseRuleRecord:
    result = await db.execute(select(MisuseRuleRecord).where(MisuseRuleRecord.id == rule_id))
    rule = result.scalar_one_or_none()
    if rule is None:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found.")
    return rule

"""
CardWatch — Seed Data Script
Inserts the default misuse rules defined in cardwatch/rules/default_rules.py
if the misuse_rules table is empty.

Usage (run once after the database is reachable):
    python -m cardwatch.seed
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from cardwatch.models.models import MisuseRuleRecord
from cardwatch.models.schemas import MisuseRule
from cardwatch.rules.default_rules import DEFAULT_RULES
from cardwatch.rules.engine import compile_rule
from cardwatch.services.db import AsyncSessionLocal, init_db
from cardwatch.services.errors import RuleConfigurationError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cardwatch.seed")


async def seed():
    await init_db()                                    # ensure tables exist

    async with AsyncSessionLocal() as db:
        count_result = await db.execute(
            select(func.count()).select_from(MisuseRuleRecord)
        )
        existing: int = count_result.scalar()  # type: ignore[assignment]

        if existing > 0:
            logger.info("misuse_rules already has %d rows — skipping seed.", existing)
            return

        for rule_data in DEFAULT_RULES:
            if compile_rule(MisuseRule(**rule_data)) is None:
                raise RuleConfigurationError(f"Default rule is malformed: {rule_data}")

        logger.info("Inserting %d default misuse rules …", len(DEFAULT_RULES))
        # Stagger created_at so evaluation order matches DEFAULT_RULES order.
        base = datetime.now(timezone.utc)
        for offset, rule_data in enumerate(DEFAULT_RULES):
            db.add(MisuseRuleRecord(created_at=base + timedelta(microseconds=offset), **rule_data))

        await db.commit()
        logger.info("Seed complete — %d rules inserted.", len(DEFAULT_RULES))


if __name__ == "__main__":
    asyncio.run(seed())

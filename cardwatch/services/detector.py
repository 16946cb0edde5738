"""
CardWatch — Misuse Detection Orchestrator

    cards + transactions + rules
        → index transactions by card
        → evaluate every rule per card   (concurrently across cards)
        → flagged cards, in input card order

The pass is a pure function of its inputs: nothing here reads storage or
the wall clock, and evaluators only compare transaction timestamps with
each other.
"""

import asyncio
import logging
import time
from typing import Any, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError

from cardwatch.config import settings
from cardwatch.models.schemas import Card, FlaggedCard, MisuseRule, Transaction
from cardwatch.rules.engine import EvaluationContext, compile_rules, evaluate_rules
from cardwatch.services.distance import DistanceProvider, StaticDistanceProvider
from cardwatch.services.errors import InvalidDetectionInputError
from cardwatch.services.indexer import index_transactions
from cardwatch.services.observability import Metrics, log_detection_completed

logger = logging.getLogger("cardwatch.detector")

ModelT = TypeVar("ModelT", bound=BaseModel)


# ===========================================================================
# Input validation
# ===========================================================================
def _coerce_records(name: str, items: Any, model: Type[ModelT]) -> List[ModelT]:
    """
    Turn a caller-supplied list into validated records.

    Accepts model instances, mappings, or ORM rows.  Anything that is not a
    list (or tuple) of those fails the whole call up front.
    """
    if not isinstance(items, (list, tuple)):
        raise InvalidDetectionInputError(
            f"{name} must be a list, got {type(items).__name__}"
        )

    records: List[ModelT] = []
    for position, item in enumerate(items):
        if isinstance(item, model):
            records.append(item)
            continue
        try:
            if isinstance(item, dict):
                records.append(model.model_validate(item))
            else:
                records.append(model.model_validate(item, from_attributes=True))
        except ValidationError as exc:
            raise InvalidDetectionInputError(f"{name}[{position}] is invalid: {exc}") from exc
    return records


# ===========================================================================
# Public entry-point
# ===========================================================================
async def detect_card_misuse(
    cards: Sequence[Any],
    transactions: Sequence[Any],
    rules: Optional[Sequence[Any]],
    distance_provider: Optional[DistanceProvider] = None,
    timeout: Optional[float] = None,
    max_concurrency: Optional[int] = None,
) -> List[FlaggedCard]:
    """
    Run one misuse-detection pass.

    Parameters
    ----------
    cards             : card records; cards without an ``id`` are skipped
    transactions      : transaction records for any cards
    rules             : misuse rules; empty or None → nothing is flagged
    distance_provider : resolves store-to-store distances (static table by default)
    timeout           : seconds for the whole pass; cards still running when it
                        expires are left out of the result
    max_concurrency   : cards evaluated at once

    Returns
    -------
    flagged cards in the order the cards were given, each with one reason per
    violated rule.
    """
    if not rules:
        logger.debug("No misuse rules supplied — nothing to flag.")
        Metrics.detection_runs_total.labels(outcome="empty").inc()
        return []

    rule_list = _coerce_records("rules", rules, MisuseRule)
    card_list = _coerce_records("cards", cards, Card)
    tx_list = _coerce_records("transactions", transactions, Transaction)

    start = time.perf_counter()
    compiled = compile_rules(rule_list)
    if not compiled:
        logger.warning("All %d misuse rules are malformed — nothing to evaluate.", len(rule_list))
        Metrics.detection_runs_total.labels(outcome="empty").inc()
        return []

    by_card = index_transactions(tx_list)
    context = EvaluationContext(distance_provider=distance_provider or StaticDistanceProvider())
    limit = max_concurrency or settings.DETECTION_MAX_CONCURRENCY
    semaphore = asyncio.Semaphore(max(1, limit))
    if timeout is None:
        timeout = settings.DETECTION_TIMEOUT_SECONDS

    async def _evaluate_card(card: Card, card_transactions: List[Transaction]) -> Optional[FlaggedCard]:
        async with semaphore:
            reasons = await evaluate_rules(card, card_transactions, compiled, context)
        if not reasons:
            return None
        logger.info("Card flagged: card=%s reasons=%d", card.id, len(reasons))
        return FlaggedCard(
            **card.model_dump(),
            transactions=card_transactions,
            reasons=reasons,
        )

    tasks = []
    for card in card_list:
        if not card.id:
            logger.debug("Skipping card without id: %s", card.primary_cardholder_name)
            continue
        card_transactions = by_card.get(card.id)
        if not card_transactions:
            continue
        tasks.append(asyncio.create_task(_evaluate_card(card, card_transactions)))

    partial = False
    try:
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                partial = True
                logger.warning(
                    "Detection deadline of %.2fs reached — %d of %d cards not evaluated.",
                    timeout, len(pending), len(tasks),
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()

    flagged = [
        result
        for result in (task.result() for task in tasks if not task.cancelled())
        if result is not None
    ]

    log_detection_completed(
        cards_evaluated=len(tasks),
        cards_flagged=len(flagged),
        rule_count=len(compiled),
        duration_ms=(time.perf_counter() - start) * 1000,
        partial=partial,
    )
    return flagged

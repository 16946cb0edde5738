"""
CardWatch — Misuse Rules Engine
Evaluates misuse rules against one card's transaction history.

A rule is ``{field, operator, value}``.  ``field`` selects an evaluator from
EVALUATORS, ``operator`` selects a comparison from OPERATORS, and ``value``
is the numeric threshold, stored as text.  Adding a new rule field only
requires registering an evaluator.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from cardwatch.config import settings
from cardwatch.models.schemas import Card, MisuseRule, Transaction
from cardwatch.services.distance import DistanceProvider, StaticDistanceProvider
from cardwatch.services.observability import Metrics

logger = logging.getLogger("cardwatch.rules")


# ===========================================================================
# Operator registry
# Each operator receives (observed_value, threshold) and returns bool.
# ===========================================================================

def _op_lt(value: float, threshold: float) -> bool:
    return value < threshold


def _op_lte(value: float, threshold: float) -> bool:
    return value <= threshold


def _op_gt(value: float, threshold: float) -> bool:
    return value > threshold


def _op_gte(value: float, threshold: float) -> bool:
    return value >= threshold


def _op_eq(value: float, threshold: float) -> bool:
    """Equality, tolerant of float rounding (e.g. 100 * 1 / 3)."""
    return math.isclose(value, threshold, rel_tol=1e-9, abs_tol=1e-9)


OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<":  _op_lt,
    "<=": _op_lte,
    ">":  _op_gt,
    ">=": _op_gte,
    "=":  _op_eq,
}


# ===========================================================================
# Evaluation context
# ===========================================================================
@dataclass
class EvaluationContext:
    """Collaborators and tunables shared by every evaluator in one pass."""
    distance_provider: DistanceProvider = field(default_factory=StaticDistanceProvider)
    count_window: timedelta = field(
        default_factory=lambda: timedelta(hours=settings.COUNT_WINDOW_HOURS)
    )
    travel_window: timedelta = field(
        default_factory=lambda: timedelta(hours=settings.TRAVEL_WINDOW_HOURS)
    )
    lookup_timeout: Optional[float] = field(
        default_factory=lambda: settings.DISTANCE_LOOKUP_TIMEOUT_SECONDS
    )


@dataclass(frozen=True)
class CompiledRule:
    """A rule whose operator and threshold have been checked and parsed."""
    rule: MisuseRule
    threshold: float
    compare: Callable[[float, float], bool]
    evaluator: "Evaluator"

    @property
    def condition(self) -> str:
        return f"{self.rule.operator} {self.rule.value.strip()}"


Evaluator = Callable[
    [Card, Sequence[Transaction], CompiledRule, EvaluationContext],
    Awaitable[Optional[str]],
]


# ===========================================================================
# Evaluators: each returns a reason string, or None for "no violation"
# ===========================================================================

def _names_on_card(card: Card) -> set:
    names = {card.primary_cardholder_name.strip()}
    if card.cardholder_name_2 and card.cardholder_name_2.strip():
        names.add(card.cardholder_name_2.strip())
    return names


async def _evaluate_payer_mismatch(
    card: Card,
    transactions: Sequence[Transaction],
    compiled: CompiledRule,
    context: EvaluationContext,
) -> Optional[str]:
    """Share (%) of transactions paid by someone other than the cardholders."""
    names = _names_on_card(card)
    total = len(transactions)
    mismatches = sum(1 for tx in transactions if tx.payer_name.strip() not in names)
    ratio = 100.0 * mismatches / total

    if not compiled.compare(ratio, compiled.threshold):
        return None
    return (
        f"Payer mismatch of {ratio:.1f}% ({mismatches} of {total} transactions) "
        f"violates payer mismatch rule ({compiled.condition}%)"
    )


async def _evaluate_transaction_amount(
    card: Card,
    transactions: Sequence[Transaction],
    compiled: CompiledRule,
    context: EvaluationContext,
) -> Optional[str]:
    """Fires if any single transaction amount meets the condition."""
    offending = [
        tx for tx in transactions
        if compiled.compare(tx.transaction_amount, compiled.threshold)
    ]
    if not offending:
        return None
    return (
        f"{len(offending)} of {len(transactions)} transactions "
        f"(first: {offending[0].transaction_amount:.2f}) "
        f"violates transaction amount rule ({compiled.condition})"
    )


async def _evaluate_transaction_count(
    card: Card,
    transactions: Sequence[Transaction],
    compiled: CompiledRule,
    context: EvaluationContext,
) -> Optional[str]:
    """
    Largest number of transactions inside any rolling window.

    Windows are anchored at each transaction and reach back
    ``context.count_window`` (closed interval), so the count for a
    transaction includes itself.
    """
    times = sorted(tx.transaction_datetime for tx in transactions)

    best_count = 0
    best_end = times[0]
    left = 0
    for right, end in enumerate(times):
        while end - times[left] > context.count_window:
            left += 1
        count = right - left + 1
        if count > best_count:
            best_count, best_end = count, end

    if not compiled.compare(best_count, compiled.threshold):
        return None
    hours = context.count_window.total_seconds() / 3600
    return (
        f"{best_count} transactions within {hours:g} hours "
        f"(window ending {best_end.isoformat()}) "
        f"violates transaction count rule ({compiled.condition})"
    )


async def _lookup_distance(
    context: EvaluationContext,
    store_a: str,
    store_b: str,
) -> Optional[float]:
    """Ask the provider; any failure or timeout counts as "unknown"."""
    try:
        distance = await asyncio.wait_for(
            context.distance_provider.get_distance(store_a, store_b),
            timeout=context.lookup_timeout,
        )
        if distance is not None:
            if isinstance(distance, bool) or not isinstance(distance, (int, float)):
                raise TypeError(f"provider returned {type(distance).__name__}, not a number")
            distance = float(distance)
    except asyncio.TimeoutError:
        logger.warning("Distance lookup timed out: %r → %r", store_a, store_b)
        Metrics.distance_lookups_total.labels(outcome="timeout").inc()
        return None
    except Exception as exc:
        logger.warning("Distance lookup failed: %r → %r: %s", store_a, store_b, exc)
        Metrics.distance_lookups_total.labels(outcome="error").inc()
        return None

    if distance is None or not math.isfinite(distance) or distance < 0:
        logger.debug("Distance unknown: %r → %r", store_a, store_b)
        Metrics.distance_lookups_total.labels(outcome="unknown").inc()
        return None

    Metrics.distance_lookups_total.labels(outcome="ok").inc()
    return float(distance)


async def _evaluate_stores_distance(
    card: Card,
    transactions: Sequence[Transaction],
    compiled: CompiledRule,
    context: EvaluationContext,
) -> Optional[str]:
    """
    Impossible travel between consecutive transactions.

    Only pairs no more than ``context.travel_window`` apart are checked.  A
    pair at the same instant in two different places always fires.
    """
    if len(transactions) < 2:
        return None

    ordered = sorted(transactions, key=lambda tx: tx.transaction_datetime)
    for prev, curr in zip(ordered, ordered[1:]):
        elapsed = curr.transaction_datetime - prev.transaction_datetime
        if elapsed > context.travel_window:
            continue

        distance = await _lookup_distance(context, prev.transaction_store, curr.transaction_store)
        if distance is None:
            continue

        hours = elapsed.total_seconds() / 3600
        if hours <= 0:
            fired = distance > 0
            speed = "instantaneous"
        else:
            fired = compiled.compare(distance, compiled.threshold)
            speed = f"{distance / hours:.0f} km/h"

        logger.debug(
            "card=%s pair %s→%s distance=%.1f km elapsed=%.2f h fired=%s",
            card.id, prev.id, curr.id, distance, hours, fired,
        )
        if fired:
            return (
                f"Travel of {distance:.0f} km between '{prev.transaction_store}' "
                f"({prev.transaction_datetime.isoformat()}) and "
                f"'{curr.transaction_store}' ({curr.transaction_datetime.isoformat()}) "
                f"in {hours:.1f} hours ({speed}) "
                f"violates store distance rule ({compiled.condition} km)"
            )
    return None


EVALUATORS: Dict[str, Evaluator] = {
    "payer_mismatch":     _evaluate_payer_mismatch,
    "transaction_amount": _evaluate_transaction_amount,
    "transaction_count":  _evaluate_transaction_count,
    "stores_distance":    _evaluate_stores_distance,
}


# ===========================================================================
# Rule compilation
# ===========================================================================

def parse_threshold(value: str) -> Optional[float]:
    """Parse a rule value; None unless it is a finite number."""
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def compile_rule(rule: MisuseRule) -> Optional[CompiledRule]:
    """Validate one rule.  Malformed rules are logged and return None."""
    evaluator = EVALUATORS.get(rule.field)
    if evaluator is None:
        logger.warning("Unknown rule field '%s' (rule=%s) — rule skipped.", rule.field, rule.id)
        Metrics.rules_skipped_total.labels(reason="unknown_field").inc()
        return None

    compare = OPERATORS.get(rule.operator.strip())
    if compare is None:
        logger.warning("Unknown operator '%s' (rule=%s) — rule skipped.", rule.operator, rule.id)
        Metrics.rules_skipped_total.labels(reason="bad_operator").inc()
        return None

    threshold = parse_threshold(rule.value)
    if threshold is None:
        logger.warning("Non-numeric value '%s' (rule=%s) — rule skipped.", rule.value, rule.id)
        Metrics.rules_skipped_total.labels(reason="bad_value").inc()
        return None

    return CompiledRule(rule=rule, threshold=threshold, compare=compare, evaluator=evaluator)


def compile_rules(rules: Sequence[MisuseRule]) -> List[CompiledRule]:
    """Compile rules in order, dropping the malformed ones."""
    compiled = []
    for rule in rules:
        result = compile_rule(rule)
        if result is not None:
            compiled.append(result)
    return compiled


# ===========================================================================
# Public API
# ===========================================================================

async def evaluate_rules(
    card: Card,
    transactions: Sequence[Transaction],
    rules: Sequence[CompiledRule],
    context: EvaluationContext,
) -> List[str]:
    """
    Evaluate every compiled rule against one card's transactions.

    Returns the violation reasons in rule order, at most one per rule.  An
    empty transaction slice never produces a reason.
    """
    if not transactions:
        return []

    reasons: List[str] = []
    for compiled in rules:
        reason = await compiled.evaluator(card, transactions, compiled, context)
        if reason:
            reasons.append(reason)
            Metrics.rule_violations_total.labels(field=compiled.rule.field).inc()
            logger.debug("Rule '%s' fired for card=%s", compiled.rule.field, card.id)
    return reasons

"""
CardWatch — Detection Engine Test Suite
Run:  pytest tests/ -v --tb=short
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from cardwatch.config import settings
from cardwatch.models.schemas import Card, MisuseRule, Transaction
from cardwatch.rules.default_rules import DEFAULT_RULES
from cardwatch.rules.engine import (
    EVALUATORS,
    OPERATORS,
    compile_rule,
    compile_rules,
    parse_threshold,
)
from cardwatch.services.detector import detect_card_misuse
from cardwatch.services.distance import HttpDistanceProvider, StaticDistanceProvider
from cardwatch.services.errors import DistanceLookupError, InvalidDetectionInputError
from cardwatch.services.indexer import index_transactions

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


# ===========================================================================
# Helpers
# ===========================================================================
def _make_card(card_id="card-1", name="Card User", **kwargs) -> Card:
    defaults = dict(
        id=card_id,
        staff_id=f"staff-{card_id}",
        company_name="Test Inc.",
        primary_cardholder_name=name,
        primary_card_number=f"635666{card_id}",
        active=True,
    )
    defaults.update(kwargs)
    return Card(**defaults)


_tx_counter = 0


def _make_tx(card, amount=10.0, payer=None, when=None, store="B&Q Test", **kwargs) -> Transaction:
    global _tx_counter
    _tx_counter += 1
    defaults = dict(
        id=f"txn-{_tx_counter}",
        card_record_id=card.id,
        card_number=card.primary_card_number,
        transaction_datetime=when or BASE_TIME,
        transaction_store=store,
        transaction_amount=amount,
        transaction_discount=amount * 0.1,
        payer_name=payer if payer is not None else card.primary_cardholder_name,
    )
    defaults.update(kwargs)
    return Transaction(**defaults)


def _rule(field, operator, value, rule_id=None) -> MisuseRule:
    return MisuseRule(id=rule_id, field=field, operator=operator, value=value)


class _FailingProvider:
    async def get_distance(self, location_a, location_b):
        raise DistanceLookupError("service down")


class _TextProvider:
    """Answers with the wrong type, as a misbehaving service client might."""

    def __init__(self, answer):
        self.answer = answer

    async def get_distance(self, location_a, location_b):
        return self.answer


class _SlowProvider:
    async def get_distance(self, location_a, location_b):
        await asyncio.sleep(10)
        return 5000.0


# ===========================================================================
# ── Unit: Operators & rule compilation ─────────────────────────────────────
# ===========================================================================

class TestOperators:
    def test_comparisons(self):
        assert OPERATORS["<"](1, 2)
        assert OPERATORS["<="](2, 2)
        assert OPERATORS[">"](3, 2)
        assert OPERATORS[">="](2, 2)
        assert not OPERATORS[">"](2, 2)

    def test_equality_tolerates_float_rounding(self):
        assert OPERATORS["="](0.1 + 0.2, 0.3)
        assert not OPERATORS["="](50.0, 50.1)


class TestRuleCompilation:
    def test_parse_threshold(self):
        assert parse_threshold("50") == 50.0
        assert parse_threshold(" 12.5 ") == 12.5
        assert parse_threshold("abc") is None
        assert parse_threshold("inf") is None
        assert parse_threshold("nan") is None
        assert parse_threshold("") is None

    def test_valid_rule_compiles(self):
        compiled = compile_rule(_rule("transaction_amount", ">", "50"))
        assert compiled is not None
        assert compiled.threshold == 50.0
        assert compiled.condition == "> 50"

    @pytest.mark.parametrize(
        "field,operator,value",
        [
            ("unknown_field", ">", "1"),
            ("transaction_amount", "!=", "1"),
            ("transaction_amount", ">", "lots"),
        ],
    )
    def test_malformed_rule_skipped(self, field, operator, value):
        assert compile_rule(_rule(field, operator, value)) is None

    def test_compile_rules_keeps_order(self):
        compiled = compile_rules([
            _rule("transaction_count", ">", "3"),
            _rule("bogus", ">", "3"),
            _rule("payer_mismatch", ">", "50"),
        ])
        assert [c.rule.field for c in compiled] == ["transaction_count", "payer_mismatch"]

    def test_numeric_rule_value_coerced_to_text(self):
        assert _rule("transaction_amount", ">", 50).value == "50"


class TestSettings:
    def test_environment_helper(self, monkeypatch):
        monkeypatch.setattr(settings, "APP_ENV", "Production")
        assert settings.is_production()
        monkeypatch.setattr(settings, "APP_ENV", "development")
        assert not settings.is_production()
        assert not hasattr(settings, "is_development")


class TestDefaultRules:
    def test_all_default_rules_are_valid(self):
        for rule_data in DEFAULT_RULES:
            assert rule_data["field"] in EVALUATORS
            assert compile_rule(MisuseRule(**rule_data)) is not None


# ===========================================================================
# ── Unit: Transaction indexer ───────────────────────────────────────────────
# ===========================================================================

class TestIndexer:
    def test_groups_by_card_in_arrival_order(self):
        a, b = _make_card("a"), _make_card("b")
        t1 = _make_tx(a, when=BASE_TIME)
        t2 = _make_tx(b)
        t3 = _make_tx(a, when=BASE_TIME - timedelta(hours=5))
        index = index_transactions([t1, t2, t3])
        assert [t.id for t in index["a"]] == [t1.id, t3.id]
        assert [t.id for t in index["b"]] == [t2.id]

    def test_transactions_without_card_dropped(self):
        a = _make_card("a")
        orphan = _make_tx(a, card_record_id="")
        assert index_transactions([orphan]) == {}


# ===========================================================================
# ── Unit: Distance providers ────────────────────────────────────────────────
# ===========================================================================

@pytest.mark.asyncio
class TestStaticDistanceProvider:
    async def test_known_pair_is_symmetric(self):
        provider = StaticDistanceProvider()
        assert await provider.get_distance("B&Q London", "B&Q New York") == 5567
        assert await provider.get_distance("B&Q New York", "B&Q London") == 5567

    async def test_same_place_is_zero(self):
        provider = StaticDistanceProvider()
        assert await provider.get_distance("B&Q London", "Tesco London") == 0.0

    async def test_unknown_pair_is_none(self):
        provider = StaticDistanceProvider()
        assert await provider.get_distance("B&Q London", "B&Q Atlantis") is None

    async def test_custom_table(self):
        provider = StaticDistanceProvider({"leeds": {"york": 40}})
        assert await provider.get_distance("Shop York", "Shop Leeds") == 40


@pytest.mark.asyncio
class TestHttpDistanceProvider:
    @staticmethod
    def _provider(handler):
        return HttpDistanceProvider(
            base_url="http://distance.test/distance",
            transport=httpx.MockTransport(handler),
        )

    async def test_returns_distance(self):
        def handler(request):
            assert request.url.params["origin"] == "B&Q London"
            assert request.url.params["destination"] == "B&Q Paris"
            return httpx.Response(200, json={"distance_km": 344})

        assert await self._provider(handler).get_distance("B&Q London", "B&Q Paris") == 344.0

    async def test_not_found_is_unknown(self):
        provider = self._provider(lambda request: httpx.Response(404))
        assert await provider.get_distance("a", "b") is None

    async def test_null_distance_is_unknown(self):
        provider = self._provider(lambda request: httpx.Response(200, json={"distance_km": None}))
        assert await provider.get_distance("a", "b") is None

    async def test_client_reused_across_lookups(self):
        provider = self._provider(lambda request: httpx.Response(200, json={"distance_km": 344}))
        await provider.get_distance("B&Q London", "B&Q Paris")
        first = provider.client
        await provider.get_distance("B&Q Paris", "B&Q London")
        assert provider.client is first

        await provider.aclose()
        assert first.is_closed

    async def test_server_error_raises(self):
        provider = self._provider(lambda request: httpx.Response(500))
        with pytest.raises(DistanceLookupError):
            await provider.get_distance("a", "b")


# ===========================================================================
# ── Detector: orchestration ─────────────────────────────────────────────────
# ===========================================================================

@pytest.mark.asyncio
class TestDetectorOrchestration:
    async def test_empty_rules_flag_nothing(self):
        card = _make_card()
        txs = [_make_tx(card, amount=999)]
        assert await detect_card_misuse([card], txs, []) == []
        assert await detect_card_misuse([card], txs, None) == []

    async def test_card_without_transactions_never_flagged(self):
        card = _make_card()
        other = _make_card("other")
        rules = [_rule("transaction_count", ">=", "0")]
        result = await detect_card_misuse([card, other], [_make_tx(other)], rules)
        assert [c.id for c in result] == ["other"]

    async def test_card_without_id_skipped(self):
        card = _make_card(card_id=None)
        tx = _make_tx(_make_card("ghost"), amount=500, card_record_id="ghost")
        rules = [_rule("transaction_amount", ">", "50")]
        assert await detect_card_misuse([card], [tx], rules) == []

    async def test_transactions_for_unlisted_cards_ignored(self):
        listed = _make_card("listed")
        unlisted = _make_card("unlisted")
        rules = [_rule("transaction_amount", ">", "50")]
        result = await detect_card_misuse([listed], [_make_tx(unlisted, amount=500)], rules)
        assert result == []

    async def test_output_preserves_card_order(self):
        cards = [_make_card(f"c{i}") for i in range(5)]
        txs = [_make_tx(card, amount=100) for card in reversed(cards)]
        rules = [_rule("transaction_amount", ">", "50")]
        result = await detect_card_misuse(cards, txs, rules, max_concurrency=2)
        assert [c.id for c in result] == ["c0", "c1", "c2", "c3", "c4"]

    async def test_flagged_card_carries_transactions(self):
        card = _make_card()
        txs = [_make_tx(card, amount=75), _make_tx(card, amount=25)]
        result = await detect_card_misuse([card], txs, [_rule("transaction_amount", ">", "50")])
        assert [t.id for t in result[0].transactions] == [t.id for t in txs]
        assert result[0].primary_cardholder_name == "Card User"

    async def test_deterministic(self):
        card = _make_card(name="Payer User")
        txs = [
            _make_tx(card, amount=99, store="B&Q London", when=BASE_TIME),
            _make_tx(card, payer="Sam", store="B&Q New York", when=BASE_TIME + timedelta(hours=1)),
        ]
        rules = [
            _rule("transaction_amount", ">", "50"),
            _rule("payer_mismatch", ">", "40"),
            _rule("stores_distance", ">", "100"),
        ]
        first = await detect_card_misuse([card], txs, rules)
        second = await detect_card_misuse([card], txs, rules)
        assert [c.model_dump() for c in first] == [c.model_dump() for c in second]

    async def test_multiple_violations_one_reason_per_rule(self):
        card = _make_card("multi-1", "Multi User")
        txs = [
            _make_tx(card, amount=99),
            _make_tx(card, amount=80, payer="Suspicious Sam"),
            _make_tx(card, amount=70, payer="Suspicious Sam"),
        ]
        rules = [
            _rule("transaction_amount", ">", "50"),
            _rule("payer_mismatch", ">", "40"),
        ]
        result = await detect_card_misuse([card], txs, rules)
        assert len(result) == 1
        reasons = result[0].reasons
        assert len(reasons) == 2
        assert "transaction amount" in reasons[0]
        assert "payer mismatch" in reasons[1]

    async def test_malformed_rules_do_not_abort(self):
        card = _make_card()
        rules = [
            _rule("transaction_amount", ">", "not-a-number"),
            _rule("mystery_field", ">", "1"),
            _rule("transaction_amount", "~", "1"),
            _rule("transaction_amount", ">", "50"),
        ]
        result = await detect_card_misuse([card], [_make_tx(card, amount=75)], rules)
        assert len(result) == 1
        assert len(result[0].reasons) == 1

    async def test_only_malformed_rules_flag_nothing(self):
        card = _make_card()
        rules = [_rule("transaction_amount", ">", "abc")]
        assert await detect_card_misuse([card], [_make_tx(card, amount=75)], rules) == []

    async def test_accepts_plain_mappings(self):
        card = _make_card()
        tx = _make_tx(card, amount=75)
        result = await detect_card_misuse(
            [card.model_dump()],
            [tx.model_dump()],
            [{"id": "1", "field": "transaction_amount", "operator": ">", "value": 50}],
        )
        assert [c.id for c in result] == [card.id]

    async def test_non_list_input_rejected(self):
        card = _make_card()
        with pytest.raises(InvalidDetectionInputError):
            await detect_card_misuse([card], "not-a-list", [_rule("transaction_amount", ">", "1")])

    async def test_invalid_record_rejected(self):
        card = _make_card()
        with pytest.raises(InvalidDetectionInputError):
            await detect_card_misuse(
                [card],
                [{"id": "t1", "card_record_id": card.id}],
                [_rule("transaction_amount", ">", "1")],
            )

    async def test_deadline_omits_unfinished_cards(self):
        fast = _make_card("fast")
        slow = _make_card("slow")
        txs = [
            _make_tx(fast, amount=75),
            _make_tx(slow, amount=75, store="B&Q London", when=BASE_TIME),
            _make_tx(slow, amount=75, store="B&Q Paris", when=BASE_TIME + timedelta(hours=1)),
        ]
        rules = [
            _rule("transaction_amount", ">", "50"),
            _rule("stores_distance", ">", "100"),
        ]
        result = await detect_card_misuse(
            [fast, slow], txs, rules, distance_provider=_SlowProvider(), timeout=0.2
        )
        assert [c.id for c in result] == ["fast"]


# ===========================================================================
# ── Detector: rule semantics ────────────────────────────────────────────────
# ===========================================================================

@pytest.mark.asyncio
class TestTransactionAmountRule:
    async def test_single_violation_flags(self):
        card = _make_card("amount-1", "Amount User")
        txs = [_make_tx(card, amount=75), _make_tx(card, amount=25)]
        result = await detect_card_misuse([card], txs, [_rule("transaction_amount", ">", "50")])
        assert len(result) == 1
        assert "violates transaction amount rule" in result[0].reasons[0]
        assert "> 50" in result[0].reasons[0]

    async def test_no_violation(self):
        card = _make_card("clean-1", "Clean User")
        result = await detect_card_misuse(
            [card], [_make_tx(card, amount=25)], [_rule("transaction_amount", ">", "50")]
        )
        assert result == []

    async def test_less_than_operator(self):
        card = _make_card()
        result = await detect_card_misuse(
            [card], [_make_tx(card, amount=0)], [_rule("transaction_amount", "<=", "0")]
        )
        assert len(result) == 1


@pytest.mark.asyncio
class TestTransactionCountRule:
    @staticmethod
    def _history(card):
        return [
            _make_tx(card, when=BASE_TIME - timedelta(hours=1)),
            _make_tx(card, when=BASE_TIME - timedelta(hours=2)),
            _make_tx(card, when=BASE_TIME - timedelta(hours=3)),
            _make_tx(card, when=BASE_TIME - timedelta(hours=4)),
            _make_tx(card, when=BASE_TIME - timedelta(hours=48)),
        ]

    async def test_rolling_window_flags(self):
        card = _make_card("count-1", "Count User")
        result = await detect_card_misuse(
            [card], self._history(card), [_rule("transaction_count", ">", "3")]
        )
        assert len(result) == 1
        assert "violates transaction count rule" in result[0].reasons[0]
        assert result[0].reasons[0].startswith("4 transactions")

    async def test_old_transaction_outside_window(self):
        card = _make_card("count-2")
        result = await detect_card_misuse(
            [card], self._history(card), [_rule("transaction_count", ">", "4")]
        )
        assert result == []

    async def test_window_is_closed_at_24_hours(self):
        card = _make_card()
        txs = [
            _make_tx(card, when=BASE_TIME),
            _make_tx(card, when=BASE_TIME + timedelta(hours=24)),
        ]
        result = await detect_card_misuse([card], txs, [_rule("transaction_count", ">=", "2")])
        assert len(result) == 1

    async def test_window_not_calendar_day(self):
        card = _make_card()
        # 23:00 and 01:00 fall on different calendar days but inside one window
        txs = [
            _make_tx(card, when=datetime(2024, 5, 1, 23, 0, tzinfo=timezone.utc)),
            _make_tx(card, when=datetime(2024, 5, 2, 1, 0, tzinfo=timezone.utc)),
        ]
        result = await detect_card_misuse([card], txs, [_rule("transaction_count", ">=", "2")])
        assert len(result) == 1

    async def test_single_transaction_counts_as_one(self):
        card = _make_card()
        result = await detect_card_misuse(
            [card], [_make_tx(card)], [_rule("transaction_count", "=", "1")]
        )
        assert len(result) == 1

    async def test_naive_and_aware_timestamps_mix(self):
        card = _make_card()
        txs = [
            _make_tx(card, when=datetime(2024, 5, 1, 10, 0)),
            _make_tx(card, when=datetime(2024, 5, 1, 11, 0, tzinfo=timezone.utc)),
        ]
        result = await detect_card_misuse([card], txs, [_rule("transaction_count", ">", "1")])
        assert len(result) == 1


@pytest.mark.asyncio
class TestPayerMismatchRule:
    @staticmethod
    def _history(card):
        return [
            _make_tx(card, payer="Fraudulent Frank"),
            _make_tx(card, payer="Malicious Mallory"),
            _make_tx(card, payer="Payer User"),
        ]

    async def test_ratio_above_threshold_flags(self):
        card = _make_card("payer-1", "Payer User")
        result = await detect_card_misuse(
            [card], self._history(card), [_rule("payer_mismatch", ">", "50")]
        )
        assert len(result) == 1
        assert "66.7%" in result[0].reasons[0]
        assert "violates payer mismatch rule" in result[0].reasons[0]

    async def test_ratio_below_threshold(self):
        card = _make_card("payer-2", "Payer User")
        result = await detect_card_misuse(
            [card], self._history(card), [_rule("payer_mismatch", ">", "70")]
        )
        assert result == []

    async def test_secondary_cardholder_matches(self):
        card = _make_card(name="Primary Person", cardholder_name_2="Second Person")
        txs = [_make_tx(card, payer="Second Person"), _make_tx(card, payer="Primary Person")]
        result = await detect_card_misuse([card], txs, [_rule("payer_mismatch", ">", "0")])
        assert result == []

    async def test_whitespace_trimmed_but_case_sensitive(self):
        card = _make_card(name="Payer User")
        txs = [_make_tx(card, payer="  Payer User "), _make_tx(card, payer="payer user")]
        result = await detect_card_misuse([card], txs, [_rule("payer_mismatch", "=", "50")])
        assert len(result) == 1
        assert "50.0%" in result[0].reasons[0]


@pytest.mark.asyncio
class TestStoresDistanceRule:
    async def test_impossible_travel_flags(self):
        card = _make_card("geo-1", "Geo User")
        txs = [
            _make_tx(card, store="B&Q London", when=BASE_TIME),
            _make_tx(card, store="B&Q New York", when=BASE_TIME + timedelta(hours=1)),
        ]
        result = await detect_card_misuse([card], txs, [_rule("stores_distance", ">", "100")])
        assert len(result) == 1
        reason = result[0].reasons[0]
        assert "violates store distance rule" in reason
        assert "5567 km" in reason
        assert "B&Q London" in reason and "B&Q New York" in reason

    async def test_same_store_not_flagged(self):
        card = _make_card()
        txs = [
            _make_tx(card, store="B&Q London", when=BASE_TIME),
            _make_tx(card, store="B&Q London", when=BASE_TIME + timedelta(hours=1)),
        ]
        assert await detect_card_misuse([card], txs, [_rule("stores_distance", ">", "100")]) == []

    async def test_pairs_are_taken_in_time_order(self):
        card = _make_card()
        # Arrival order London, London, New York, but by time New York sits
        # between the two London visits.
        txs = [
            _make_tx(card, store="B&Q London", when=BASE_TIME),
            _make_tx(card, store="B&Q London", when=BASE_TIME + timedelta(hours=10)),
            _make_tx(card, store="B&Q New York", when=BASE_TIME + timedelta(hours=5)),
        ]
        result = await detect_card_misuse([card], txs, [_rule("stores_distance", ">", "100")])
        assert len(result) == 1

    async def test_gap_beyond_travel_window_ignored(self):
        card = _make_card()
        txs = [
            _make_tx(card, store="B&Q London", when=BASE_TIME),
            _make_tx(card, store="B&Q New York", when=BASE_TIME + timedelta(hours=30)),
        ]
        assert await detect_card_misuse([card], txs, [_rule("stores_distance", ">", "100")]) == []

    async def test_unknown_distance_not_flagged(self):
        card = _make_card()
        txs = [
            _make_tx(card, store="B&Q London", when=BASE_TIME),
            _make_tx(card, store="B&Q Atlantis", when=BASE_TIME + timedelta(hours=1)),
        ]
        assert await detect_card_misuse([card], txs, [_rule("stores_distance", ">", "100")]) == []

    async def test_single_transaction_never_fires(self):
        card = _make_card()
        txs = [_make_tx(card, store="B&Q London")]
        assert await detect_card_misuse([card], txs, [_rule("stores_distance", ">=", "0")]) == []

    async def test_simultaneous_distinct_places_always_fire(self):
        card = _make_card()
        txs = [
            _make_tx(card, store="B&Q London", when=BASE_TIME),
            _make_tx(card, store="B&Q Manchester", when=BASE_TIME),
        ]
        result = await detect_card_misuse([card], txs, [_rule("stores_distance", ">", "10000")])
        assert len(result) == 1
        assert "instantaneous" in result[0].reasons[0]

    async def test_provider_failure_is_not_a_violation(self):
        geo = _make_card("geo")
        spender = _make_card("spender")
        txs = [
            _make_tx(geo, store="B&Q London", when=BASE_TIME),
            _make_tx(geo, store="B&Q New York", when=BASE_TIME + timedelta(hours=1)),
            _make_tx(spender, amount=500),
        ]
        rules = [
            _rule("stores_distance", ">", "100"),
            _rule("transaction_amount", ">", "100"),
        ]
        result = await detect_card_misuse([geo, spender], txs, rules, distance_provider=_FailingProvider())
        assert [c.id for c in result] == ["spender"]

    @pytest.mark.parametrize("answer", ["5567", {"distance_km": 5567}, True])
    async def test_non_numeric_distance_is_not_a_violation(self, answer):
        geo = _make_card("geo")
        spender = _make_card("spender")
        txs = [
            _make_tx(geo, store="B&Q London", when=BASE_TIME),
            _make_tx(geo, store="B&Q New York", when=BASE_TIME + timedelta(hours=1)),
            _make_tx(spender, amount=500),
        ]
        rules = [
            _rule("transaction_amount", ">", "100"),
            _rule("stores_distance", ">", "100"),
        ]
        result = await detect_card_misuse(
            [geo, spender], txs, rules, distance_provider=_TextProvider(answer)
        )
        assert [c.id for c in result] == ["spender"]

    async def test_provider_timeout_is_not_a_violation(self, monkeypatch):
        monkeypatch.setattr(settings, "DISTANCE_LOOKUP_TIMEOUT_SECONDS", 0.05)
        card = _make_card()
        txs = [
            _make_tx(card, store="B&Q London", when=BASE_TIME),
            _make_tx(card, store="B&Q New York", when=BASE_TIME + timedelta(hours=1)),
        ]
        result = await detect_card_misuse(
            [card], txs, [_rule("stores_distance", ">", "100")], distance_provider=_SlowProvider()
        )
        assert result == []

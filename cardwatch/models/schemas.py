"""
CardWatch — Pydantic Schemas (Domain Records / Request / Response DTOs)

Card, Transaction and MisuseRule double as the detector's input records;
the *Create / *Update variants carry the stricter validation applied at
the HTTP boundary.
"""

import math
from datetime import date, datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


RuleField = Literal["payer_mismatch", "transaction_amount", "transaction_count", "stores_distance"]
RuleOperator = Literal["<", "<=", ">", ">=", "="]


# ===========================================================================
# Card
# ===========================================================================
class CardBase(BaseModel):
    staff_id: Optional[str] = Field(default=None, max_length=64)
    company_name: Optional[str] = Field(default=None, max_length=128)
    primary_cardholder_name: str = Field(..., max_length=128)
    primary_card_number: Optional[str] = Field(default=None, max_length=64)
    mag_stripe: Optional[str] = Field(default=None, max_length=128)
    cardholder_name_2: Optional[str] = Field(default=None, max_length=128)
    card_number_2: Optional[str] = Field(default=None, max_length=64)

    # Postal address
    add1: Optional[str] = Field(default=None, max_length=128)
    add2: Optional[str] = Field(default=None, max_length=128)
    add3: Optional[str] = Field(default=None, max_length=128)
    add4: Optional[str] = Field(default=None, max_length=128)
    add5: Optional[str] = Field(default=None, max_length=128)
    postcode: Optional[str] = Field(default=None, max_length=16)
    letter_flag: bool = False
    overseas: bool = False

    valid_from: Optional[date] = None
    expires: Optional[date] = None
    primary_card_issue_date: Optional[date] = None
    primary_replacement_card_issue_date: Optional[date] = None
    primary_part_card_number: Optional[str] = Field(default=None, max_length=64)
    full_card_no_in_circulation: Optional[str] = Field(default=None, max_length=64)
    primary_card_type: Optional[str] = Field(default=None, max_length=32)
    next_primary_card_to_be_charged: bool = False

    active: bool = True
    reason: Optional[str] = Field(default=None, max_length=256, description="Why the card was deactivated")


class CardCreate(CardBase):
    """Inbound card record from the management dashboard."""
    staff_id: str = Field(..., min_length=1, max_length=64)
    company_name: str = Field(..., min_length=1, max_length=128)
    primary_cardholder_name: str = Field(..., min_length=1, max_length=128)
    primary_card_number: str = Field(
        ...,
        min_length=1,
        max_length=64,
        pattern=r"^[0-9A-Za-z\- ]+$",
        description="Primary card number / barcode",
    )
    add1: str = Field(..., min_length=1, max_length=128, description="Address line 1")
    postcode: str = Field(..., min_length=1, max_length=16)

    @field_validator("expires")
    @classmethod
    def expires_after_valid_from(cls, v: Optional[date], info) -> Optional[date]:
        valid_from = info.data.get("valid_from")
        if v and valid_from and v < valid_from:
            raise ValueError("expires must not be earlier than valid_from")
        return v


class Card(CardBase):
    """A card record as seen by the detector; ``id`` may be missing."""
    id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class CardListResponse(BaseModel):
    """Paginated card list."""
    total: int
    page: int
    page_size: int
    items: List[Card]


# ===========================================================================
# Transaction
# ===========================================================================
class TransactionBase(BaseModel):
    card_record_id: Optional[str] = None
    card_number: Optional[str] = None
    transaction_datetime: datetime
    transaction_store: str = ""
    transaction_amount: float
    transaction_discount: float = 0.0
    payer_name: str = ""
    payer_card_number: Optional[str] = None

    @field_validator("transaction_datetime")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Naive timestamps are taken to be UTC so all of them compare."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class TransactionCreate(TransactionBase):
    """Inbound transaction recorded against a stored card."""
    card_record_id: str = Field(..., min_length=1, max_length=36)
    transaction_store: str = Field(..., min_length=1, max_length=128)
    payer_name: str = Field(..., min_length=1, max_length=128)
    transaction_amount: float = Field(..., ge=0)
    transaction_discount: float = Field(default=0.0, ge=0)


class Transaction(TransactionBase):
    id: str

    model_config = ConfigDict(from_attributes=True)


class TransactionListResponse(BaseModel):
    """Paginated transaction list."""
    total: int
    page: int
    page_size: int
    items: List[Transaction]


# ===========================================================================
# Misuse Rule
# ===========================================================================
class MisuseRule(BaseModel):
    """
    Rule snapshot handed to the detector.

    ``field`` and ``operator`` are deliberately free-form strings here: a rule
    the engine does not understand is skipped, not rejected.
    """
    id: Optional[str] = None
    field: str
    operator: str
    value: str

    model_config = ConfigDict(from_attributes=True)

    @field_validator("value", mode="before")
    @classmethod
    def stringify_value(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


def _numeric_rule_value(v) -> str:
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        v = str(v)
    if not isinstance(v, str):
        raise ValueError(f"Rule value must be numeric, got {v!r}")
    try:
        number = float(v)
    except ValueError:
        raise ValueError(f"Rule value must be numeric, got {v!r}")
    if not math.isfinite(number):
        raise ValueError("Rule value must be finite")
    return v.strip()


class MisuseRuleCreate(BaseModel):
    """Create a new misuse rule."""
    field: RuleField
    operator: RuleOperator
    value: str = Field(..., min_length=1, max_length=32, description="Numeric threshold")

    @field_validator("value", mode="before")
    @classmethod
    def value_must_be_numeric(cls, v):
        return _numeric_rule_value(v)


class MisuseRuleUpdate(BaseModel):
    """Partial update of a misuse rule."""
    field: Optional[RuleField] = None
    operator: Optional[RuleOperator] = None
    value: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def value_must_be_numeric(cls, v):
        if v is None:
            return v
        return _numeric_rule_value(v)


class MisuseRuleResponse(BaseModel):
    id: str
    field: str
    operator: str
    value: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ===========================================================================
# Detection
# ===========================================================================
class FlaggedCard(Card):
    """A card whose transaction history broke at least one rule."""
    transactions: List[Transaction]
    reasons: List[str] = Field(..., min_length=1)


class DetectionRequest(BaseModel):
    """Ad-hoc detection payload; rules are not pre-validated."""
    cards: List[Card]
    transactions: List[Transaction]
    rules: List[MisuseRule] = Field(default_factory=list)


class DetectionResponse(BaseModel):
    flagged_cards: List[FlaggedCard]
    cards_supplied: int
    rules_supplied: int


# ===========================================================================
# Dashboard
# ===========================================================================
class DailyTotal(BaseModel):
    day: date
    count: int
    amount: float = 0.0


class DashboardSummary(BaseModel):
    """Dashboard summary stats."""
    total_cards: int
    active_cards: int
    total_transactions: int
    total_amount: float
    transactions_per_day: List[DailyTotal]
    new_cards_per_day: List[DailyTotal]


# ===========================================================================
# Health
# ===========================================================================
class HealthCheck(BaseModel):
    """Health check response."""
    status: str  # healthy | degraded | unhealthy
    db: str
    distance_provider: str
    uptime_seconds: float
    version: str

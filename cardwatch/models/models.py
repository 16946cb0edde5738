"""
CardWatch — ORM Models
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Index, String,
)
from sqlalchemy.orm import relationship

from cardwatch.services.db import Base


def _utcnow():
    return datetime.now(timezone.utc)


def _uuid4():
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# CardRecord
# ---------------------------------------------------------------------------
class CardRecord(Base):
    __tablename__ = "cards"
    __table_args__ = (
        Index("ix_cards_staff_id", "staff_id"),
        Index("ix_cards_issue_date", "primary_card_issue_date"),
    )

    id = Column(String(36), primary_key=True, default=_uuid4)
    staff_id = Column(String(64), nullable=False)
    company_name = Column(String(128), nullable=False)
    primary_cardholder_name = Column(String(128), nullable=False)
    primary_card_number = Column(String(64), nullable=False)
    mag_stripe = Column(String(128), nullable=True)
    cardholder_name_2 = Column(String(128), nullable=True)
    card_number_2 = Column(String(64), nullable=True)
    add1 = Column(String(128), nullable=False)
    add2 = Column(String(128), nullable=True)
    add3 = Column(String(128), nullable=True)
    add4 = Column(String(128), nullable=True)
    add5 = Column(String(128), nullable=True)
    postcode = Column(String(16), nullable=False)
    letter_flag = Column(Boolean, default=False)
    overseas = Column(Boolean, default=False)
    valid_from = Column(Date, nullable=True)
    expires = Column(Date, nullable=True)
    primary_card_issue_date = Column(Date, nullable=True)
    primary_replacement_card_issue_date = Column(Date, nullable=True)
    primary_part_card_number = Column(String(64), nullable=True)
    full_card_no_in_circulation = Column(String(64), nullable=True)
    primary_card_type = Column(String(32), nullable=True)
    next_primary_card_to_be_charged = Column(Boolean, default=False)
    active = Column(Boolean, default=True)
    reason = Column(String(256), nullable=True)      # set when a card is deactivated
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    transactions = relationship(
        "TransactionRecord",
        back_populates="card",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# ---------------------------------------------------------------------------
# TransactionRecord  (many-to-1 with CardRecord)
# ---------------------------------------------------------------------------
class TransactionRecord(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_card_datetime", "card_record_id", "transaction_datetime"),
    )

    id = Column(String(36), primary_key=True, default=_uuid4)
    card_record_id = Column(
        String(36), ForeignKey("cards.id", ondelete="CASCADE"), nullable=False
    )
    card_number = Column(String(64), nullable=True)
    transaction_datetime = Column(DateTime(timezone=True), nullable=False)
    transaction_store = Column(String(128), nullable=False)
    transaction_amount = Column(Float, nullable=False)
    transaction_discount = Column(Float, default=0.0)
    payer_name = Column(String(128), nullable=False)
    payer_card_number = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    card = relationship("CardRecord", back_populates="transactions")


# ---------------------------------------------------------------------------
# MisuseRule  (dynamic, CRUD-able rule definitions)
# ---------------------------------------------------------------------------
class MisuseRuleRecord(Base):
    __tablename__ = "misuse_rules"

    id = Column(String(36), primary_key=True, default=_uuid4)
    field = Column(String(32), nullable=False)        # payer_mismatch | transaction_amount | …
    operator = Column(String(2), nullable=False)      # < | <= | > | >= | =
    value = Column(String(32), nullable=False)        # numeric, stored as entered
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

"""
CardWatch — Transaction Indexer
Groups a flat transaction list by owning card.
"""

from typing import Dict, Iterable, List

from cardwatch.models.schemas import Transaction


def index_transactions(transactions: Iterable[Transaction]) -> Dict[str, List[Transaction]]:
    """
    Map card id → that card's transactions, in arrival order.

    Transactions without a ``card_record_id`` belong to no card and are
    dropped.  No sorting happens here; evaluators sort when they need to.
    """
    by_card: Dict[str, List[Transaction]] = {}
    for tx in transactions:
        if not tx.card_record_id:
            continue
        by_card.setdefault(tx.card_record_id, []).append(tx)
    return by_card

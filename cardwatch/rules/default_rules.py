"""
CardWatch — Default Misuse Rules (seed data)
These are inserted at first-run if the misuse_rules table is empty.
Order matters: violation reasons are reported in rule order.
"""

# Each dict maps directly onto MisuseRuleRecord columns.

DEFAULT_RULES = [
    # More than half of the transactions paid by someone not named on the card
    {"field": "payer_mismatch", "operator": ">", "value": "50"},
    # More than 3 transactions inside any 24-hour window
    {"field": "transaction_count", "operator": ">", "value": "3"},
    # Consecutive transactions at stores more than 100 km apart within a day
    {"field": "stores_distance", "operator": ">", "value": "100"},
    # Single purchase above 100
    {"field": "transaction_amount", "operator": ">", "value": "100"},
]

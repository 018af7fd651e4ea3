"""Enums for the Points Service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class HistoryType(str, enum.Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"
    ROLLOVER = "rollover"
    EXPIRY = "expiry"


# Entry types that reduce a balance. Everything else is a credit.
DEBIT_TYPES = frozenset({HistoryType.USAGE, HistoryType.EXPIRY})

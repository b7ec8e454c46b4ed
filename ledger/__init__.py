"""
Credit Ledger

This module provides:
- Immutable, append-only credit transactions
- Balance snapshots (balance_after) on every entry
- Clamping so a member balance never goes negative
- Balance replay and chain verification from the log
"""

from .models import (
    TransactionType,
    CreditTransaction,
    MemberBalance,
    CreditHistoryResponse,
)
from .service import Ledger, LedgerStorage, LedgerError, MemberNotFoundError

__all__ = [
    "TransactionType",
    "CreditTransaction",
    "MemberBalance",
    "CreditHistoryResponse",
    "Ledger",
    "LedgerStorage",
    "LedgerError",
    "MemberNotFoundError",
]

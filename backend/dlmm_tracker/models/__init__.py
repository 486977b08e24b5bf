# Models module
from .schemas import (
    AccountKey,
    TokenBalance,
    TransactionRecord,
    BalanceChange,
    EventKind,
    ClassifiedTransaction,
    LedgerEntry,
    LedgerSnapshot,
    TokenLeg,
    PositionValuation,
    ClassifiedTransactionSchema,
    LedgerSchema,
    WalletReportSchema,
)

__all__ = [
    "AccountKey",
    "TokenBalance",
    "TransactionRecord",
    "BalanceChange",
    "EventKind",
    "ClassifiedTransaction",
    "LedgerEntry",
    "LedgerSnapshot",
    "TokenLeg",
    "PositionValuation",
    "ClassifiedTransactionSchema",
    "LedgerSchema",
    "WalletReportSchema",
]

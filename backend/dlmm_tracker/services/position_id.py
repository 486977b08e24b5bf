"""
Position identifier extraction.

DLMM positions are accounts; the same address shows up in every transaction
that touches the position. Nothing in a parsed transaction labels it as
such, so it is recovered heuristically.
"""
from __future__ import annotations
import re
from typing import Optional, Set

from dlmm_tracker.models.schemas import EventKind, TransactionRecord

POSITION_LOG_PATTERN = re.compile(r"[Pp]osition:\s*([A-Za-z0-9]{32,44})")

# Solana addresses are 32-44 base58 characters
MIN_ADDRESS_LENGTH = 32

# Fallback only looks at account indices 1..4
FALLBACK_ACCOUNT_WINDOW = 5


class PositionIdentifierExtractor:

    def extract(self, record: TransactionRecord, kind: EventKind) -> Optional[str]:
        """First hit wins: explicit log, open-time token account, token-holding writable account."""
        from_logs = self._from_logs(record)
        if from_logs:
            return from_logs

        if kind == EventKind.POSITION_OPEN:
            from_open = self._from_open_balances(record)
            if from_open:
                return from_open

        return self._from_writable_accounts(record)

    @staticmethod
    def _from_logs(record: TransactionRecord) -> Optional[str]:
        for line in record.log_messages:
            match = POSITION_LOG_PATTERN.search(line)
            if match:
                return match.group(1)
        return None

    @staticmethod
    def _from_open_balances(record: TransactionRecord) -> Optional[str]:
        keys = record.account_keys
        for balance in record.post_token_balances:
            index = balance.account_index
            if index <= 0 or index >= len(keys):
                continue
            if abs(balance.ui_amount) <= 0:
                continue
            key = keys[index]
            if key.writable and not key.signer and len(key.address) >= MIN_ADDRESS_LENGTH:
                return key.address
        return None

    @staticmethod
    def _from_writable_accounts(record: TransactionRecord) -> Optional[str]:
        keys = record.account_keys
        token_holders: Set[str] = set()
        for balance in record.pre_token_balances + record.post_token_balances:
            if 0 <= balance.account_index < len(keys):
                token_holders.add(keys[balance.account_index].address)

        for key in keys[1:]:
            if (
                key.writable
                and not key.signer
                and key.address in token_holders
                and len(key.address) >= MIN_ADDRESS_LENGTH
            ):
                return key.address

        for key in keys[1:FALLBACK_ACCOUNT_WINDOW]:
            if key.writable and not key.signer and len(key.address) >= MIN_ADDRESS_LENGTH:
                return key.address

        return None


position_extractor = PositionIdentifierExtractor()

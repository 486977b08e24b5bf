"""
Balance delta analysis.

Turns the pre/post token balance snapshots of one transaction into a list of
per-asset movements, and computes the wallet's native SOL delta.
"""
from __future__ import annotations
from typing import Dict, List, Optional

from dlmm_tracker.models.schemas import (
    BalanceChange,
    TransactionRecord,
    LAMPORTS_PER_SOL,
)

# Movements at or below this are rounding noise
EPSILON = 1e-6


class BalanceDeltaAnalyzer:
    """Stateless pre/post balance comparison."""

    def __init__(self, epsilon: float = EPSILON):
        self.epsilon = epsilon

    def token_changes(self, record: TransactionRecord) -> List[BalanceChange]:
        """
        Per-mint balance changes, in order of first discovery.

        When the same mint moves on several accounts (routing, intermediate
        vaults), only the largest-magnitude movement survives.
        """
        pre_by_index = {b.account_index: b for b in record.pre_token_balances}
        post_indices = {b.account_index for b in record.post_token_balances}

        raw: List[BalanceChange] = []

        for post in record.post_token_balances:
            pre = pre_by_index.get(post.account_index)
            pre_amount = pre.ui_amount if pre is not None else 0.0
            delta = post.ui_amount - pre_amount
            if abs(delta) > self.epsilon:
                raw.append(BalanceChange(
                    account_index=post.account_index,
                    mint=post.mint,
                    decimals=post.decimals,
                    delta=delta,
                ))

        # Closed accounts: everything they held left
        for pre in record.pre_token_balances:
            if pre.account_index in post_indices:
                continue
            if abs(pre.ui_amount) <= self.epsilon:
                continue
            raw.append(BalanceChange(
                account_index=pre.account_index,
                mint=pre.mint,
                decimals=pre.decimals,
                delta=-pre.ui_amount,
            ))

        return self._collapse_by_mint(raw)

    @staticmethod
    def _collapse_by_mint(changes: List[BalanceChange]) -> List[BalanceChange]:
        dominant: Dict[str, BalanceChange] = {}
        for change in changes:
            current = dominant.get(change.mint)
            if current is None or abs(change.delta) > abs(current.delta):
                dominant[change.mint] = change
        # dict keeps first-insertion order of each mint
        return list(dominant.values())

    def native_delta(self, record: TransactionRecord, wallet_address: str) -> float:
        """Wallet's SOL balance change; 0.0 if the wallet is not in the transaction."""
        index: Optional[int] = record.index_of(wallet_address)
        if index is None:
            return 0.0
        if index >= len(record.pre_balances) or index >= len(record.post_balances):
            return 0.0
        return (record.post_balances[index] - record.pre_balances[index]) / LAMPORTS_PER_SOL


# Module-level instance
balance_analyzer = BalanceDeltaAnalyzer()

"""
Transaction classification.

Assigns each DLMM transaction a lifecycle event using, in strict priority
order: program instruction markers, generic log keywords, then the shape of
the balance changes. The order matters; ambiguous inputs resolve
differently if it is changed. Anything unmatched is UNKNOWN.
"""
from __future__ import annotations
import logging
from typing import List, Optional, Sequence

from dlmm_tracker.core.config import settings
from dlmm_tracker.models.schemas import (
    BalanceChange,
    ClassifiedTransaction,
    EventKind,
    TransactionRecord,
)
from dlmm_tracker.services.balance_delta import BalanceDeltaAnalyzer, balance_analyzer
from dlmm_tracker.services.position_id import PositionIdentifierExtractor, position_extractor
from dlmm_tracker.services.pricing import PriceResolver, price_resolver

logger = logging.getLogger(__name__)


OPEN_MARKERS = ("Instruction: InitializePosition",)
CLOSE_MARKERS = ("Instruction: ClosePosition", "Instruction: RemoveLiquidity")
CLAIM_MARKERS = ("Instruction: ClaimFee", "Instruction: ClaimReward")

OPEN_KEYWORDS = ("addliquidity", "add liquidity", "deposit")
CLOSE_KEYWORDS = ("removeliquidity", "remove liquidity", "withdraw")
CLAIM_KEYWORDS = ("claim", "fee")

SIGNIFICANT_DELTA = 0.01

# Prefix of the program id, seen truncated in some log lines
PROGRAM_ID_PREFIX = "LBUZKhRxPF3X"


def _any_marker(logs: Sequence[str], markers: Sequence[str]) -> bool:
    return any(marker in line for line in logs for marker in markers)


def _any_keyword(lowered_logs: Sequence[str], keywords: Sequence[str]) -> bool:
    return any(keyword in line for line in lowered_logs for keyword in keywords)


class TransactionClassifier:
    """
    Pure classifier: the same record always yields the same result.

    Collaborators are injected so tests can swap the price defaults.
    """

    def __init__(
        self,
        analyzer: Optional[BalanceDeltaAnalyzer] = None,
        extractor: Optional[PositionIdentifierExtractor] = None,
        resolver: Optional[PriceResolver] = None,
        program_id: Optional[str] = None,
    ):
        self.analyzer = analyzer or balance_analyzer
        self.extractor = extractor or position_extractor
        self.resolver = resolver or price_resolver
        self.program_id = program_id or settings.dlmm_program_id

    # =========================================================================
    # Filtering
    # =========================================================================

    def is_dlmm_transaction(self, record: TransactionRecord) -> bool:
        """True if the DLMM program is referenced by accounts, instructions or logs."""
        if any(key.address == self.program_id for key in record.account_keys):
            return True
        if self.program_id in record.program_ids:
            return True
        for line in record.log_messages:
            if "meteora" in line.lower() or self.program_id in line or PROGRAM_ID_PREFIX in line:
                return True
        return False

    # =========================================================================
    # Event kind
    # =========================================================================

    def classify_kind(
        self,
        record: TransactionRecord,
        changes: Optional[List[BalanceChange]] = None,
    ) -> EventKind:
        logs = record.log_messages

        # 1. Program markers
        if _any_marker(logs, OPEN_MARKERS):
            return EventKind.POSITION_OPEN
        if _any_marker(logs, CLOSE_MARKERS):
            return EventKind.POSITION_CLOSE
        if _any_marker(logs, CLAIM_MARKERS):
            return EventKind.FEE_CLAIM

        # 2. Keywords
        lowered = [line.lower() for line in logs]
        saw_open = _any_keyword(lowered, OPEN_KEYWORDS)
        saw_close = _any_keyword(lowered, CLOSE_KEYWORDS)
        saw_claim = _any_keyword(lowered, CLAIM_KEYWORDS)

        # 3. Structure
        if changes is None:
            changes = self.analyzer.token_changes(record)
        significant = [c for c in changes if abs(c.delta) > SIGNIFICANT_DELTA]
        accounts_shrank = len(record.post_token_balances) < len(record.pre_token_balances)

        if saw_open and len(significant) >= 2:
            return EventKind.POSITION_OPEN
        if saw_close and accounts_shrank:
            return EventKind.POSITION_CLOSE
        if saw_claim and len(changes) >= 1:
            return EventKind.FEE_CLAIM
        if len(significant) >= 2 and not saw_open and not saw_close:
            return EventKind.REBALANCE

        return EventKind.UNKNOWN

    # =========================================================================
    # Full classification
    # =========================================================================

    def extract_pool_address(self, record: TransactionRecord) -> Optional[str]:
        """First writable non-signer account that holds a token balance."""
        holder_indices = {b.account_index for b in record.pre_token_balances}
        holder_indices.update(b.account_index for b in record.post_token_balances)
        for index, key in enumerate(record.account_keys):
            if key.writable and not key.signer and index in holder_indices:
                return key.address
        return None

    def estimate_usd(
        self,
        token_x: Optional[BalanceChange],
        token_y: Optional[BalanceChange],
        reference_price: Optional[float],
    ) -> Optional[float]:
        """
        Rough USD size of the movement. Only stable and native legs are
        counted; other mints have no known price here.
        """
        if reference_price is None:
            return None
        total = 0.0
        for leg in (token_x, token_y):
            if leg is None:
                continue
            if self.resolver.is_stable(leg.mint) or self.resolver.is_native(leg.mint):
                total += abs(leg.delta) * self.resolver.price_of(leg.mint, reference_price)
        return total if total > 0 else None

    def classify(
        self,
        record: TransactionRecord,
        wallet_address: str,
        reference_price: Optional[float] = None,
    ) -> ClassifiedTransaction:
        changes = self.analyzer.token_changes(record)
        kind = self.classify_kind(record, changes)
        token_x = changes[0] if len(changes) >= 1 else None
        token_y = changes[1] if len(changes) >= 2 else None

        classified = ClassifiedTransaction(
            record=record,
            kind=kind,
            position_id=self.extractor.extract(record, kind),
            pool_id=self.extract_pool_address(record),
            token_x=token_x,
            token_y=token_y,
            native_delta=self.analyzer.native_delta(record, wallet_address),
            estimated_usd=self.estimate_usd(token_x, token_y, reference_price),
        )
        logger.debug(
            "Classified %s as %s (position=%s)",
            record.signature, kind.value, classified.position_id,
        )
        return classified


transaction_classifier = TransactionClassifier()


def classify_transaction(
    record: TransactionRecord,
    wallet_address: str,
    reference_price: Optional[float] = None,
) -> Optional[ClassifiedTransaction]:
    """Classify a DLMM transaction; None for transactions the program did not touch."""
    if not transaction_classifier.is_dlmm_transaction(record):
        return None
    return transaction_classifier.classify(record, wallet_address, reference_price)

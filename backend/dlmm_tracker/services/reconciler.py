"""
Wallet Reconciler - the pipeline entry point.

history -> DLMM filter -> classification -> ledger -> valuation

Only an unreachable transaction history aborts a pass. Every other failure
is attached to the report as an error string next to whatever partial
result could be produced.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from dlmm_tracker.core.config import settings
from dlmm_tracker.core.exceptions import FetchCancelledError, HistoryUnavailableError
from dlmm_tracker.models.schemas import (
    ClassifiedTransaction,
    ClassifiedTransactionSchema,
    LedgerSchema,
    LedgerSnapshot,
    PositionValuation,
    TransactionRecord,
    WalletReportSchema,
)
from dlmm_tracker.services.classifier import TransactionClassifier, transaction_classifier
from dlmm_tracker.services.fetcher import CancelToken
from dlmm_tracker.services.ledger import build_ledger
from dlmm_tracker.services.solana_rpc import SolanaRPCClient, solana_client
from dlmm_tracker.services.valuation import (
    PoolScanner,
    ValuationOrchestrator,
    pool_scanner,
    valuation_orchestrator,
)

logger = logging.getLogger(__name__)


@dataclass
class WalletReport:
    """In-memory result of one reconciliation pass."""
    wallet_address: str
    transactions: List[ClassifiedTransaction] = field(default_factory=list)
    ledger: LedgerSnapshot = field(default_factory=LedgerSnapshot)
    valuations: List[PositionValuation] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def total_value_usd(self) -> float:
        return sum(v.total_value_usd for v in self.valuations)

    @property
    def total_unclaimed_fees_usd(self) -> float:
        return sum(v.unclaimed_fees_usd for v in self.valuations)

    def to_schema(self) -> WalletReportSchema:
        return WalletReportSchema(
            wallet_address=self.wallet_address,
            transactions=[ClassifiedTransactionSchema.from_classified(t) for t in self.transactions],
            ledger=LedgerSchema.from_snapshot(self.ledger),
            valuations=self.valuations,
            total_value_usd=self.total_value_usd,
            total_unclaimed_fees_usd=self.total_unclaimed_fees_usd,
            errors=list(self.errors),
        )


class WalletReconciler:
    """
    Rebuilds a wallet's DLMM picture from scratch on every call.
    Holds no per-wallet state between passes.
    """

    def __init__(
        self,
        rpc: Optional[SolanaRPCClient] = None,
        classifier: Optional[TransactionClassifier] = None,
        orchestrator: Optional[ValuationOrchestrator] = None,
        scanner: Optional[PoolScanner] = None,
        history_limit: Optional[int] = None,
    ):
        self.rpc = rpc or solana_client
        self.classifier = classifier or transaction_classifier
        self.orchestrator = orchestrator or valuation_orchestrator
        self.scanner = scanner or pool_scanner
        self.history_limit = history_limit or settings.history_limit

    # =========================================================================
    # History
    # =========================================================================

    async def fetch_history(
        self,
        wallet_address: str,
        token: Optional[CancelToken] = None,
    ) -> Tuple[List[TransactionRecord], List[str]]:
        """
        Returns (records, per-transaction errors).

        Raises:
            HistoryUnavailableError: If the signature listing itself fails
        """
        try:
            signatures = await self.rpc.get_signatures_for_address(
                wallet_address, self.history_limit, token
            )
        except FetchCancelledError as e:
            raise HistoryUnavailableError(wallet_address, "cancelled") from e
        except Exception as e:
            logger.error("History unavailable for %s: %s", wallet_address, e)
            raise HistoryUnavailableError(wallet_address, str(e)) from e

        logger.info("Fetched %d signatures for %s", len(signatures), wallet_address)
        records, errors = await self.rpc.get_transactions(signatures, token)
        if len(records) + len(errors) < len(signatures):
            errors.append(
                f"{len(signatures) - len(records) - len(errors)} transactions not fetched "
                "(missing on node or cancelled)"
            )
        return records, errors

    def classify_history(
        self,
        records: List[TransactionRecord],
        wallet_address: str,
        reference_price: Optional[float] = None,
    ) -> List[ClassifiedTransaction]:
        classified = []
        for record in records:
            if not self.classifier.is_dlmm_transaction(record):
                continue
            classified.append(self.classifier.classify(record, wallet_address, reference_price))
        return classified

    async def classify_wallet(
        self,
        wallet_address: str,
        reference_price: Optional[float] = None,
        token: Optional[CancelToken] = None,
    ) -> WalletReport:
        """History and ledger only, no live valuation."""
        records, errors = await self.fetch_history(wallet_address, token)
        classified = self.classify_history(records, wallet_address, reference_price)

        # Failed transactions are reported but changed nothing on chain
        ledger = build_ledger(t for t in classified if t.record.success)

        logger.info(
            "%s: %d DLMM transactions, %d active positions, %d unidentified opens",
            wallet_address, len(classified), len(ledger.active_positions), ledger.unidentified_opens,
        )
        return WalletReport(
            wallet_address=wallet_address,
            transactions=classified,
            ledger=ledger,
            errors=errors,
        )

    # =========================================================================
    # Full pass
    # =========================================================================

    async def reconcile(
        self,
        wallet_address: str,
        reference_price: float,
        token: Optional[CancelToken] = None,
    ) -> WalletReport:
        report = await self.classify_wallet(wallet_address, reference_price, token)
        ledger = report.ledger
        active = ledger.active_positions

        if active:
            pool_hints = {
                pid: entry.pool_id
                for pid, entry in ledger.entries.items()
                if pid in active and entry.pool_id
            }
            report.valuations = await self.orchestrator.value_positions(
                list(active),
                reference_price,
                owner=wallet_address,
                pool_hints=pool_hints,
                token=token,
            )
            if len(report.valuations) < len(active):
                report.errors.append(
                    f"{len(active) - len(report.valuations)} positions not valued before cancellation"
                )

        # Heuristic ids that value to nothing, or opens with no id at all
        if report.total_value_usd == 0 or ledger.unidentified_opens > 0:
            if active:
                logger.info(
                    "%s: falling back to pool scan (value $%.2f, %d unidentified opens)",
                    wallet_address, report.total_value_usd, ledger.unidentified_opens,
                )
            try:
                found, scan_errors = await self.scanner.scan(
                    wallet_address,
                    reference_price,
                    extra_pools=ledger.pool_ids,
                    token=token,
                )
            except FetchCancelledError:
                found, scan_errors = [], ["pool scan cancelled"]
            report.valuations = merge_valuations(report.valuations, found)
            report.errors.extend(scan_errors)

        return report


def merge_valuations(
    valuations: List[PositionValuation],
    found: List[PositionValuation],
) -> List[PositionValuation]:
    """
    Fold scan hits into per-id valuations. A hit replaces a zero-valued
    record for the same position; new positions are appended.
    """
    merged = list(valuations)
    index = {v.position_id: i for i, v in enumerate(merged)}
    for valuation in found:
        i = index.get(valuation.position_id)
        if i is None:
            index[valuation.position_id] = len(merged)
            merged.append(valuation)
        elif merged[i].total_value_usd == 0 and valuation.total_value_usd > 0:
            merged[i] = valuation
    return merged


wallet_reconciler = WalletReconciler()

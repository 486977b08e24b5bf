# Services module
from .balance_delta import BalanceDeltaAnalyzer
from .classifier import TransactionClassifier, classify_transaction
from .position_id import PositionIdentifierExtractor
from .ledger import PositionLedger, build_ledger
from .fetcher import CancelToken, RateLimitedFetcher, run_bounded
from .pricing import PriceResolver
from .solana_rpc import SolanaRPCClient
from .meteora import MeteoraAPIClient
from .indexer import IndexedAccountsClient
from .valuation import ValuationOrchestrator, PoolScanner
from .reconciler import WalletReconciler, WalletReport

__all__ = [
    "BalanceDeltaAnalyzer",
    "TransactionClassifier",
    "classify_transaction",
    "PositionIdentifierExtractor",
    "PositionLedger",
    "build_ledger",
    "CancelToken",
    "RateLimitedFetcher",
    "run_bounded",
    "PriceResolver",
    "SolanaRPCClient",
    "MeteoraAPIClient",
    "IndexedAccountsClient",
    "ValuationOrchestrator",
    "PoolScanner",
    "WalletReconciler",
    "WalletReport",
]

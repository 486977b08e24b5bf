"""
FastAPI Entrypoint for the DLMM position tracker.
Exposes read-only endpoints for wallet history, ledger and valuations.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from dlmm_tracker.core.config import settings
from dlmm_tracker.core.exceptions import HistoryUnavailableError
from dlmm_tracker.core.logging import setup_logging
from dlmm_tracker.models.schemas import (
    ClassifiedTransactionSchema,
    LedgerSchema,
    PositionValuation,
    WalletReportSchema,
)
from dlmm_tracker.services.fetcher import CancelToken
from dlmm_tracker.services.reconciler import wallet_reconciler
from dlmm_tracker.services.valuation import valuation_orchestrator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    logger.info("DLMM tracker starting (RPC: %s)", settings.solana_rpc_url)
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="DLMM Position Tracker API",
    description="Reconciles Meteora DLMM positions from wallet history and live sources",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _token(timeout: Optional[float]) -> Optional[CancelToken]:
    return CancelToken(timeout=timeout) if timeout else None


# ============================================================================
# API Endpoints
# ============================================================================

@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "online",
        "service": "DLMM Position Tracker",
        "version": "1.0.0",
    }


@app.get("/api/v1/wallets/{wallet_address}/transactions", response_model=list[ClassifiedTransactionSchema])
async def get_wallet_transactions(
    wallet_address: str,
    sol_price: Optional[float] = Query(default=None, gt=0, description="Reference SOL price for USD estimates"),
    timeout: Optional[float] = Query(default=None, gt=0, description="Overall deadline in seconds"),
):
    """Classified DLMM transactions from the wallet's recent history."""
    try:
        report = await wallet_reconciler.classify_wallet(wallet_address, sol_price, _token(timeout))
    except HistoryUnavailableError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [ClassifiedTransactionSchema.from_classified(t) for t in report.transactions]


@app.get("/api/v1/wallets/{wallet_address}/positions", response_model=LedgerSchema)
async def get_wallet_positions(
    wallet_address: str,
    timeout: Optional[float] = Query(default=None, gt=0, description="Overall deadline in seconds"),
):
    """
    Positions believed open from history alone.
    No live source is queried beyond the transaction history.
    """
    try:
        report = await wallet_reconciler.classify_wallet(wallet_address, token=_token(timeout))
    except HistoryUnavailableError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return LedgerSchema.from_snapshot(report.ledger)


@app.get("/api/v1/wallets/{wallet_address}/valuations", response_model=WalletReportSchema)
async def get_wallet_valuations(
    wallet_address: str,
    sol_price: float = Query(gt=0, description="Reference SOL price in USD"),
    timeout: Optional[float] = Query(default=None, gt=0, description="Overall deadline in seconds"),
):
    """
    Full reconciliation: history, ledger and current value of every open position.
    Partial failures are reported in `errors` fields.
    """
    try:
        report = await wallet_reconciler.reconcile(wallet_address, sol_price, _token(timeout))
    except HistoryUnavailableError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return report.to_schema()


@app.get("/api/v1/positions/{position_id}", response_model=PositionValuation)
async def get_position_valuation(
    position_id: str,
    sol_price: float = Query(gt=0, description="Reference SOL price in USD"),
    owner: Optional[str] = Query(default=None, description="Owner wallet, enables the indexed lookup"),
    pool: Optional[str] = Query(default=None, description="Pool address hint"),
    timeout: Optional[float] = Query(default=None, gt=0, description="Overall deadline in seconds"),
):
    """Current value of a single position. Never fails; see `errors`."""
    return await valuation_orchestrator.value_position(
        position_id,
        sol_price,
        owner=owner,
        pool_id=pool,
        token=_token(timeout),
    )

"""
Pydantic models and dataclasses for the DLMM position tracker.

Dataclasses are the internal, immutable records that flow through one
reconciliation pass. Pydantic models are the outward-facing valuation and
report payloads served by the API.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Tuple, Any
from pydantic import BaseModel, Field, ConfigDict, computed_field

from dlmm_tracker.core.exceptions import MalformedPayloadError


LAMPORTS_PER_SOL = 1_000_000_000


# =========================================================================
# Raw transaction record
# =========================================================================

@dataclass(frozen=True)
class AccountKey:
    """One entry of a transaction's ordered account list."""
    address: str
    signer: bool = False
    writable: bool = False


@dataclass(frozen=True)
class TokenBalance:
    """A pre- or post-transaction SPL token balance snapshot."""
    account_index: int
    mint: str
    owner: str = ""
    ui_amount_string: str = "0"
    decimals: int = 0

    @property
    def ui_amount(self) -> float:
        try:
            return float(self.ui_amount_string or "0")
        except ValueError:
            return 0.0

    @classmethod
    def from_rpc(cls, entry: Dict[str, Any]) -> "TokenBalance":
        ui = entry.get("uiTokenAmount") or {}
        ui_string = ui.get("uiAmountString")
        if ui_string is None:
            ui_amount = ui.get("uiAmount")
            ui_string = str(ui_amount) if ui_amount is not None else "0"
        return cls(
            account_index=int(entry["accountIndex"]),
            mint=str(entry.get("mint", "")),
            owner=str(entry.get("owner") or ""),
            ui_amount_string=ui_string,
            decimals=int(ui.get("decimals") or 0),
        )


@dataclass(frozen=True)
class TransactionRecord:
    """
    A fetched transaction, reduced to what classification needs.
    Never mutated after construction.
    """
    signature: str
    block_time: Optional[int] = None
    slot: Optional[int] = None
    account_keys: Tuple[AccountKey, ...] = ()
    log_messages: Tuple[str, ...] = ()
    pre_balances: Tuple[int, ...] = ()
    post_balances: Tuple[int, ...] = ()
    pre_token_balances: Tuple[TokenBalance, ...] = ()
    post_token_balances: Tuple[TokenBalance, ...] = ()
    program_ids: Tuple[str, ...] = ()
    success: bool = True

    def index_of(self, address: str) -> Optional[int]:
        """Position of an address in the account list, or None."""
        for i, key in enumerate(self.account_keys):
            if key.address == address:
                return i
        return None

    @classmethod
    def from_rpc(cls, signature: str, payload: Dict[str, Any]) -> "TransactionRecord":
        """
        Build a record from a getTransaction(jsonParsed) result.

        Raises:
            MalformedPayloadError: If the payload lacks meta or message
        """
        if not isinstance(payload, dict):
            raise MalformedPayloadError(f"Transaction {signature}: payload is not an object", source="rpc")

        meta = payload.get("meta")
        transaction = payload.get("transaction")
        if not isinstance(meta, dict) or not isinstance(transaction, dict):
            raise MalformedPayloadError(f"Transaction {signature}: missing meta or transaction", source="rpc")

        message = transaction.get("message")
        if not isinstance(message, dict):
            raise MalformedPayloadError(f"Transaction {signature}: missing message", source="rpc")

        try:
            account_keys = tuple(_parse_account_key(k) for k in message.get("accountKeys") or [])
            pre_token = tuple(TokenBalance.from_rpc(b) for b in meta.get("preTokenBalances") or [])
            post_token = tuple(TokenBalance.from_rpc(b) for b in meta.get("postTokenBalances") or [])
            pre_balances = tuple(int(v) for v in meta.get("preBalances") or [])
            post_balances = tuple(int(v) for v in meta.get("postBalances") or [])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedPayloadError(f"Transaction {signature}: {e}", source="rpc") from e

        program_ids: List[str] = []
        for ix in message.get("instructions") or []:
            if isinstance(ix, dict) and ix.get("programId"):
                program_ids.append(str(ix["programId"]))
        for inner in meta.get("innerInstructions") or []:
            for ix in (inner or {}).get("instructions") or []:
                if isinstance(ix, dict) and ix.get("programId"):
                    program_ids.append(str(ix["programId"]))

        return cls(
            signature=signature,
            block_time=payload.get("blockTime"),
            slot=payload.get("slot"),
            account_keys=account_keys,
            log_messages=tuple(str(line) for line in meta.get("logMessages") or []),
            pre_balances=pre_balances,
            post_balances=post_balances,
            pre_token_balances=pre_token,
            post_token_balances=post_token,
            program_ids=tuple(program_ids),
            success=meta.get("err") is None,
        )


def _parse_account_key(key: Any) -> AccountKey:
    # jsonParsed gives objects; legacy encodings give bare strings
    if isinstance(key, str):
        return AccountKey(address=key)
    return AccountKey(
        address=str(key["pubkey"]),
        signer=bool(key.get("signer", False)),
        writable=bool(key.get("writable", False)),
    )


# =========================================================================
# Derived records
# =========================================================================

@dataclass(frozen=True)
class BalanceChange:
    """Net movement of one asset within a transaction."""
    account_index: int
    mint: str
    decimals: int
    delta: float


class EventKind(str, Enum):
    POSITION_OPEN = "position_open"
    FEE_CLAIM = "fee_claim"
    POSITION_CLOSE = "position_close"
    REBALANCE = "rebalance"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedTransaction:
    """A transaction tagged with its lifecycle event and position identity."""
    record: TransactionRecord
    kind: EventKind
    position_id: Optional[str] = None
    pool_id: Optional[str] = None
    token_x: Optional[BalanceChange] = None
    token_y: Optional[BalanceChange] = None
    native_delta: float = 0.0
    estimated_usd: Optional[float] = None

    @property
    def signature(self) -> str:
        return self.record.signature


@dataclass
class LedgerEntry:
    """Open/close counters for one position id."""
    position_id: str
    open_count: int = 0
    close_count: int = 0
    pool_id: Optional[str] = None

    @property
    def multiplicity(self) -> int:
        return max(0, self.open_count - self.close_count)

    @property
    def is_active(self) -> bool:
        return self.open_count > self.close_count


@dataclass
class LedgerSnapshot:
    """Result of folding a wallet's classified history."""
    entries: Dict[str, LedgerEntry] = field(default_factory=dict)
    unidentified_opens: int = 0
    pool_ids: List[str] = field(default_factory=list)

    @property
    def active_positions(self) -> Dict[str, int]:
        """position_id -> net open multiplicity, for active ids only."""
        return {
            pid: entry.multiplicity
            for pid, entry in self.entries.items()
            if entry.is_active
        }

    @property
    def active_count(self) -> int:
        return sum(self.active_positions.values()) + self.unidentified_opens


# =========================================================================
# API payloads
# =========================================================================

class TokenLeg(BaseModel):
    """One asset side of a position."""
    mint: str = ""
    symbol: str = ""
    amount: float = 0.0
    price: float = 0.0
    fee_amount: float = Field(default=0.0, description="Unclaimed fees in this asset")

    @computed_field
    @property
    def value_usd(self) -> float:
        return self.amount * self.price

    @computed_field
    @property
    def fee_value_usd(self) -> float:
        return self.fee_amount * self.price


class PositionValuation(BaseModel):
    """
    Current value of one position.
    total_value_usd is derived from the legs and cannot be assigned.
    """
    model_config = ConfigDict(validate_assignment=True)

    position_id: str
    pool_id: Optional[str] = None
    owner: Optional[str] = None
    pair_name: str = ""
    token_x: TokenLeg = Field(default_factory=TokenLeg)
    token_y: TokenLeg = Field(default_factory=TokenLeg)
    lower_bin_id: Optional[int] = None
    upper_bin_id: Optional[int] = None
    active_bin_id: Optional[int] = None
    is_out_of_range: bool = False
    fee_apr_24h: Optional[float] = Field(default=None, description="Recent fee yield reported by the pool")
    total_fees_claimed_usd: Optional[float] = Field(default=None, description="Fees already claimed, as reported by the API")
    source: str = Field(default="none", description="Strategy that produced the amounts")
    errors: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def total_value_usd(self) -> float:
        return self.token_x.value_usd + self.token_y.value_usd

    @computed_field
    @property
    def unclaimed_fees_usd(self) -> float:
        return self.token_x.fee_value_usd + self.token_y.fee_value_usd


class BalanceChangeSchema(BaseModel):
    mint: str
    decimals: int
    delta: float


class ClassifiedTransactionSchema(BaseModel):
    """API view of a classified transaction."""
    signature: str
    block_time: Optional[int] = None
    kind: EventKind
    position_id: Optional[str] = None
    pool_id: Optional[str] = None
    token_x: Optional[BalanceChangeSchema] = None
    token_y: Optional[BalanceChangeSchema] = None
    native_delta: float = 0.0
    estimated_usd: Optional[float] = None
    success: bool = True

    @classmethod
    def from_classified(cls, tx: ClassifiedTransaction) -> "ClassifiedTransactionSchema":
        def leg(change: Optional[BalanceChange]) -> Optional[BalanceChangeSchema]:
            if change is None:
                return None
            return BalanceChangeSchema(mint=change.mint, decimals=change.decimals, delta=change.delta)

        return cls(
            signature=tx.signature,
            block_time=tx.record.block_time,
            kind=tx.kind,
            position_id=tx.position_id,
            pool_id=tx.pool_id,
            token_x=leg(tx.token_x),
            token_y=leg(tx.token_y),
            native_delta=tx.native_delta,
            estimated_usd=tx.estimated_usd,
            success=tx.record.success,
        )


class LedgerEntrySchema(BaseModel):
    position_id: str
    open_count: int = Field(ge=0)
    close_count: int = Field(ge=0)
    multiplicity: int = Field(ge=0)
    is_active: bool
    pool_id: Optional[str] = None


class LedgerSchema(BaseModel):
    """Active positions as reconstructed from history alone."""
    entries: List[LedgerEntrySchema] = []
    unidentified_opens: int = 0
    active_count: int = 0

    @classmethod
    def from_snapshot(cls, snapshot: LedgerSnapshot) -> "LedgerSchema":
        return cls(
            entries=[
                LedgerEntrySchema(
                    position_id=e.position_id,
                    open_count=e.open_count,
                    close_count=e.close_count,
                    multiplicity=e.multiplicity,
                    is_active=e.is_active,
                    pool_id=e.pool_id,
                )
                for e in snapshot.entries.values()
            ],
            unidentified_opens=snapshot.unidentified_opens,
            active_count=snapshot.active_count,
        )


class WalletReportSchema(BaseModel):
    """Full reconciliation result for one wallet."""
    wallet_address: str
    transactions: List[ClassifiedTransactionSchema] = []
    ledger: LedgerSchema = Field(default_factory=LedgerSchema)
    valuations: List[PositionValuation] = []
    total_value_usd: float = 0.0
    total_unclaimed_fees_usd: float = 0.0
    errors: List[str] = []

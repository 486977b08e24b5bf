"""
Valuation Orchestrator.
Values a DLMM position by walking an ordered chain of data sources.

Strategy order:
1. Indexed accounts  - owner's position records from the indexer, amounts via bin math
2. Token accounts    - SPL balances held directly by the position address
3. Protocol API      - Meteora position -> pair -> owner listing
4. On-chain          - raw position, pair and bin array accounts

The chain stops at the first strategy that values the position above zero
or reports it as existing but empty. Facts learned along the way (pool,
owner, mints, decimals, price, range) are carried forward as hints and
merged into the final record.

A wallet-level pool scan covers the case where no position id is known.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from dlmm_tracker.core.config import settings
from dlmm_tracker.core.exceptions import FetchCancelledError
from dlmm_tracker.models.schemas import PositionValuation, TokenLeg
from dlmm_tracker.services.dlmm_math import is_out_of_range
from dlmm_tracker.services.fetcher import CancelToken, run_bounded
from dlmm_tracker.services.indexer import IndexedAccountsClient, indexer_client
from dlmm_tracker.services.meteora import MeteoraAPIClient, meteora_client
from dlmm_tracker.services.onchain import DLMMAccountReader, OnChainPosition, account_reader
from dlmm_tracker.services.pricing import PriceResolver, price_resolver, split_pair_name, symbol_for
from dlmm_tracker.services.solana_rpc import SolanaRPCClient, solana_client

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS_X = 9
DEFAULT_DECIMALS_Y = 6


# =========================================================================
# Strategy protocol
# =========================================================================

class StrategyStatus(str, Enum):
    VALUED = "valued"
    EMPTY = "empty"
    NO_DATA = "no_data"
    ERROR = "error"


@dataclass
class ValuationHints:
    """Partial facts about a position, any of which may be unknown."""
    pool_id: Optional[str] = None
    owner: Optional[str] = None
    mint_x: Optional[str] = None
    mint_y: Optional[str] = None
    decimals_x: Optional[int] = None
    decimals_y: Optional[int] = None
    pair_name: Optional[str] = None
    pool_price: Optional[float] = None
    lower_bin_id: Optional[int] = None
    upper_bin_id: Optional[int] = None
    active_bin_id: Optional[int] = None
    fee_apr_24h: Optional[float] = None
    total_fees_claimed_usd: Optional[float] = None

    def merged(self, other: "ValuationHints") -> "ValuationHints":
        """Own values win; gaps are filled from other."""
        values = {}
        for f in fields(self):
            mine = getattr(self, f.name)
            values[f.name] = mine if mine is not None else getattr(other, f.name)
        return ValuationHints(**values)


@dataclass
class StrategyResult:
    status: StrategyStatus
    amount_x: float = 0.0
    amount_y: float = 0.0
    fee_x: float = 0.0
    fee_y: float = 0.0
    hints: ValuationHints = field(default_factory=ValuationHints)
    message: str = ""

    @classmethod
    def no_data(cls, message: str = "", hints: Optional[ValuationHints] = None) -> "StrategyResult":
        return cls(StrategyStatus.NO_DATA, message=message, hints=hints or ValuationHints())

    @classmethod
    def error(cls, message: str) -> "StrategyResult":
        return cls(StrategyStatus.ERROR, message=message)


@dataclass
class ValuationContext:
    """Per-position state shared along the strategy chain."""
    position_id: str
    reference_price: float
    token: Optional[CancelToken] = None
    hints: ValuationHints = field(default_factory=ValuationHints)


class ValuationStrategy(Protocol):
    name: str

    async def try_value(self, position_id: str, context: ValuationContext) -> StrategyResult:
        ...


def _onchain_result(position: OnChainPosition) -> StrategyResult:
    hints = ValuationHints(
        pool_id=position.pool_id,
        owner=position.owner,
        mint_x=position.mint_x,
        mint_y=position.mint_y,
        decimals_x=position.decimals_x,
        decimals_y=position.decimals_y,
        pool_price=position.pool_price,
        lower_bin_id=position.lower_bin_id,
        upper_bin_id=position.upper_bin_id,
        active_bin_id=position.active_bin_id,
    )
    status = StrategyStatus.EMPTY if position.is_empty else StrategyStatus.VALUED
    return StrategyResult(
        status,
        amount_x=position.amount_x,
        amount_y=position.amount_y,
        fee_x=position.fee_x,
        fee_y=position.fee_y,
        hints=hints,
    )


def _to_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def pair_hints(pair: dict, pool_id: Optional[str] = None) -> ValuationHints:
    """Hints from a Meteora /pair payload."""
    price = _to_float(pair.get("current_price"), 0.0)
    return ValuationHints(
        pool_id=pair.get("address") or pool_id,
        mint_x=pair.get("mint_x"),
        mint_y=pair.get("mint_y"),
        decimals_x=_to_int(pair.get("mint_x_decimals")) or DEFAULT_DECIMALS_X,
        decimals_y=_to_int(pair.get("mint_y_decimals")) or DEFAULT_DECIMALS_Y,
        pair_name=pair.get("name"),
        pool_price=price if price > 0 else None,
        active_bin_id=_to_int(pair.get("active_bin_id")),
    )


def listing_entry_id(entry: dict) -> str:
    return str(entry.get("position_address") or entry.get("public_key") or entry.get("address") or "")


def listing_result(entry: dict, hints: ValuationHints) -> StrategyResult:
    """Amounts from one owner-listing entry; raw integers scaled by pair decimals."""
    data = entry.get("position_data") or entry
    decimals_x = hints.decimals_x if hints.decimals_x is not None else DEFAULT_DECIMALS_X
    decimals_y = hints.decimals_y if hints.decimals_y is not None else DEFAULT_DECIMALS_Y

    amount_x = _to_float(data.get("total_x_amount")) / 10 ** decimals_x
    amount_y = _to_float(data.get("total_y_amount")) / 10 ** decimals_y
    fee_x = _to_float(data.get("fee_x")) / 10 ** decimals_x
    fee_y = _to_float(data.get("fee_y")) / 10 ** decimals_y

    entry_hints = ValuationHints(
        lower_bin_id=_to_int(data.get("lower_bin_id")),
        upper_bin_id=_to_int(data.get("upper_bin_id")),
    ).merged(hints)

    empty = amount_x <= 0 and amount_y <= 0 and fee_x <= 0 and fee_y <= 0
    return StrategyResult(
        StrategyStatus.EMPTY if empty else StrategyStatus.VALUED,
        amount_x=amount_x,
        amount_y=amount_y,
        fee_x=fee_x,
        fee_y=fee_y,
        hints=entry_hints,
    )


# =========================================================================
# Strategies
# =========================================================================

class IndexedAccountsStrategy:
    """Indexer lookup by owner, then bin math for the matching record."""

    name = "indexed_accounts"

    def __init__(
        self,
        indexer: Optional[IndexedAccountsClient] = None,
        reader: Optional[DLMMAccountReader] = None,
    ):
        self.indexer = indexer or indexer_client
        self.reader = reader or account_reader

    async def try_value(self, position_id: str, context: ValuationContext) -> StrategyResult:
        owner = context.hints.owner
        if not owner:
            return StrategyResult.no_data("owner unknown")

        records = await self.indexer.get_positions_by_owner(owner, context.token)
        record = next((r for r in records if r.position_id == position_id), None)
        if record is None:
            return StrategyResult.no_data("not indexed")

        hints = ValuationHints(
            pool_id=record.pool_id,
            owner=record.owner or owner,
            lower_bin_id=record.lower_bin_id,
            upper_bin_id=record.upper_bin_id,
        )
        position = await self.reader.read_position(position_id, context.token, known=record.to_account())
        if position is None:
            return StrategyResult.no_data("position or pair account unavailable", hints)
        return _onchain_result(position)


class TokenAccountStrategy:
    """Balances held directly by the position address."""

    name = "token_accounts"

    def __init__(
        self,
        rpc: Optional[SolanaRPCClient] = None,
        resolver: Optional[PriceResolver] = None,
    ):
        self.rpc = rpc or solana_client
        self.resolver = resolver or price_resolver

    async def try_value(self, position_id: str, context: ValuationContext) -> StrategyResult:
        accounts = await self.rpc.get_token_accounts_by_owner(position_id, context.token)
        funded = [a for a in accounts if a["amount"] > 0]

        by_mint = {}
        for account in funded:
            by_mint.setdefault(account["mint"], account)

        hints = context.hints
        if hints.mint_x and hints.mint_y:
            leg_x = by_mint.get(hints.mint_x)
            leg_y = by_mint.get(hints.mint_y)
        else:
            legs = list(by_mint.values())[:2]
            if len(legs) < 2:
                return StrategyResult.no_data("fewer than two funded token accounts")
            leg_x, leg_y = legs
            if self.resolver.is_stable(leg_x["mint"]) and not self.resolver.is_stable(leg_y["mint"]):
                leg_x, leg_y = leg_y, leg_x

        if leg_x is None or leg_y is None:
            return StrategyResult.no_data("both legs not funded")

        return StrategyResult(
            StrategyStatus.VALUED,
            amount_x=leg_x["amount"],
            amount_y=leg_y["amount"],
            hints=ValuationHints(
                mint_x=leg_x["mint"],
                mint_y=leg_y["mint"],
                decimals_x=leg_x["decimals"],
                decimals_y=leg_y["decimals"],
            ),
        )


class ProtocolAPIStrategy:
    """Meteora hosted API: position metadata, pair, then owner listing."""

    name = "meteora_api"

    def __init__(self, client: Optional[MeteoraAPIClient] = None):
        self.client = client or meteora_client

    async def try_value(self, position_id: str, context: ValuationContext) -> StrategyResult:
        meta = await self.client.get_position(position_id, context.token)
        if meta is None:
            return StrategyResult.no_data("position unknown to API")

        pool_id = meta.get("pair_address") or context.hints.pool_id
        owner = meta.get("owner") or context.hints.owner
        fee_apr = meta.get("fee_apr_24h")
        claimed = meta.get("total_fee_usd_claimed")
        hints = ValuationHints(
            pool_id=pool_id,
            owner=owner,
            fee_apr_24h=_to_float(fee_apr) if fee_apr is not None else None,
            total_fees_claimed_usd=_to_float(claimed) if claimed is not None else None,
        )
        if not pool_id:
            return StrategyResult.no_data("position has no pair", hints)

        pair = await self.client.get_pair(pool_id, context.token)
        if pair is None:
            return StrategyResult.no_data("pair unknown to API", hints)
        hints = hints.merged(pair_hints(pair, pool_id))

        if not owner:
            return StrategyResult.no_data("owner unknown", hints)

        listing = await self.client.get_user_positions(pool_id, owner, context.token)
        entry = next((e for e in listing if listing_entry_id(e) == position_id), None)
        if entry is None:
            return StrategyResult.no_data("position missing from owner listing", hints)

        return listing_result(entry, hints)


class OnChainStrategy:
    """Raw account reads and bin math."""

    name = "onchain"

    def __init__(self, reader: Optional[DLMMAccountReader] = None):
        self.reader = reader or account_reader

    async def try_value(self, position_id: str, context: ValuationContext) -> StrategyResult:
        position = await self.reader.read_position(position_id, context.token)
        if position is None:
            return StrategyResult.no_data("position account not found")
        return _onchain_result(position)


def default_strategies() -> List[ValuationStrategy]:
    return [
        IndexedAccountsStrategy(),
        TokenAccountStrategy(),
        ProtocolAPIStrategy(),
        OnChainStrategy(),
    ]


# =========================================================================
# Orchestrator
# =========================================================================

class ValuationOrchestrator:
    """
    Runs the strategy chain per position.
    Never raises for a single position; failures land in errors.
    """

    def __init__(
        self,
        strategies: Optional[Sequence[ValuationStrategy]] = None,
        resolver: Optional[PriceResolver] = None,
    ):
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.resolver = resolver or price_resolver

    def build_valuation(
        self,
        position_id: str,
        result: StrategyResult,
        hints: ValuationHints,
        reference_price: float,
        source: str,
        errors: List[str],
    ) -> PositionValuation:
        mint_x = hints.mint_x or ""
        mint_y = hints.mint_y or ""
        price_x, price_y = self.resolver.leg_prices(mint_x, mint_y, hints.pool_price, reference_price)

        name_x, name_y = split_pair_name(hints.pair_name or "")
        symbol_x = symbol_for(mint_x, name_x)
        symbol_y = symbol_for(mint_y, name_y)

        out_of_range = False
        if None not in (hints.active_bin_id, hints.lower_bin_id, hints.upper_bin_id):
            out_of_range = is_out_of_range(hints.active_bin_id, hints.lower_bin_id, hints.upper_bin_id)

        return PositionValuation(
            position_id=position_id,
            pool_id=hints.pool_id,
            owner=hints.owner,
            pair_name=hints.pair_name or (f"{symbol_x}-{symbol_y}" if symbol_x and symbol_y else ""),
            token_x=TokenLeg(
                mint=mint_x, symbol=symbol_x, amount=result.amount_x,
                price=price_x, fee_amount=result.fee_x,
            ),
            token_y=TokenLeg(
                mint=mint_y, symbol=symbol_y, amount=result.amount_y,
                price=price_y, fee_amount=result.fee_y,
            ),
            lower_bin_id=hints.lower_bin_id,
            upper_bin_id=hints.upper_bin_id,
            active_bin_id=hints.active_bin_id,
            is_out_of_range=out_of_range,
            fee_apr_24h=hints.fee_apr_24h,
            total_fees_claimed_usd=hints.total_fees_claimed_usd,
            source=source,
            errors=list(errors),
        )

    async def value_position(
        self,
        position_id: str,
        reference_price: float,
        owner: Optional[str] = None,
        pool_id: Optional[str] = None,
        token: Optional[CancelToken] = None,
    ) -> PositionValuation:
        context = ValuationContext(
            position_id=position_id,
            reference_price=reference_price,
            token=token,
            hints=ValuationHints(pool_id=pool_id, owner=owner),
        )
        errors: List[str] = []
        zero_valued: Optional[Tuple[str, StrategyResult]] = None

        for strategy in self.strategies:
            try:
                result = await strategy.try_value(position_id, context)
            except FetchCancelledError:
                errors.append(f"{strategy.name}: cancelled")
                break
            except Exception as e:
                logger.error("Strategy %s failed for %s: %s", strategy.name, position_id, e)
                errors.append(f"{strategy.name}: {e}")
                continue

            context.hints = context.hints.merged(result.hints)

            if result.status == StrategyStatus.ERROR:
                errors.append(f"{strategy.name}: {result.message}")
                continue
            if result.status == StrategyStatus.NO_DATA:
                logger.debug("Strategy %s has no data for %s: %s", strategy.name, position_id, result.message)
                continue

            valuation = self.build_valuation(
                position_id,
                result,
                result.hints.merged(context.hints),
                reference_price,
                strategy.name,
                errors,
            )
            if result.status == StrategyStatus.EMPTY or valuation.total_value_usd > 0:
                logger.info(
                    "Valued %s via %s: $%.2f",
                    position_id, strategy.name, valuation.total_value_usd,
                )
                return valuation
            if zero_valued is None:
                zero_valued = (strategy.name, result)

        if zero_valued is not None:
            # Later strategies may have filled in more hints
            source, result = zero_valued
            return self.build_valuation(
                position_id,
                result,
                result.hints.merged(context.hints),
                reference_price,
                source,
                errors,
            )

        errors.append("No source could value the position")
        return self.build_valuation(
            position_id,
            StrategyResult.no_data(),
            context.hints,
            reference_price,
            "none",
            errors,
        )

    async def value_positions(
        self,
        position_ids: Sequence[str],
        reference_price: float,
        owner: Optional[str] = None,
        pool_hints: Optional[Dict[str, str]] = None,
        token: Optional[CancelToken] = None,
        concurrency: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> List[PositionValuation]:
        """
        Value many positions concurrently.
        Results keep input order; positions abandoned on cancellation are omitted.
        """
        pool_hints = pool_hints or {}

        outcomes = await run_bounded(
            list(position_ids),
            lambda pid: self.value_position(pid, reference_price, owner, pool_hints.get(pid), token),
            concurrency=concurrency,
            delay=delay,
            token=token,
        )

        valuations = []
        for outcome in outcomes:
            if outcome.ok:
                valuations.append(outcome.value)
            else:
                valuations.append(PositionValuation(
                    position_id=outcome.item,
                    pool_id=pool_hints.get(outcome.item),
                    owner=owner,
                    errors=[str(outcome.error)],
                ))
        return valuations


# =========================================================================
# Pool scan
# =========================================================================

class PoolScanner:
    """
    Finds an owner's positions by probing candidate pools directly.
    Candidates: configured seed pools, pools seen in history, live top pools.
    """

    name = "pool_scan"

    def __init__(
        self,
        client: Optional[MeteoraAPIClient] = None,
        orchestrator: Optional[ValuationOrchestrator] = None,
        seed_pools: Optional[Sequence[str]] = None,
        top_pools_limit: Optional[int] = None,
    ):
        self.client = client or meteora_client
        self.orchestrator = orchestrator or ValuationOrchestrator(strategies=[])
        self.seed_pools = list(seed_pools) if seed_pools is not None else list(settings.seed_pools)
        self.top_pools_limit = settings.top_pools_limit if top_pools_limit is None else top_pools_limit

    async def candidate_pools(
        self,
        extra_pools: Sequence[str] = (),
        token: Optional[CancelToken] = None,
        errors: Optional[List[str]] = None,
    ) -> List[str]:
        candidates: List[str] = []
        for pool in list(self.seed_pools) + list(extra_pools):
            if pool and pool not in candidates:
                candidates.append(pool)

        if self.top_pools_limit > 0:
            try:
                top = await self.client.get_top_pairs(self.top_pools_limit, token)
            except FetchCancelledError:
                raise
            except Exception as e:
                logger.warning("Top pools unavailable: %s", e)
                if errors is not None:
                    errors.append(f"top pools: {e}")
                top = []
            for pair in top:
                address = pair.get("address") if isinstance(pair, dict) else None
                if address and address not in candidates:
                    candidates.append(address)

        return candidates

    async def _probe(
        self,
        pool_id: str,
        owner: str,
        reference_price: float,
        token: Optional[CancelToken],
    ) -> List[PositionValuation]:
        listing = await self.client.get_user_positions(pool_id, owner, token)
        if not listing:
            return []

        pair = await self.client.get_pair(pool_id, token)
        hints = ValuationHints(pool_id=pool_id, owner=owner)
        if pair is not None:
            hints = pair_hints(pair, pool_id).merged(hints)

        hits = []
        for entry in listing:
            position_id = listing_entry_id(entry)
            if not position_id:
                continue
            result = listing_result(entry, hints)
            hits.append(self.orchestrator.build_valuation(
                position_id, result, result.hints, reference_price, self.name, [],
            ))
        return hits

    async def scan(
        self,
        owner: str,
        reference_price: float,
        extra_pools: Sequence[str] = (),
        token: Optional[CancelToken] = None,
    ) -> Tuple[List[PositionValuation], List[str]]:
        """Returns (valuations found, per-pool errors)."""
        errors: List[str] = []
        pools = await self.candidate_pools(extra_pools, token, errors)
        logger.info("Scanning %d pools for positions of %s", len(pools), owner)

        outcomes = await run_bounded(
            pools,
            lambda pool: self._probe(pool, owner, reference_price, token),
            token=token,
        )

        valuations: List[PositionValuation] = []
        seen = set()
        for outcome in outcomes:
            if not outcome.ok:
                errors.append(f"{outcome.item}: {outcome.error}")
                continue
            for valuation in outcome.value:
                if valuation.position_id not in seen:
                    seen.add(valuation.position_id)
                    valuations.append(valuation)
        return valuations, errors


# Global instances
valuation_orchestrator = ValuationOrchestrator()
pool_scanner = PoolScanner(orchestrator=valuation_orchestrator)

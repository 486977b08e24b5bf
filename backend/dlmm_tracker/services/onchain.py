"""
Live DLMM position reads over RPC.

Loads a position account, its pair and the bin arrays it spans, then
applies the bin liquidity formula from dlmm_math.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

from dlmm_tracker.core.config import settings
from dlmm_tracker.core.exceptions import MalformedPayloadError
from dlmm_tracker.services import dlmm_math
from dlmm_tracker.services.fetcher import CancelToken
from dlmm_tracker.services.solana_rpc import SolanaRPCClient, solana_client

logger = logging.getLogger(__name__)


@dataclass
class OnChainPosition:
    """Decoded position state in UI units."""
    position_id: str
    pool_id: str
    owner: str
    mint_x: str
    mint_y: str
    decimals_x: int
    decimals_y: int
    amount_x: float
    amount_y: float
    fee_x: float
    fee_y: float
    lower_bin_id: int
    upper_bin_id: int
    active_bin_id: int
    pool_price: float

    @property
    def is_empty(self) -> bool:
        return self.amount_x <= 0 and self.amount_y <= 0 and self.fee_x <= 0 and self.fee_y <= 0


class DLMMAccountReader:

    def __init__(self, rpc: Optional[SolanaRPCClient] = None, program_id: Optional[str] = None):
        self.rpc = rpc or solana_client
        self.program_id = program_id or settings.dlmm_program_id

    async def read_position(
        self,
        position_id: str,
        token: Optional[CancelToken] = None,
        known: Optional[dlmm_math.PositionAccount] = None,
    ) -> Optional[OnChainPosition]:
        """
        Current amounts of a position, or None if the account does not exist.

        `known` skips the position account read when an index already
        supplied its shares, range and fee checkpoints. A `known` record
        without fee checkpoints still needs the account read.
        """
        position = known if known is not None and known.fee_infos else None
        if position is None:
            data = await self.rpc.get_account_data(position_id, token)
            if data is None:
                return None
            try:
                position = dlmm_math.decode_position(data)
            except ValueError as e:
                raise MalformedPayloadError(f"Position {position_id}: {e}", source="rpc") from e

        pair_data = await self.rpc.get_account_data(position.lb_pair, token)
        if pair_data is None:
            return None
        try:
            pair = dlmm_math.decode_lb_pair(pair_data)
        except ValueError as e:
            raise MalformedPayloadError(f"Pair {position.lb_pair}: {e}", source="rpc") from e

        decimals_x = await self.rpc.get_mint_decimals(pair.token_x_mint, token)
        decimals_y = await self.rpc.get_mint_decimals(pair.token_y_mint, token)

        raw_arrays = await self.rpc.get_program_accounts(
            self.program_id,
            dlmm_math.bin_array_filters(position.lb_pair),
            token,
        )
        arrays = []
        for address, data in raw_arrays:
            try:
                arrays.append(dlmm_math.decode_bin_array(data))
            except ValueError as e:
                logger.warning("Skipping bin array %s: %s", address, e)

        wanted = dlmm_math.needed_bin_arrays(position.lower_bin_id, position.upper_bin_id)
        bins = dlmm_math.merge_bins(arrays, wanted)

        raw_x, raw_y = dlmm_math.position_amounts(position, bins)
        fee_x, fee_y = dlmm_math.position_pending_fees(position, bins)

        return OnChainPosition(
            position_id=position_id,
            pool_id=position.lb_pair,
            owner=position.owner,
            mint_x=pair.token_x_mint,
            mint_y=pair.token_y_mint,
            decimals_x=decimals_x,
            decimals_y=decimals_y,
            amount_x=dlmm_math.to_ui_amount(raw_x, decimals_x),
            amount_y=dlmm_math.to_ui_amount(raw_y, decimals_y),
            fee_x=dlmm_math.to_ui_amount(fee_x, decimals_x),
            fee_y=dlmm_math.to_ui_amount(fee_y, decimals_y),
            lower_bin_id=position.lower_bin_id,
            upper_bin_id=position.upper_bin_id,
            active_bin_id=pair.active_id,
            pool_price=dlmm_math.price_from_bin_id(pair.active_id, pair.bin_step, decimals_x, decimals_y),
        )


account_reader = DLMMAccountReader()

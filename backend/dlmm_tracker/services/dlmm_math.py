"""
DLMM account decoding and bin liquidity math.

Account layouts (little-endian, Anchor 8-byte discriminator first):

PositionV2
    lb_pair            pubkey          8
    owner              pubkey          40
    liquidity_shares   [u128; 70]      72
    reward_infos       [48 B; 70]      1192
    fee_infos          [48 B; 70]      4552   (fee_x/y_per_token_complete u128, fee_x/y_pending u64)
    lower_bin_id       i32             7912
    upper_bin_id       i32             7916

LbPair
    active_id          i32             76
    bin_step           u16             80
    token_x_mint       pubkey          88
    token_y_mint       pubkey          120

BinArray (10136 bytes)
    index              i64             8
    lb_pair            pubkey          24
    bins               [144 B; 70]     56
"""
from __future__ import annotations
import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import base58


MAX_BIN_PER_ARRAY = 70
MAX_BIN_PER_POSITION = 70
SCALE_OFFSET = 64
BASIS_POINT_MAX = 10_000

DISCRIMINATOR_SIZE = 8
PUBKEY_SIZE = 32

POSITION_LB_PAIR_OFFSET = 8
POSITION_OWNER_OFFSET = 40
POSITION_SHARES_OFFSET = 72
POSITION_REWARD_INFOS_OFFSET = POSITION_SHARES_OFFSET + 16 * MAX_BIN_PER_POSITION
POSITION_FEE_INFOS_OFFSET = POSITION_REWARD_INFOS_OFFSET + 48 * MAX_BIN_PER_POSITION
POSITION_LOWER_BIN_OFFSET = POSITION_FEE_INFOS_OFFSET + 48 * MAX_BIN_PER_POSITION
POSITION_MIN_SIZE = POSITION_LOWER_BIN_OFFSET + 8

LB_PAIR_ACTIVE_ID_OFFSET = 76
LB_PAIR_BIN_STEP_OFFSET = 80
LB_PAIR_TOKEN_X_OFFSET = 88
LB_PAIR_TOKEN_Y_OFFSET = 120
LB_PAIR_MIN_SIZE = LB_PAIR_TOKEN_Y_OFFSET + PUBKEY_SIZE

BIN_ARRAY_LB_PAIR_OFFSET = 24
BIN_ARRAY_BINS_OFFSET = 56
BIN_SIZE = 144
BIN_ARRAY_SIZE = BIN_ARRAY_BINS_OFFSET + BIN_SIZE * MAX_BIN_PER_ARRAY


def _pubkey(data: bytes, offset: int) -> str:
    return base58.b58encode(data[offset:offset + PUBKEY_SIZE]).decode("ascii")


def _u128(data: bytes, offset: int) -> int:
    low, high = struct.unpack_from("<QQ", data, offset)
    return (high << 64) | low


def _u64(data: bytes, offset: int) -> int:
    return struct.unpack_from("<Q", data, offset)[0]


# =========================================================================
# Account types
# =========================================================================

@dataclass
class FeeInfo:
    fee_x_per_token_complete: int = 0
    fee_y_per_token_complete: int = 0
    fee_x_pending: int = 0
    fee_y_pending: int = 0


@dataclass
class PositionAccount:
    lb_pair: str
    owner: str
    lower_bin_id: int
    upper_bin_id: int
    liquidity_shares: List[int] = field(default_factory=list)
    fee_infos: List[FeeInfo] = field(default_factory=list)

    def share_for_bin(self, bin_id: int) -> int:
        offset = bin_id - self.lower_bin_id
        if 0 <= offset < len(self.liquidity_shares):
            return self.liquidity_shares[offset]
        return 0

    def fee_info_for_bin(self, bin_id: int) -> FeeInfo:
        offset = bin_id - self.lower_bin_id
        if 0 <= offset < len(self.fee_infos):
            return self.fee_infos[offset]
        return FeeInfo()


@dataclass
class LbPairAccount:
    active_id: int
    bin_step: int
    token_x_mint: str
    token_y_mint: str


@dataclass
class Bin:
    amount_x: int = 0
    amount_y: int = 0
    price: int = 0
    liquidity_supply: int = 0
    fee_amount_x_per_token_stored: int = 0
    fee_amount_y_per_token_stored: int = 0


@dataclass
class BinArrayAccount:
    index: int
    lb_pair: str
    bins: List[Bin] = field(default_factory=list)

    def bins_by_id(self) -> Dict[int, Bin]:
        lower = self.index * MAX_BIN_PER_ARRAY
        return {lower + i: b for i, b in enumerate(self.bins)}


# =========================================================================
# Decoding
# =========================================================================

def decode_position(data: bytes) -> PositionAccount:
    if len(data) < POSITION_MIN_SIZE:
        raise ValueError(f"Position account too short: {len(data)} bytes")

    shares = [
        _u128(data, POSITION_SHARES_OFFSET + 16 * i)
        for i in range(MAX_BIN_PER_POSITION)
    ]
    fee_infos = []
    for i in range(MAX_BIN_PER_POSITION):
        base = POSITION_FEE_INFOS_OFFSET + 48 * i
        fee_infos.append(FeeInfo(
            fee_x_per_token_complete=_u128(data, base),
            fee_y_per_token_complete=_u128(data, base + 16),
            fee_x_pending=_u64(data, base + 32),
            fee_y_pending=_u64(data, base + 40),
        ))
    lower, upper = struct.unpack_from("<ii", data, POSITION_LOWER_BIN_OFFSET)

    return PositionAccount(
        lb_pair=_pubkey(data, POSITION_LB_PAIR_OFFSET),
        owner=_pubkey(data, POSITION_OWNER_OFFSET),
        lower_bin_id=lower,
        upper_bin_id=upper,
        liquidity_shares=shares,
        fee_infos=fee_infos,
    )


def decode_lb_pair(data: bytes) -> LbPairAccount:
    if len(data) < LB_PAIR_MIN_SIZE:
        raise ValueError(f"LbPair account too short: {len(data)} bytes")
    active_id = struct.unpack_from("<i", data, LB_PAIR_ACTIVE_ID_OFFSET)[0]
    bin_step = struct.unpack_from("<H", data, LB_PAIR_BIN_STEP_OFFSET)[0]
    return LbPairAccount(
        active_id=active_id,
        bin_step=bin_step,
        token_x_mint=_pubkey(data, LB_PAIR_TOKEN_X_OFFSET),
        token_y_mint=_pubkey(data, LB_PAIR_TOKEN_Y_OFFSET),
    )


def decode_bin_array(data: bytes) -> BinArrayAccount:
    if len(data) < BIN_ARRAY_SIZE:
        raise ValueError(f"BinArray account too short: {len(data)} bytes")
    index = struct.unpack_from("<q", data, DISCRIMINATOR_SIZE)[0]
    bins = []
    for i in range(MAX_BIN_PER_ARRAY):
        base = BIN_ARRAY_BINS_OFFSET + BIN_SIZE * i
        bins.append(Bin(
            amount_x=_u64(data, base),
            amount_y=_u64(data, base + 8),
            price=_u128(data, base + 16),
            liquidity_supply=_u128(data, base + 32),
            # reward_per_token_stored [u128; 2] sits at +48
            fee_amount_x_per_token_stored=_u128(data, base + 80),
            fee_amount_y_per_token_stored=_u128(data, base + 96),
        ))
    return BinArrayAccount(index=index, lb_pair=_pubkey(data, BIN_ARRAY_LB_PAIR_OFFSET), bins=bins)


# =========================================================================
# Math
# =========================================================================

def bin_array_index(bin_id: int) -> int:
    """Index of the bin array holding bin_id (floor division, also for negatives)."""
    return bin_id // MAX_BIN_PER_ARRAY


def price_from_bin_id(bin_id: int, bin_step: int, decimals_x: int, decimals_y: int) -> float:
    """UI price of X in Y at a bin."""
    raw = (1 + bin_step / BASIS_POINT_MAX) ** bin_id
    return raw * 10 ** (decimals_x - decimals_y)


def is_out_of_range(active_bin_id: int, lower_bin_id: int, upper_bin_id: int) -> bool:
    return active_bin_id < lower_bin_id or active_bin_id > upper_bin_id


def position_amounts(position: PositionAccount, bins: Dict[int, Bin]) -> Tuple[int, int]:
    """Raw (x, y) token amounts owed to the position across its bins."""
    total_x = 0
    total_y = 0
    for bin_id in range(position.lower_bin_id, position.upper_bin_id + 1):
        share = position.share_for_bin(bin_id)
        bin_ = bins.get(bin_id)
        if share == 0 or bin_ is None or bin_.liquidity_supply == 0:
            continue
        total_x += bin_.amount_x * share // bin_.liquidity_supply
        total_y += bin_.amount_y * share // bin_.liquidity_supply
    return total_x, total_y


def position_pending_fees(position: PositionAccount, bins: Dict[int, Bin]) -> Tuple[int, int]:
    """Raw (x, y) unclaimed swap fees: accrued since last checkpoint plus pending."""
    fee_x = 0
    fee_y = 0
    for bin_id in range(position.lower_bin_id, position.upper_bin_id + 1):
        info = position.fee_info_for_bin(bin_id)
        fee_x += info.fee_x_pending
        fee_y += info.fee_y_pending

        share = position.share_for_bin(bin_id)
        bin_ = bins.get(bin_id)
        if share == 0 or bin_ is None:
            continue
        liquidity = share >> SCALE_OFFSET
        delta_x = max(0, bin_.fee_amount_x_per_token_stored - info.fee_x_per_token_complete)
        delta_y = max(0, bin_.fee_amount_y_per_token_stored - info.fee_y_per_token_complete)
        fee_x += (liquidity * delta_x) >> SCALE_OFFSET
        fee_y += (liquidity * delta_y) >> SCALE_OFFSET
    return fee_x, fee_y


def bin_array_filters(lb_pair: str) -> List[dict]:
    """getProgramAccounts filters selecting all bin arrays of one pair."""
    return [
        {"dataSize": BIN_ARRAY_SIZE},
        {"memcmp": {"offset": BIN_ARRAY_LB_PAIR_OFFSET, "bytes": lb_pair}},
    ]


def to_ui_amount(raw: int, decimals: int) -> float:
    return raw / (10 ** decimals)


def needed_bin_arrays(lower_bin_id: int, upper_bin_id: int) -> List[int]:
    return list(range(bin_array_index(lower_bin_id), bin_array_index(upper_bin_id) + 1))


def merge_bins(arrays: List[BinArrayAccount], wanted: Optional[List[int]] = None) -> Dict[int, Bin]:
    bins: Dict[int, Bin] = {}
    for array in arrays:
        if wanted is not None and array.index not in wanted:
            continue
        bins.update(array.bins_by_id())
    return bins

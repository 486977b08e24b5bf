import asyncio
import struct

import base58
import pytest

from dlmm_tracker.services import dlmm_math
from dlmm_tracker.services.indexer import IndexedPosition
from dlmm_tracker.services.onchain import DLMMAccountReader
from dlmm_tracker.services.valuation import (
    IndexedAccountsStrategy,
    StrategyStatus,
    ValuationContext,
    ValuationHints,
)
from dlmm_tracker.services.dlmm_math import (
    Bin,
    PositionAccount,
    FeeInfo,
    bin_array_index,
    is_out_of_range,
    position_amounts,
    position_pending_fees,
    price_from_bin_id,
)

PAIR_BYTES = bytes(range(32))
OWNER_BYTES = bytes(range(32, 64))
MINT_X_BYTES = bytes([7] * 32)
MINT_Y_BYTES = bytes([9] * 32)


def b58(raw: bytes) -> str:
    return base58.b58encode(raw).decode("ascii")


def test_out_of_range_flag():
    assert is_out_of_range(50, 10, 40) is True
    assert is_out_of_range(50, 10, 60) is False
    assert is_out_of_range(10, 10, 60) is False
    assert is_out_of_range(9, 10, 60) is True


@pytest.mark.parametrize("bin_id, expected", [(0, 0), (69, 0), (70, 1), (-1, -1), (-70, -1), (-71, -2)])
def test_bin_array_index_floors(bin_id, expected):
    assert bin_array_index(bin_id) == expected


def test_price_from_bin_id():
    assert price_from_bin_id(0, 10, 9, 6) == pytest.approx(1000.0)
    assert price_from_bin_id(100, 25, 6, 6) == pytest.approx(1.0025 ** 100)


def test_position_amounts_use_share_of_liquidity():
    position = PositionAccount(
        lb_pair="pair", owner="owner", lower_bin_id=10, upper_bin_id=12,
        liquidity_shares=[50, 25, 0],
    )
    bins = {
        10: Bin(amount_x=1000, amount_y=0, liquidity_supply=100),
        11: Bin(amount_x=0, amount_y=400, liquidity_supply=100),
        12: Bin(amount_x=999, amount_y=999, liquidity_supply=100),
    }

    assert position_amounts(position, bins) == (500, 100)


def test_missing_bins_are_skipped():
    position = PositionAccount(
        lb_pair="pair", owner="owner", lower_bin_id=0, upper_bin_id=1,
        liquidity_shares=[10, 10],
    )

    assert position_amounts(position, {1: Bin(amount_x=30, liquidity_supply=0)}) == (0, 0)


def test_pending_fees_include_accrued_and_pending():
    share = 4 << 64
    position = PositionAccount(
        lb_pair="pair", owner="owner", lower_bin_id=0, upper_bin_id=0,
        liquidity_shares=[share],
        fee_infos=[FeeInfo(fee_x_per_token_complete=1 << 64, fee_y_per_token_complete=0,
                           fee_x_pending=5, fee_y_pending=1)],
    )
    bins = {0: Bin(fee_amount_x_per_token_stored=3 << 64, fee_amount_y_per_token_stored=1 << 64)}

    # x: 4 * (3 - 1) + 5, y: 4 * 1 + 1
    assert position_pending_fees(position, bins) == (13, 5)


def test_decode_lb_pair():
    data = bytearray(200)
    struct.pack_into("<i", data, 76, -1234)
    struct.pack_into("<H", data, 80, 25)
    data[88:120] = MINT_X_BYTES
    data[120:152] = MINT_Y_BYTES

    pair = dlmm_math.decode_lb_pair(bytes(data))

    assert pair.active_id == -1234
    assert pair.bin_step == 25
    assert pair.token_x_mint == b58(MINT_X_BYTES)
    assert pair.token_y_mint == b58(MINT_Y_BYTES)


def test_decode_position():
    data = bytearray(dlmm_math.POSITION_MIN_SIZE + 100)
    data[8:40] = PAIR_BYTES
    data[40:72] = OWNER_BYTES
    big_share = (3 << 64) | 7
    struct.pack_into("<QQ", data, 72, big_share & ((1 << 64) - 1), big_share >> 64)
    fee_base = dlmm_math.POSITION_FEE_INFOS_OFFSET
    struct.pack_into("<QQQQQQ", data, fee_base, 11, 0, 12, 0, 13, 14)
    struct.pack_into("<ii", data, dlmm_math.POSITION_LOWER_BIN_OFFSET, -5, 64)

    position = dlmm_math.decode_position(bytes(data))

    assert position.lb_pair == b58(PAIR_BYTES)
    assert position.owner == b58(OWNER_BYTES)
    assert position.lower_bin_id == -5
    assert position.upper_bin_id == 64
    assert position.liquidity_shares[0] == big_share
    assert len(position.liquidity_shares) == 70
    assert position.fee_infos[0] == FeeInfo(11, 12, 13, 14)


def test_decode_bin_array():
    data = bytearray(dlmm_math.BIN_ARRAY_SIZE)
    struct.pack_into("<q", data, 8, -2)
    data[24:56] = PAIR_BYTES
    second_bin = dlmm_math.BIN_ARRAY_BINS_OFFSET + dlmm_math.BIN_SIZE
    struct.pack_into("<QQ", data, second_bin, 1000, 2000)
    struct.pack_into("<QQ", data, second_bin + 32, 500, 0)

    array = dlmm_math.decode_bin_array(bytes(data))

    assert array.index == -2
    assert array.lb_pair == b58(PAIR_BYTES)
    bins = array.bins_by_id()
    assert min(bins) == -140
    assert bins[-139].amount_x == 1000
    assert bins[-139].amount_y == 2000
    assert bins[-139].liquidity_supply == 500


def test_short_accounts_are_rejected():
    with pytest.raises(ValueError):
        dlmm_math.decode_position(b"\x00" * 100)
    with pytest.raises(ValueError):
        dlmm_math.decode_bin_array(b"\x00" * 100)


class FakeAccountsRPC:
    def __init__(self, accounts, decimals, bin_arrays):
        self.accounts = accounts
        self.decimals = decimals
        self.bin_arrays = bin_arrays

    async def get_account_data(self, address, token=None):
        return self.accounts.get(address)

    async def get_mint_decimals(self, mint, token=None):
        return self.decimals[mint]

    async def get_program_accounts(self, program_id, filters=None, token=None):
        return self.bin_arrays


def _bin_array_bytes(index, bins, fees=None):
    data = bytearray(dlmm_math.BIN_ARRAY_SIZE)
    struct.pack_into("<q", data, 8, index)
    data[24:56] = PAIR_BYTES
    for offset, (amount_x, amount_y, supply) in bins.items():
        base = dlmm_math.BIN_ARRAY_BINS_OFFSET + dlmm_math.BIN_SIZE * offset
        struct.pack_into("<QQ", data, base, amount_x, amount_y)
        struct.pack_into("<QQ", data, base + 32, supply & ((1 << 64) - 1), supply >> 64)
    for offset, (stored_x, stored_y) in (fees or {}).items():
        base = dlmm_math.BIN_ARRAY_BINS_OFFSET + dlmm_math.BIN_SIZE * offset
        struct.pack_into("<QQ", data, base + 80, stored_x & ((1 << 64) - 1), stored_x >> 64)
        struct.pack_into("<QQ", data, base + 96, stored_y & ((1 << 64) - 1), stored_y >> 64)
    return bytes(data)


def test_account_reader_values_position_from_bins():
    position = bytearray(dlmm_math.POSITION_MIN_SIZE)
    position[8:40] = PAIR_BYTES
    position[40:72] = OWNER_BYTES
    struct.pack_into("<QQ", position, 72, 50, 0)
    struct.pack_into("<QQ", position, 88, 25, 0)
    struct.pack_into("<ii", position, dlmm_math.POSITION_LOWER_BIN_OFFSET, 0, 1)

    pair = bytearray(200)
    struct.pack_into("<i", pair, 76, 5)
    struct.pack_into("<H", pair, 80, 10)
    pair[88:120] = MINT_X_BYTES
    pair[120:152] = MINT_Y_BYTES

    rpc = FakeAccountsRPC(
        accounts={"P1": bytes(position), b58(PAIR_BYTES): bytes(pair)},
        decimals={b58(MINT_X_BYTES): 9, b58(MINT_Y_BYTES): 6},
        bin_arrays=[
            ("arr0", _bin_array_bytes(0, {0: (2_000_000_000, 0, 100), 1: (0, 400_000_000, 100)})),
            ("arr9", _bin_array_bytes(9, {0: (999, 999, 1)})),
            ("short", b"\x00" * 10),
        ],
    )
    reader = DLMMAccountReader(rpc=rpc, program_id="prog")

    result = asyncio.run(reader.read_position("P1"))

    assert result.owner == b58(OWNER_BYTES)
    assert result.amount_x == pytest.approx(1.0)
    assert result.amount_y == pytest.approx(100.0)
    assert result.active_bin_id == 5
    assert result.pool_price == pytest.approx(1.001 ** 5 * 1000)
    assert not result.is_empty


def test_account_reader_missing_position_is_none():
    reader = DLMMAccountReader(rpc=FakeAccountsRPC({}, {}, []), program_id="prog")

    assert asyncio.run(reader.read_position("missing")) is None


def _checkpointed_rpc(stored_fee_x):
    """Position owning all of bin 0, fee checkpoint at 50 per token."""
    share = 1 << 64
    position = bytearray(dlmm_math.POSITION_MIN_SIZE)
    position[8:40] = PAIR_BYTES
    position[40:72] = OWNER_BYTES
    struct.pack_into("<QQ", position, 72, 0, 1)
    struct.pack_into("<QQ", position, dlmm_math.POSITION_FEE_INFOS_OFFSET, 0, 50)
    struct.pack_into("<ii", position, dlmm_math.POSITION_LOWER_BIN_OFFSET, 0, 0)

    pair = bytearray(200)
    struct.pack_into("<H", pair, 80, 10)
    pair[88:120] = MINT_X_BYTES
    pair[120:152] = MINT_Y_BYTES

    return FakeAccountsRPC(
        accounts={"P1": bytes(position), b58(PAIR_BYTES): bytes(pair)},
        decimals={b58(MINT_X_BYTES): 9, b58(MINT_Y_BYTES): 6},
        bin_arrays=[("arr0", _bin_array_bytes(
            0, {0: (1_000_000_000, 0, share)}, fees={0: (stored_fee_x, 0)},
        ))],
    )


class FakeIndexer:
    async def get_positions_by_owner(self, owner, token=None):
        return [IndexedPosition(
            position_id="P1", pool_id=b58(PAIR_BYTES), owner=b58(OWNER_BYTES),
            lower_bin_id=0, upper_bin_id=0, liquidity_shares=[1 << 64],
        )]


def _value_indexed(rpc):
    strategy = IndexedAccountsStrategy(
        indexer=FakeIndexer(),
        reader=DLMMAccountReader(rpc=rpc, program_id="prog"),
    )
    context = ValuationContext(
        position_id="P1", reference_price=150.0,
        hints=ValuationHints(owner=b58(OWNER_BYTES)),
    )
    return asyncio.run(strategy.try_value("P1", context))


def test_indexed_position_uses_account_fee_checkpoints():
    result = _value_indexed(_checkpointed_rpc(stored_fee_x=50 << 64))

    assert result.status == StrategyStatus.VALUED
    assert result.amount_x == pytest.approx(1.0)
    assert result.fee_x == 0
    assert result.fee_y == 0


def test_indexed_position_fees_accrued_past_checkpoint():
    result = _value_indexed(_checkpointed_rpc(stored_fee_x=53 << 64))

    # one unit of liquidity times three per token, in 9-decimal units
    assert result.fee_x == pytest.approx(3e-9)

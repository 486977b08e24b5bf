import pytest

from dlmm_tracker.services.pricing import PriceResolver, split_pair_name, symbol_for
from factories import MINT_A, MINT_B, SOL, USDC

resolver = PriceResolver(stable_mints=[USDC], native_mint=SOL)


def test_price_of_known_and_unknown_mints():
    assert resolver.price_of(USDC, 150.0) == 1.0
    assert resolver.price_of(SOL, 150.0) == 150.0
    assert resolver.price_of(MINT_A, 150.0) == 1.0


def test_stable_quote_leg_prices_base_from_pool():
    assert resolver.leg_prices(SOL, USDC, 200.0, 150.0) == (200.0, 1.0)


def test_stable_base_leg_inverts_pool_price():
    price_x, price_y = resolver.leg_prices(USDC, MINT_A, 0.5, 150.0)

    assert price_x == 1.0
    assert price_y == pytest.approx(2.0)


def test_native_leg_without_stable_uses_reference_price():
    assert resolver.leg_prices(MINT_A, SOL, 0.01, 150.0) == (1.0, 150.0)
    assert resolver.leg_prices(SOL, MINT_B, 80.0, 150.0) == (150.0, 1.0)


def test_missing_pool_price_falls_back_to_resolver():
    assert resolver.leg_prices(SOL, USDC, None, 150.0) == (150.0, 1.0)
    assert resolver.leg_prices(MINT_A, USDC, 0, 150.0) == (1.0, 1.0)


def test_unrelated_pair_defaults_to_one():
    assert resolver.leg_prices(MINT_A, MINT_B, 3.0, 150.0) == (1.0, 1.0)


def test_symbols():
    assert symbol_for(SOL) == "SOL"
    assert symbol_for(MINT_A, "JUP") == "JUP"
    assert symbol_for(MINT_A) == "Mint"
    assert split_pair_name("SOL-USDC") == ("SOL", "USDC")
    assert split_pair_name("") == ("", "")

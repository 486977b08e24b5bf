"""
USD price resolution for position legs.

No price feed is consulted here. Stable mints are worth 1.0, the native
mint is worth whatever reference price the caller supplies, and anything
else defaults to 1.0. Pool prices, when known, fill in the non-stable leg.
"""
from __future__ import annotations
from typing import Iterable, Optional, Tuple

from dlmm_tracker.core.config import settings


KNOWN_SYMBOLS = {
    "So11111111111111111111111111111111111111112": "SOL",
    "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v": "USDC",
    "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB": "USDT",
}

DEFAULT_PRICE = 1.0


class PriceResolver:
    """Stateless mint -> USD unit price lookup."""

    def __init__(
        self,
        stable_mints: Optional[Iterable[str]] = None,
        native_mint: Optional[str] = None,
    ):
        self.stable_mints = frozenset(stable_mints if stable_mints is not None else settings.stable_mints)
        self.native_mint = native_mint or settings.native_mint

    def is_stable(self, mint: str) -> bool:
        return mint in self.stable_mints

    def is_native(self, mint: str) -> bool:
        return mint == self.native_mint

    def price_of(self, mint: str, reference_price: float) -> float:
        if self.is_stable(mint):
            return 1.0
        if self.is_native(mint):
            return reference_price
        return DEFAULT_PRICE

    def leg_prices(
        self,
        mint_x: str,
        mint_y: str,
        pool_price: Optional[float],
        reference_price: float,
    ) -> Tuple[float, float]:
        """
        Unit prices for (X, Y).

        pool_price is the pool's quote of X in units of Y. With a stable Y
        that is X's USD price directly; with a stable X, Y is worth its
        inverse.
        """
        have_pool_price = pool_price is not None and pool_price > 0

        if self.is_stable(mint_y):
            price_x = pool_price if have_pool_price else self.price_of(mint_x, reference_price)
            return price_x, 1.0

        if self.is_stable(mint_x):
            price_y = 1.0 / pool_price if have_pool_price else self.price_of(mint_y, reference_price)
            return 1.0, price_y

        if self.is_native(mint_x):
            return reference_price, DEFAULT_PRICE
        if self.is_native(mint_y):
            return DEFAULT_PRICE, reference_price

        return self.price_of(mint_x, reference_price), self.price_of(mint_y, reference_price)


def symbol_for(mint: str, fallback: str = "") -> str:
    """Short ticker for well-known mints, else fallback or a truncated mint."""
    if mint in KNOWN_SYMBOLS:
        return KNOWN_SYMBOLS[mint]
    if fallback:
        return fallback
    return mint[:4] if mint else ""


def split_pair_name(name: str) -> Tuple[str, str]:
    """'SOL-USDC' -> ('SOL', 'USDC'). Missing parts come back empty."""
    parts = (name or "").split("-")
    if len(parts) >= 2:
        return parts[0].strip(), parts[1].strip()
    return (parts[0].strip() if parts else ""), ""


price_resolver = PriceResolver()

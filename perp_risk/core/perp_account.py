"""
Per-market perp position of one margin account.

Units/conventions:
- `base_position`, `bids_quantity`, `asks_quantity`, `taker_base` are signed
  base lots (long > 0, short < 0).
- `taker_quote` is signed quote lots.
- `quote_position` and the settled-funding fields are `FixedPoint128` native
  quote; `quote_position` excludes funding that has not been settled yet.

Every method is a pure function of the record plus the market parameters
passed in. Lot values are formed as exact int products (`lots * lot_size`)
before being lifted into fixed point, which keeps the rounding identical to
the on-chain program.
"""

from __future__ import annotations

from dataclasses import dataclass

from .fixednum import ZERO, FixedPoint128
from .market import PerpMarketCache, PerpMarketInfo


def _require_int(value: object, *, name: str) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an int")


@dataclass(frozen=True)
class PerpAccount:
    base_position: int = 0
    quote_position: FixedPoint128 = ZERO
    long_settled_funding: FixedPoint128 = ZERO
    short_settled_funding: FixedPoint128 = ZERO
    bids_quantity: int = 0
    asks_quantity: int = 0
    taker_base: int = 0
    taker_quote: int = 0
    rewards_accrued: int = 0

    def __post_init__(self) -> None:
        for name in ("base_position", "bids_quantity", "asks_quantity", "taker_base", "taker_quote", "rewards_accrued"):
            _require_int(getattr(self, name), name=name)
        for name in ("quote_position", "long_settled_funding", "short_settled_funding"):
            if not isinstance(getattr(self, name), FixedPoint128):
                raise TypeError(f"{name} must be a FixedPoint128")

    def is_empty(self) -> bool:
        return (
            self.base_position == 0
            and self.quote_position.is_zero()
            and not self.has_open_orders()
            and self.taker_base == 0
            and self.taker_quote == 0
        )

    def has_open_orders(self) -> bool:
        return self.bids_quantity != 0 or self.asks_quantity != 0

    # -- Funding -------------------------------------------------------------

    def unsettled_funding(self, cache: PerpMarketCache) -> FixedPoint128:
        """Funding owed (positive) or receivable (negative) since the last settlement."""
        base = FixedPoint128.from_int(self.base_position)
        if self.base_position < 0:
            return base.mul(cache.short_funding.sub(self.short_settled_funding))
        return base.mul(cache.long_funding.sub(self.long_settled_funding))

    def effective_quote_position(self, cache: PerpMarketCache) -> FixedPoint128:
        """Quote position after deducting unsettled funding."""
        return self.quote_position.sub(self.unsettled_funding(cache))

    # -- Valuation -----------------------------------------------------------

    def base_position_native(self, market: PerpMarketInfo) -> FixedPoint128:
        return market.base_lots_to_native(self.base_position)

    def base_position_ui(self, market: PerpMarketInfo, base_decimals: int) -> float:
        """Lossy float for display."""
        return market.base_lots_to_ui(self.base_position, base_decimals)

    def pnl(self, market: PerpMarketInfo, cache: PerpMarketCache, price: FixedPoint128) -> FixedPoint128:
        """Mark-to-market value of the position including unsettled funding."""
        quote = self.effective_quote_position(cache)
        if self.base_position == 0:
            return quote
        return market.base_lots_to_native(self.base_position).mul(price).add(quote)

    def sim_position_health(
        self,
        market: PerpMarketInfo,
        price: FixedPoint128,
        asset_weight: FixedPoint128,
        liab_weight: FixedPoint128,
        base_change: int,
    ) -> FixedPoint128:
        """Weighted value if `base_change` lots were filled at `price`."""
        new_base = self.base_position + base_change
        health = self.quote_position.sub(market.base_lots_to_native(base_change).mul(price))
        weight = asset_weight if new_base > 0 else liab_weight
        return health.add(market.base_lots_to_native(new_base).mul(price).mul(weight))

    def health(
        self,
        market: PerpMarketInfo,
        price: FixedPoint128,
        asset_weight: FixedPoint128,
        liab_weight: FixedPoint128,
        long_funding: FixedPoint128,
        short_funding: FixedPoint128,
    ) -> FixedPoint128:
        """
        Health contribution of this market.

        Resting bids and asks are both assumed to fill in full and the worse
        of the two outcomes is used. The funding adjustment matches the
        on-chain program term for term.
        """
        bids_health = self.sim_position_health(market, price, asset_weight, liab_weight, self.bids_quantity)
        asks_health = self.sim_position_health(market, price, asset_weight, liab_weight, -self.asks_quantity)
        health = bids_health.min(asks_health)

        base = FixedPoint128.from_int(self.base_position)
        if self.base_position > 0:
            return health.sub(long_funding.sub(self.long_settled_funding).mul(base))
        return health.add(short_funding.sub(self.short_settled_funding).mul(base))

    def _real_quote_position(self, short_funding: FixedPoint128, long_funding: FixedPoint128) -> FixedPoint128:
        return self.effective_quote_position(PerpMarketCache(long_funding=long_funding, short_funding=short_funding))

    def asset_value(
        self,
        market: PerpMarketInfo,
        price: FixedPoint128,
        short_funding: FixedPoint128,
        long_funding: FixedPoint128,
    ) -> FixedPoint128:
        """Non-negative: long base value plus positive funding-adjusted quote."""
        assets = ZERO
        if self.base_position > 0:
            assets = assets.add(market.base_lots_to_native(self.base_position).mul(price))
        quote = self._real_quote_position(short_funding, long_funding)
        if quote.is_pos():
            assets = assets.add(quote)
        return assets

    def liabilities_value(
        self,
        market: PerpMarketInfo,
        price: FixedPoint128,
        short_funding: FixedPoint128,
        long_funding: FixedPoint128,
    ) -> FixedPoint128:
        """Magnitude of short base value plus negative funding-adjusted quote (returned non-negative)."""
        liabs = ZERO
        if self.base_position < 0:
            liabs = liabs.add(market.base_lots_to_native(self.base_position).mul(price))
        quote = self._real_quote_position(short_funding, long_funding)
        if quote.is_neg():
            liabs = liabs.add(quote)
        return liabs.neg()

"""
Market parameters and cache snapshots consumed by the risk computations.

None of these are owned by a position: they are read from the group / cache
accounts by the caller and passed into every computation. Units:

- lot sizes are integer native units per lot,
- prices are ``FixedPoint128`` native quote per native base,
- funding accumulators are ``FixedPoint128`` native quote per base lot.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, unique

from solders.pubkey import Pubkey

from .fixednum import ONE, ZERO, FixedPoint128


@unique
class HealthType(Enum):
    """Weight set used for a health evaluation."""

    INIT = "Init"
    MAINT = "Maint"


def _require_fixed(value: object, *, name: str) -> None:
    if not isinstance(value, FixedPoint128):
        raise TypeError(f"{name} must be a FixedPoint128")


def _require_lot_size(value: object, *, name: str) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an int")
    if value < 0:
        raise ValueError(f"{name} must be non-negative")


def _is_zero_key(key: Pubkey | None) -> bool:
    return key is None or key == Pubkey.default()


def native_to_ui(amount: FixedPoint128, decimals: int) -> FixedPoint128:
    """Scale a native amount down by ``10**decimals`` in fixed point."""
    return amount.div(FixedPoint128.from_int(10**decimals))


@dataclass(frozen=True)
class TokenInfo:
    decimals: int
    mint: Pubkey | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.decimals, int) or isinstance(self.decimals, bool) or self.decimals < 0:
            raise TypeError("decimals must be a non-negative int")

    def is_empty(self) -> bool:
        return _is_zero_key(self.mint)


@dataclass(frozen=True)
class SpotMarketInfo:
    maint_asset_weight: FixedPoint128 = ONE
    init_asset_weight: FixedPoint128 = ONE
    maint_liab_weight: FixedPoint128 = ONE
    init_liab_weight: FixedPoint128 = ONE
    liquidation_fee: FixedPoint128 = ZERO
    spot_market: Pubkey | None = None

    def __post_init__(self) -> None:
        for name in ("maint_asset_weight", "init_asset_weight", "maint_liab_weight", "init_liab_weight", "liquidation_fee"):
            _require_fixed(getattr(self, name), name=name)

    def weights(self, health_type: HealthType | None) -> tuple[FixedPoint128, FixedPoint128]:
        """(asset_weight, liab_weight) for ``health_type``; unweighted when None."""
        if health_type is HealthType.MAINT:
            return self.maint_asset_weight, self.maint_liab_weight
        if health_type is HealthType.INIT:
            return self.init_asset_weight, self.init_liab_weight
        return ONE, ONE


@dataclass(frozen=True)
class PerpMarketInfo:
    """Per-market risk parameters as stored in the group account."""

    base_lot_size: int
    quote_lot_size: int
    maint_asset_weight: FixedPoint128 = ONE
    init_asset_weight: FixedPoint128 = ONE
    maint_liab_weight: FixedPoint128 = ONE
    init_liab_weight: FixedPoint128 = ONE
    liquidation_fee: FixedPoint128 = ZERO
    maker_fee: FixedPoint128 = ZERO
    taker_fee: FixedPoint128 = ZERO
    perp_market: Pubkey | None = None

    def __post_init__(self) -> None:
        _require_lot_size(self.base_lot_size, name="base_lot_size")
        _require_lot_size(self.quote_lot_size, name="quote_lot_size")
        for name in (
            "maint_asset_weight",
            "init_asset_weight",
            "maint_liab_weight",
            "init_liab_weight",
            "liquidation_fee",
            "maker_fee",
            "taker_fee",
        ):
            _require_fixed(getattr(self, name), name=name)

    def is_empty(self) -> bool:
        """True for an unused market slot (zero market key)."""
        return _is_zero_key(self.perp_market)

    def weights(self, health_type: HealthType | None) -> tuple[FixedPoint128, FixedPoint128]:
        """(asset_weight, liab_weight) for ``health_type``; unweighted when None."""
        if health_type is HealthType.MAINT:
            return self.maint_asset_weight, self.maint_liab_weight
        if health_type is HealthType.INIT:
            return self.init_asset_weight, self.init_liab_weight
        return ONE, ONE

    # -- Lot conversions (exact int products, then lifted) -------------------

    def base_lots_to_native(self, quantity_lots: int) -> FixedPoint128:
        return FixedPoint128.from_int(self.base_lot_size * quantity_lots)

    def quote_lots_to_native(self, quantity_lots: int) -> FixedPoint128:
        return FixedPoint128.from_int(self.quote_lot_size * quantity_lots)

    def price_lots_to_native(self, price_lots: int) -> FixedPoint128:
        """Native quote per native base: ``quote_lot_size * price / base_lot_size``."""
        return FixedPoint128.from_int(self.quote_lot_size * price_lots).div(
            FixedPoint128.from_int(self.base_lot_size)
        )

    # -- Display helpers (lossy floats) --------------------------------------

    def price_lots_to_ui(self, price_lots: int, base_decimals: int, quote_decimals: int) -> float:
        native = self.price_lots_to_native(price_lots)
        return native.to_float() * 10.0 ** (base_decimals - quote_decimals)

    def base_lots_to_ui(self, quantity_lots: int, base_decimals: int) -> float:
        return (self.base_lot_size * quantity_lots) / 10**base_decimals


@dataclass(frozen=True)
class PerpMarketCache:
    """Cumulative funding per base lot, refreshed by an external keeper."""

    long_funding: FixedPoint128 = ZERO
    short_funding: FixedPoint128 = ZERO
    last_update: int = 0

    def __post_init__(self) -> None:
        _require_fixed(self.long_funding, name="long_funding")
        _require_fixed(self.short_funding, name="short_funding")


@dataclass(frozen=True)
class PriceCache:
    price: FixedPoint128 = ZERO
    last_update: int = 0

    def __post_init__(self) -> None:
        _require_fixed(self.price, name="price")


@dataclass(frozen=True)
class RootBankCache:
    deposit_index: FixedPoint128 = ONE
    borrow_index: FixedPoint128 = ONE
    last_update: int = 0

    def __post_init__(self) -> None:
        _require_fixed(self.deposit_index, name="deposit_index")
        _require_fixed(self.borrow_index, name="borrow_index")

"""
Whole-account health over a consistent group snapshot.

`MarginAccount` holds the decoded per-token spot balances and per-market
`PerpAccount` slots; `GroupSnapshot` holds the market parameters and the
price / funding / interest caches from one logical slot. The functions here
combine the two:

- `health(account, group, HealthType.MAINT) < 0`  ->  liquidatable
- maintenance-weighted liabilities exceeding assets  ->  bankrupt

All values are native quote units (`FixedPoint128`). Callers must not mix
caches from different slots; this module does not check that.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, unique
from typing import List, NamedTuple, Optional, Tuple

from loguru import logger
from solders.pubkey import Pubkey

from .book import price_from_key
from .fixednum import ONE, ZERO, FixedPoint128
from .market import (
    HealthType,
    PerpMarketCache,
    PerpMarketInfo,
    PriceCache,
    RootBankCache,
    SpotMarketInfo,
    TokenInfo,
)
from .perp_account import PerpAccount


FREE_ORDER_SLOT = 255
HUNDRED = FixedPoint128.from_int(100)


@unique
class AccountState(Enum):
    HEALTHY = "healthy"
    LIQUIDATABLE = "liquidatable"
    BANKRUPT = "bankrupt"


@dataclass(frozen=True)
class SpotOpenOrders:
    """Balances of an external spot open-orders account, in native units."""

    base_free: int = 0
    base_total: int = 0
    quote_free: int = 0
    quote_total: int = 0
    referrer_rebates_accrued: int = 0

    def __post_init__(self) -> None:
        if self.base_free > self.base_total or self.quote_free > self.quote_total:
            raise ValueError("free balance cannot exceed total balance")


class PerpOpenOrder(NamedTuple):
    market_index: int
    price_lots: int
    side: str


@dataclass(frozen=True)
class GroupSnapshot:
    """
    Market parameters plus caches from one slot.

    The quote token is the last entry of `tokens`; market `i` prices token `i`
    against it. Only the first `num_oracles` markets are evaluated. Accounts
    decoded from chain carry 16 token slots, so pair them with a 16-token
    snapshot to keep the quote token at index 15.
    """

    tokens: Tuple[TokenInfo, ...]
    spot_markets: Tuple[SpotMarketInfo, ...]
    perp_markets: Tuple[PerpMarketInfo, ...]
    root_bank_caches: Tuple[RootBankCache, ...]
    price_caches: Tuple[PriceCache, ...]
    perp_market_caches: Tuple[PerpMarketCache, ...]
    num_oracles: int

    def __post_init__(self) -> None:
        if not isinstance(self.num_oracles, int) or isinstance(self.num_oracles, bool) or self.num_oracles < 0:
            raise TypeError("num_oracles must be a non-negative int")
        if len(self.tokens) < self.num_oracles + 1:
            raise ValueError("tokens must include every market token plus the quote token")
        if len(self.root_bank_caches) != len(self.tokens):
            raise ValueError("root_bank_caches must align with tokens")
        for name in ("spot_markets", "perp_markets", "price_caches", "perp_market_caches"):
            if len(getattr(self, name)) < self.num_oracles:
                raise ValueError(f"{name} must cover num_oracles markets")

    @property
    def quote_index(self) -> int:
        return len(self.tokens) - 1

    def price(self, market_index: int) -> FixedPoint128:
        return self.price_caches[market_index].price


@dataclass(frozen=True)
class MarginAccount:
    """Decoded margin account: spot balances per token, perp position per market."""

    deposits: Tuple[FixedPoint128, ...]
    borrows: Tuple[FixedPoint128, ...]
    perp_accounts: Tuple[PerpAccount, ...]
    in_margin_basket: Tuple[bool, ...] = ()
    spot_open_orders: Tuple[Optional[SpotOpenOrders], ...] = ()
    being_liquidated: bool = False
    is_bankrupt: bool = False
    owner: Optional[Pubkey] = None
    group: Optional[Pubkey] = None
    order_market: Tuple[int, ...] = ()
    order_side: Tuple[int, ...] = ()
    orders: Tuple[int, ...] = ()
    client_order_ids: Tuple[int, ...] = ()
    info: bytes = field(default=b"", repr=False)
    spot_open_orders_keys: Tuple[Pubkey, ...] = field(default=(), repr=False)
    msrm_amount: int = 0
    advanced_orders_key: Optional[Pubkey] = None
    not_upgradable: bool = False
    delegate: Optional[Pubkey] = None

    def __post_init__(self) -> None:
        if len(self.deposits) != len(self.borrows):
            raise ValueError("deposits and borrows must have the same length")
        if not (len(self.order_market) == len(self.order_side) == len(self.orders)):
            raise ValueError("order_market, order_side and orders must have the same length")

    @property
    def name(self) -> str:
        return self.info.replace(b"\x00", b"").decode("utf-8", errors="replace")

    def perp_open_orders(self) -> List[PerpOpenOrder]:
        """Open perp orders known from the account alone (no sizes)."""
        out: list[PerpOpenOrder] = []
        for market_index, side, key in zip(self.order_market, self.order_side, self.orders):
            if market_index == FREE_ORDER_SLOT:
                continue
            out.append(PerpOpenOrder(market_index, price_from_key(key), "buy" if side == 0 else "sell"))
        return out

    def _open_orders_for(self, market_index: int) -> Optional[SpotOpenOrders]:
        if market_index >= len(self.in_margin_basket) or not self.in_margin_basket[market_index]:
            return None
        if market_index >= len(self.spot_open_orders):
            return None
        return self.spot_open_orders[market_index]


# -- Spot balances -----------------------------------------------------------

def native_deposit(account: MarginAccount, group: GroupSnapshot, token_index: int) -> FixedPoint128:
    return group.root_bank_caches[token_index].deposit_index.mul(account.deposits[token_index])


def native_borrow(account: MarginAccount, group: GroupSnapshot, token_index: int) -> FixedPoint128:
    return group.root_bank_caches[token_index].borrow_index.mul(account.borrows[token_index])


def net(account: MarginAccount, group: GroupSnapshot, token_index: int) -> FixedPoint128:
    """Deposits minus borrows in native units."""
    bank = group.root_bank_caches[token_index]
    return account.deposits[token_index].mul(bank.deposit_index).sub(account.borrows[token_index].mul(bank.borrow_index))


def _split_open_orders(oo: SpotOpenOrders) -> Tuple[FixedPoint128, FixedPoint128, FixedPoint128, FixedPoint128]:
    quote_free = FixedPoint128.from_int(oo.quote_free + oo.referrer_rebates_accrued)
    quote_locked = FixedPoint128.from_int(oo.quote_total - oo.quote_free)
    base_free = FixedPoint128.from_int(oo.base_free)
    base_locked = FixedPoint128.from_int(oo.base_total - oo.base_free)
    return quote_free, quote_locked, base_free, base_locked


def spot_base_net(account: MarginAccount, group: GroupSnapshot, market_index: int) -> Tuple[FixedPoint128, FixedPoint128]:
    """
    Worst-case spot base balance and the quote it brings along.

    With open orders in the margin basket, the all-bids-filled and
    all-asks-filled outcomes are compared and the one with the larger
    absolute base position is kept.
    """
    base_net = net(account, group, market_index)
    oo = account._open_orders_for(market_index)
    if oo is None:
        return base_net, ZERO
    price = group.price(market_index)
    quote_free, quote_locked, base_free, base_locked = _split_open_orders(oo)
    bids_base_net = base_net.add(quote_locked.div(price)).add(base_free).add(base_locked)
    asks_base_net = base_net.add(base_free)
    if bids_base_net.abs() > asks_base_net.abs():
        return bids_base_net, quote_free
    return asks_base_net, base_locked.mul(price).add(quote_free).add(quote_locked)


def _spot_deposit_value(
    account: MarginAccount, group: GroupSnapshot, market_index: int, asset_weight: FixedPoint128
) -> FixedPoint128:
    # Base held in open orders is weighted like the deposit; quote never is.
    price = group.price(market_index)
    value = native_deposit(account, group, market_index).floor().mul(price).mul(asset_weight)
    oo = account._open_orders_for(market_index)
    if oo is not None:
        value = value.add(FixedPoint128.from_int(oo.base_total).mul(price).mul(asset_weight))
        value = value.add(FixedPoint128.from_int(oo.quote_total + oo.referrer_rebates_accrued))
    return value


# -- Health ------------------------------------------------------------------

def _active_perp(group: GroupSnapshot, market_index: int) -> bool:
    return not group.perp_markets[market_index].is_empty()


def health(account: MarginAccount, group: GroupSnapshot, health_type: HealthType | None) -> FixedPoint128:
    """
    Weighted health: quote balance, plus weighted spot balances, plus each
    market's `PerpAccount.health` contribution. Can be negative.
    """
    total = net(account, group, group.quote_index)
    for i in range(group.num_oracles):
        price = group.price(i)
        spot, quote_adj = spot_base_net(account, group, i)
        spot_asset_w, spot_liab_w = group.spot_markets[i].weights(health_type)
        total = total.add(quote_adj).add(spot.mul(price).mul(spot_asset_w if spot.is_pos() else spot_liab_w))

        if not _active_perp(group, i):
            continue
        market = group.perp_markets[i]
        cache = group.perp_market_caches[i]
        perp_asset_w, perp_liab_w = market.weights(health_type)
        total = total.add(
            account.perp_accounts[i].health(
                market, price, perp_asset_w, perp_liab_w, cache.long_funding, cache.short_funding
            )
        )
    return total


def health_components(account: MarginAccount, group: GroupSnapshot) -> Tuple[List[FixedPoint128], List[FixedPoint128], FixedPoint128]:
    """
    Unweighted (spot, perps, quote) after the worst-case open-order fills.

    `spot[i]` and `perps[i]` are native base amounts; everything priced in
    quote, including funding-adjusted perp quote, is folded into `quote`.
    """
    spot = [ZERO] * group.num_oracles
    perps = [ZERO] * group.num_oracles
    quote = net(account, group, group.quote_index)

    for i in range(group.num_oracles):
        price = group.price(i)
        spot[i], quote_adj = spot_base_net(account, group, i)
        quote = quote.add(quote_adj)

        if not _active_perp(group, i):
            continue
        market = group.perp_markets[i]
        perp = account.perp_accounts[i]
        perp_quote = perp.effective_quote_position(group.perp_market_caches[i]).add(
            market.quote_lots_to_native(perp.taker_quote)
        )
        base_pos = market.base_lots_to_native(perp.base_position + perp.taker_base)
        bids_quantity = market.base_lots_to_native(perp.bids_quantity)
        asks_quantity = market.base_lots_to_native(perp.asks_quantity)
        bids_base_net = base_pos.add(bids_quantity)
        asks_base_net = base_pos.sub(asks_quantity)
        if bids_base_net.abs() > asks_base_net.abs():
            quote = quote.add(perp_quote.sub(bids_quantity.mul(price)))
            perps[i] = bids_base_net
        else:
            quote = quote.add(perp_quote.add(asks_quantity.mul(price)))
            perps[i] = asks_base_net

    return spot, perps, quote


def weighted_assets_liabs(
    account: MarginAccount, group: GroupSnapshot, health_type: HealthType | None
) -> Tuple[FixedPoint128, FixedPoint128]:
    """(assets, liabs), both non-negative, from `health_components`."""
    spot, perps, quote = health_components(account, group)
    assets, liabs = ZERO, ZERO
    if quote.is_pos():
        assets = assets.add(quote)
    else:
        liabs = liabs.add(quote.neg())

    for i in range(group.num_oracles):
        price = group.price(i)
        spot_asset_w, spot_liab_w = group.spot_markets[i].weights(health_type)
        perp_asset_w, perp_liab_w = group.perp_markets[i].weights(health_type)
        if spot[i].is_pos():
            assets = assets.add(spot[i].mul(price).mul(spot_asset_w))
        else:
            liabs = liabs.add(spot[i].neg().mul(price).mul(spot_liab_w))
        if perps[i].is_pos():
            assets = assets.add(perps[i].mul(price).mul(perp_asset_w))
        else:
            liabs = liabs.add(perps[i].neg().mul(price).mul(perp_liab_w))
    return assets, liabs


def health_ratio(account: MarginAccount, group: GroupSnapshot, health_type: HealthType | None) -> FixedPoint128:
    """`(assets / liabs - 1) * 100`, or 100 when there are no liabilities."""
    assets, liabs = weighted_assets_liabs(account, group, health_type)
    if liabs.is_pos():
        return assets.div(liabs).sub(ONE).mul(HUNDRED)
    return HUNDRED


def assets_value(account: MarginAccount, group: GroupSnapshot, health_type: HealthType | None = None) -> FixedPoint128:
    """
    Quote deposits + weighted spot deposits + perp asset values.

    Token deposits are floored to whole native units before pricing.
    """
    total = native_deposit(account, group, group.quote_index).floor()
    for i in range(group.num_oracles):
        asset_w, _ = group.spot_markets[i].weights(health_type)
        total = total.add(_spot_deposit_value(account, group, i, asset_w))
        if _active_perp(group, i):
            cache = group.perp_market_caches[i]
            total = total.add(
                account.perp_accounts[i].asset_value(
                    group.perp_markets[i], group.price(i), cache.short_funding, cache.long_funding
                )
            )
    return total


def liabilities_value(account: MarginAccount, group: GroupSnapshot, health_type: HealthType | None = None) -> FixedPoint128:
    """
    Quote borrows + weighted spot borrows + perp liability values (non-negative).

    Token borrows are rounded up to whole native units before pricing.
    """
    total = native_borrow(account, group, group.quote_index).ceil()
    for i in range(group.num_oracles):
        price = group.price(i)
        _, liab_w = group.spot_markets[i].weights(health_type)
        total = total.add(native_borrow(account, group, i).ceil().mul(price.mul(liab_w)))
        if _active_perp(group, i):
            cache = group.perp_market_caches[i]
            total = total.add(
                account.perp_accounts[i].liabilities_value(
                    group.perp_markets[i], price, cache.short_funding, cache.long_funding
                )
            )
    return total


def equity(account: MarginAccount, group: GroupSnapshot) -> FixedPoint128:
    return assets_value(account, group).sub(liabilities_value(account, group))


def leverage(account: MarginAccount, group: GroupSnapshot) -> FixedPoint128:
    liabs = liabilities_value(account, group)
    assets = assets_value(account, group)
    if assets.is_pos():
        return liabs.div(assets.sub(liabs))
    return ZERO


def liquidation_price(account: MarginAccount, group: GroupSnapshot, market_index: int) -> FixedPoint128 | None:
    """
    Native price of market `market_index` at which maintenance health hits zero,
    holding every other price fixed. None when the account has no exposure to
    that market or no positive solution exists.
    """
    spot, perps, quote = health_components(account, group)
    partial = quote
    weighted_exposure = ZERO
    for i in range(group.num_oracles):
        spot_asset_w, spot_liab_w = group.spot_markets[i].weights(HealthType.MAINT)
        perp_asset_w, perp_liab_w = group.perp_markets[i].weights(HealthType.MAINT)
        weighted_spot = spot[i].mul(spot_asset_w if spot[i].is_pos() else spot_liab_w)
        weighted_perp = perps[i].mul(perp_asset_w if perps[i].is_pos() else perp_liab_w)
        if i == market_index:
            weighted_exposure = weighted_spot.add(weighted_perp).neg()
        else:
            price = group.price(i)
            partial = partial.add(weighted_spot.mul(price)).add(weighted_perp.mul(price))
    if weighted_exposure.is_zero():
        return None
    price = partial.div(weighted_exposure)
    return None if price.is_neg() else price


def liquidation_price_ui(account: MarginAccount, group: GroupSnapshot, market_index: int) -> FixedPoint128 | None:
    """`liquidation_price` in whole quote per whole base token."""
    price = liquidation_price(account, group, market_index)
    if price is None:
        return None
    shift = group.tokens[market_index].decimals - group.tokens[group.quote_index].decimals
    if shift >= 0:
        return price.mul(FixedPoint128.from_int(10**shift))
    return price.div(FixedPoint128.from_int(10**-shift))


# -- Liquidation signals -----------------------------------------------------

def is_liquidatable(account: MarginAccount, group: GroupSnapshot) -> bool:
    if health(account, group, HealthType.MAINT).is_neg():
        return True
    return account.being_liquidated and health(account, group, HealthType.INIT).is_neg()


def is_bankrupt(account: MarginAccount, group: GroupSnapshot) -> bool:
    """
    True when the account is flagged bankrupt on chain, or when its
    liabilities exceed everything that could be seized, both valued with the
    maintenance weight set.
    """
    if account.is_bankrupt:
        return True
    return liabilities_value(account, group, HealthType.MAINT) > assets_value(account, group, HealthType.MAINT)


def account_state(account: MarginAccount, group: GroupSnapshot) -> AccountState:
    if is_bankrupt(account, group):
        state = AccountState.BANKRUPT
    elif is_liquidatable(account, group):
        state = AccountState.LIQUIDATABLE
    else:
        state = AccountState.HEALTHY
    logger.debug("account {} evaluated as {}", account.owner, state.value)
    return state

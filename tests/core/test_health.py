"""Tests for perp_risk/core/health.py: whole-account health, ratios and liquidation signals."""

from __future__ import annotations

from dataclasses import replace

import pytest
from solders.pubkey import Pubkey

from perp_risk.core.book import order_key
from perp_risk.core.errors import DivideByZeroError
from perp_risk.core.fixednum import ONE, ZERO, FixedPoint128
from perp_risk.core.health import (
    AccountState,
    GroupSnapshot,
    MarginAccount,
    PerpOpenOrder,
    SpotOpenOrders,
    account_state,
    assets_value,
    equity,
    health,
    health_components,
    health_ratio,
    is_bankrupt,
    is_liquidatable,
    leverage,
    liabilities_value,
    liquidation_price,
    liquidation_price_ui,
    native_borrow,
    native_deposit,
    net,
    spot_base_net,
)
from perp_risk.core.market import (
    HealthType,
    PerpMarketCache,
    PerpMarketInfo,
    PriceCache,
    RootBankCache,
    SpotMarketInfo,
    TokenInfo,
)
from perp_risk.core.perp_account import PerpAccount


PERP_MARKET_KEY = Pubkey.from_bytes(bytes([3] * 32))


def fp(text: str) -> FixedPoint128:
    return FixedPoint128.from_str(text)


def make_group(
    price: str = "10",
    *,
    perp_listed: bool = True,
    quote_bank: RootBankCache = RootBankCache(),
    funding: PerpMarketCache = PerpMarketCache(),
) -> GroupSnapshot:
    weights = dict(
        maint_asset_weight=fp("0.75"),
        init_asset_weight=fp("0.5"),
        maint_liab_weight=fp("1.25"),
        init_liab_weight=fp("1.5"),
    )
    return GroupSnapshot(
        tokens=(TokenInfo(decimals=6), TokenInfo(decimals=6)),
        spot_markets=(SpotMarketInfo(**weights),),
        perp_markets=(
            PerpMarketInfo(
                base_lot_size=1,
                quote_lot_size=1,
                perp_market=PERP_MARKET_KEY if perp_listed else None,
                **weights,
            ),
        ),
        root_bank_caches=(RootBankCache(), quote_bank),
        price_caches=(PriceCache(price=fp(price)),),
        perp_market_caches=(funding,),
        num_oracles=1,
    )


def make_account(
    *,
    base_deposit: str = "0",
    base_borrow: str = "0",
    quote_deposit: str = "0",
    quote_borrow: str = "0",
    perp: PerpAccount = PerpAccount(),
    open_orders: SpotOpenOrders | None = None,
    **kwargs,
) -> MarginAccount:
    return MarginAccount(
        deposits=(fp(base_deposit), fp(quote_deposit)),
        borrows=(fp(base_borrow), fp(quote_borrow)),
        perp_accounts=(perp,),
        in_margin_basket=(open_orders is not None,),
        spot_open_orders=(open_orders,),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Balances
# ---------------------------------------------------------------------------

class TestBalances:
    def test_indexes_applied(self):
        group = make_group(quote_bank=RootBankCache(deposit_index=fp("1.5"), borrow_index=fp("2")))
        account = make_account(quote_deposit="100", quote_borrow="10")
        assert native_deposit(account, group, 1) == fp("150")
        assert native_borrow(account, group, 1) == fp("20")
        assert net(account, group, 1) == fp("130")

    def test_mismatched_balances_rejected(self):
        with pytest.raises(ValueError):
            MarginAccount(deposits=(ZERO,), borrows=(ZERO, ZERO), perp_accounts=())


class TestSpotOpenOrders:
    def test_no_basket_is_plain_net(self):
        account = make_account(base_deposit="3")
        assert spot_base_net(account, make_group(), 0) == (fp("3"), ZERO)

    def test_resting_bid_assumed_filled(self):
        account = make_account(open_orders=SpotOpenOrders(quote_total=100))
        assert spot_base_net(account, make_group(), 0) == (fp("10"), ZERO)
        # 10 base at 10 with maint asset weight 0.75
        assert health(account, make_group(), HealthType.MAINT) == fp("75")
        assert health(account, make_group(), None) == fp("100")

    def test_resting_ask_on_short_assumed_filled(self):
        account = make_account(base_borrow="10", open_orders=SpotOpenOrders(base_total=5))
        base, quote_adj = spot_base_net(account, make_group(), 0)
        assert base == fp("-10")
        assert quote_adj == fp("50")
        assert health(account, make_group(), None) == fp("-50")

    def test_referrer_rebates_count_as_free_quote(self):
        account = make_account(
            base_borrow="10",
            open_orders=SpotOpenOrders(base_total=5, quote_total=4, quote_free=4, referrer_rebates_accrued=1),
        )
        assert spot_base_net(account, make_group(), 0)[1] == fp("55")

    def test_free_above_total_rejected(self):
        with pytest.raises(ValueError):
            SpotOpenOrders(base_free=2, base_total=1)

    def test_zero_price_with_resting_bid_surfaces(self):
        account = make_account(open_orders=SpotOpenOrders(quote_total=100))
        with pytest.raises(DivideByZeroError):
            spot_base_net(account, make_group(price="0"), 0)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:
    def test_quote_only(self):
        account = make_account(quote_deposit="100")
        for mode in (HealthType.INIT, HealthType.MAINT, None):
            assert health(account, make_group(), mode) == fp("100")

    def test_spot_weights_by_mode(self):
        account = make_account(base_deposit="14", quote_borrow="100")
        group = make_group()
        assert health(account, group, HealthType.MAINT) == fp("5")
        assert health(account, group, HealthType.INIT) == fp("-30")
        assert health(account, group, None) == fp("40")

    def test_spot_borrow_uses_liab_weight(self):
        account = make_account(base_borrow="2", quote_deposit="100")
        assert health(account, make_group(), HealthType.MAINT) == fp("75")

    def test_includes_perp_contribution(self):
        perp = PerpAccount(base_position=10, quote_position=fp("-90"))
        account = make_account(perp=perp)
        assert health(account, make_group(), HealthType.MAINT) == fp("-15")
        assert health(account, make_group(), None) == fp("10")

    def test_perp_funding_applied(self):
        perp = PerpAccount(base_position=10, quote_position=fp("-90"))
        group = make_group(funding=PerpMarketCache(long_funding=fp("0.5")))
        assert health(make_account(perp=perp), group, None) == fp("5")

    def test_unlisted_perp_market_ignored(self):
        perp = PerpAccount(base_position=10, quote_position=fp("-90"))
        account = make_account(perp=perp, quote_deposit="1")
        assert health(account, make_group(perp_listed=False), HealthType.MAINT) == fp("1")

    def test_group_needs_quote_token(self):
        group = make_group()
        with pytest.raises(ValueError):
            GroupSnapshot(
                tokens=(TokenInfo(decimals=6),),
                spot_markets=group.spot_markets,
                perp_markets=group.perp_markets,
                root_bank_caches=(RootBankCache(),),
                price_caches=group.price_caches,
                perp_market_caches=group.perp_market_caches,
                num_oracles=1,
            )


class TestHealthRatio:
    def test_no_liabilities(self):
        assert health_ratio(make_account(quote_deposit="5"), make_group(), HealthType.MAINT) == fp("100")

    def test_with_liabilities(self):
        account = make_account(quote_deposit="125", base_borrow="5")
        assert health_ratio(account, make_group(), None) == fp("150")

    def test_negative_when_underwater(self):
        account = make_account(quote_deposit="25", base_borrow="5")
        assert health_ratio(account, make_group(), None) == fp("-50")

    def test_components_fold_perp_quote(self):
        perp = PerpAccount(base_position=10, quote_position=fp("-90"), bids_quantity=2)
        spot, perps, quote = health_components(make_account(perp=perp), make_group())
        assert spot == [ZERO]
        assert perps == [fp("12")]
        assert quote == fp("-110")


class TestValues:
    def test_equity_and_leverage(self):
        account = make_account(quote_deposit="100", base_borrow="5")
        group = make_group()
        assert assets_value(account, group) == fp("100")
        assert liabilities_value(account, group) == fp("50")
        assert equity(account, group) == fp("50")
        assert leverage(account, group) == ONE

    def test_leverage_without_assets(self):
        assert leverage(make_account(), make_group()) == ZERO

    def test_maint_weights_spot_only(self):
        perp = PerpAccount(base_position=10, quote_position=fp("-90"))
        account = make_account(perp=perp, base_deposit="4", quote_borrow="8")
        group = make_group()
        # spot 40 * 0.75 + perp long 100 (unweighted)
        assert assets_value(account, group, HealthType.MAINT) == fp("130")
        assert liabilities_value(account, group, HealthType.MAINT) == fp("98")

    def test_liquidation_price(self):
        perp = PerpAccount(base_position=10, quote_position=fp("-90"))
        price = liquidation_price(make_account(perp=perp), make_group(), 0)
        assert price == fp("12")
        at_price = health(make_account(perp=perp), make_group(price="12"), HealthType.MAINT)
        assert at_price == ZERO

    def test_liquidation_price_without_exposure(self):
        assert liquidation_price(make_account(quote_deposit="5"), make_group(), 0) is None
        assert liquidation_price_ui(make_account(quote_deposit="5"), make_group(), 0) is None

    @pytest.mark.parametrize(
        ("base_decimals", "expected"),
        [(6, fp("12")), (9, fp("12000")), (4, fp("12").div(fp("100")))],
    )
    def test_liquidation_price_ui_scales_by_decimals(self, base_decimals, expected):
        perp = PerpAccount(base_position=10, quote_position=fp("-90"))
        group = replace(make_group(), tokens=(TokenInfo(decimals=base_decimals), TokenInfo(decimals=6)))
        assert liquidation_price_ui(make_account(perp=perp), group, 0) == expected


class TestValueRounding:
    INDEXES = RootBankCache(deposit_index=fp("1.05"), borrow_index=fp("1.05"))

    def test_quote_deposit_floored(self):
        group = make_group(quote_bank=self.INDEXES)
        account = make_account(quote_deposit="10")
        assert assets_value(account, group) == fp("10")

    def test_quote_borrow_ceiled(self):
        group = make_group(quote_bank=self.INDEXES)
        account = make_account(quote_borrow="10")
        assert liabilities_value(account, group) == fp("11")

    def test_spot_balances_rounded_before_pricing(self):
        group = replace(make_group(), root_bank_caches=(self.INDEXES, RootBankCache()))
        assert assets_value(make_account(base_deposit="10"), group) == fp("100")
        assert liabilities_value(make_account(base_borrow="10"), group) == fp("110")

    def test_rounding_decides_bankruptcy(self):
        # 10.5 native quote borrowed against 10.5 deposited: rounds to 11 vs 10
        group = make_group(quote_bank=self.INDEXES)
        account = make_account(quote_deposit="10", quote_borrow="10")
        assert is_bankrupt(account, group)


class TestOpenOrdersValue:
    def test_locked_quote_not_weighted(self):
        account = make_account(open_orders=SpotOpenOrders(quote_total=100))
        assert assets_value(account, make_group(), HealthType.MAINT) == fp("100")
        assert assets_value(account, make_group(), HealthType.INIT) == fp("100")

    def test_referrer_rebates_not_weighted(self):
        account = make_account(open_orders=SpotOpenOrders(quote_total=4, quote_free=4, referrer_rebates_accrued=1))
        assert assets_value(account, make_group(), HealthType.MAINT) == fp("5")

    def test_locked_base_weighted(self):
        account = make_account(base_deposit="2", open_orders=SpotOpenOrders(base_total=4, quote_total=100))
        # (2 + 4) base at 10 with maint asset weight 0.75, plus 100 quote
        assert assets_value(account, make_group(), HealthType.MAINT) == fp("145")


# ---------------------------------------------------------------------------
# Liquidation signals
# ---------------------------------------------------------------------------

class TestLiquidation:
    def test_healthy(self):
        account = make_account(base_deposit="14", quote_borrow="100")
        assert not is_liquidatable(account, make_group())
        assert account_state(account, make_group()) is AccountState.HEALTHY

    def test_being_liquidated_uses_init_health(self):
        account = make_account(base_deposit="14", quote_borrow="100", being_liquidated=True)
        assert is_liquidatable(account, make_group())
        assert account_state(account, make_group()) is AccountState.LIQUIDATABLE

    def test_negative_maint_health(self):
        perp = PerpAccount(base_position=10, quote_position=fp("-90"))
        account = make_account(perp=perp)
        assert is_liquidatable(account, make_group())
        assert not is_bankrupt(account, make_group())
        assert account_state(account, make_group()) is AccountState.LIQUIDATABLE

    def test_liabilities_exceed_assets(self):
        perp = PerpAccount(base_position=10, quote_position=fp("-110"))
        account = make_account(perp=perp)
        assert is_bankrupt(account, make_group())
        assert account_state(account, make_group()) is AccountState.BANKRUPT

    def test_on_chain_flag(self):
        account = make_account(quote_deposit="100", is_bankrupt=True)
        assert is_bankrupt(account, make_group())
        assert account_state(account, make_group()) is AccountState.BANKRUPT

    def test_price_move_flips_state(self):
        perp = PerpAccount(base_position=10, quote_position=fp("-90"))
        account = make_account(perp=perp)
        assert account_state(account, make_group(price="12")) is AccountState.HEALTHY
        assert account_state(account, make_group(price="11")) is AccountState.LIQUIDATABLE
        assert account_state(account, make_group(price="8")) is AccountState.BANKRUPT


# ---------------------------------------------------------------------------
# Account metadata
# ---------------------------------------------------------------------------

class TestAccountInfo:
    def test_perp_open_orders(self):
        account = make_account(
            order_market=(0, 255, 0),
            order_side=(1, 0, 0),
            orders=(order_key(100, 3, is_bids=False), 0, order_key(90, 4, is_bids=True)),
        )
        assert account.perp_open_orders() == [PerpOpenOrder(0, 100, "sell"), PerpOpenOrder(0, 90, "buy")]

    def test_name(self):
        account = make_account(info=b"alice".ljust(32, b"\x00"))
        assert account.name == "alice"

"""
Batch helpers on top of the pure risk functions.

`scan_accounts` evaluates many accounts against one group snapshot. An account
whose evaluation raises `RiskEngineError` (bad data, a zero price, overflow) is
logged and skipped; the rest of the batch still completes. Programming errors
(`TypeError` and friends) are not caught.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from loguru import logger

from ..core.book import BookLevel, BookSide
from ..core.errors import RiskEngineError
from ..core.fixednum import FixedPoint128
from ..core.health import (
    AccountState,
    GroupSnapshot,
    MarginAccount,
    account_state,
    health,
    health_ratio,
)
from ..core.market import HealthType
from .config import EngineConfig


@dataclass(frozen=True)
class AccountHealthReport:
    key: str
    maint_health: FixedPoint128
    init_health: FixedPoint128
    health_ratio: FixedPoint128
    state: AccountState

    def as_dict(self, places: int) -> Dict[str, str]:
        return {
            "key": self.key,
            "maint_health": self.maint_health.to_decimal_string(places),
            "init_health": self.init_health.to_decimal_string(places),
            "health_ratio": self.health_ratio.to_decimal_string(places),
            "state": self.state.value,
        }


@dataclass(frozen=True)
class BookSummary:
    best_bid: Optional[int]
    best_ask: Optional[int]
    spread: Optional[int]
    bid_impact_price: Optional[int]
    ask_impact_price: Optional[int]
    bids: Tuple[BookLevel, ...]
    asks: Tuple[BookLevel, ...]


AccountSource = Union[Mapping[str, MarginAccount], Iterable[Tuple[str, MarginAccount]]]


def _evaluate(key: str, account: MarginAccount, group: GroupSnapshot) -> AccountHealthReport:
    return AccountHealthReport(
        key=key,
        maint_health=health(account, group, HealthType.MAINT),
        init_health=health(account, group, HealthType.INIT),
        health_ratio=health_ratio(account, group, HealthType.MAINT),
        state=account_state(account, group),
    )


def scan_accounts(accounts: AccountSource, group: GroupSnapshot, config: EngineConfig) -> List[AccountHealthReport]:
    """Evaluate every account; accounts that fail evaluation are logged and left out."""
    items = accounts.items() if isinstance(accounts, Mapping) else accounts
    reports: list[AccountHealthReport] = []
    for key, account in items:
        log = logger.bind(account=key)
        try:
            report = _evaluate(key, account, group)
        except RiskEngineError as exc:
            log.warning("skipping account {}: {}: {}", key, type(exc).__name__, exc)
            continue
        if report.state is not AccountState.HEALTHY:
            log.info(
                "account {} is {} (maint health {})",
                key,
                report.state.value,
                report.maint_health.to_decimal_string(config.display_places),
            )
        reports.append(report)
    return reports


def book_summary(bids: BookSide, asks: BookSide, config: EngineConfig) -> BookSummary:
    if not bids.is_bids or asks.is_bids:
        raise ValueError("book_summary expects (bids, asks)")
    best_bid = bids.get_best()
    best_ask = asks.get_best()
    bid_price = best_bid.price_lots if best_bid is not None else None
    ask_price = best_ask.price_lots if best_ask is not None else None
    spread = ask_price - bid_price if bid_price is not None and ask_price is not None else None
    return BookSummary(
        best_bid=bid_price,
        best_ask=ask_price,
        spread=spread,
        bid_impact_price=bids.get_impact_price(config.impact_quantity_lots),
        ask_impact_price=asks.get_impact_price(config.impact_quantity_lots),
        bids=tuple(bids.get_l2(config.l2_depth)),
        asks=tuple(asks.get_l2(config.l2_depth)),
    )

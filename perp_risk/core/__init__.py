"""
Core risk computations
"""

from .errors import DivideByZeroError, MalformedDataError, OutOfRangeError, RiskEngineError
from .fixednum import FixedPoint128
from .book import BookLevel, BookSide, LeafNode
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
from .health import (
    AccountState,
    GroupSnapshot,
    MarginAccount,
    SpotOpenOrders,
    account_state,
    health,
    health_ratio,
    is_bankrupt,
    is_liquidatable,
)

__all__ = [
    "FixedPoint128",
    "BookLevel",
    "BookSide",
    "LeafNode",
    "HealthType",
    "PerpMarketCache",
    "PerpMarketInfo",
    "PriceCache",
    "RootBankCache",
    "SpotMarketInfo",
    "TokenInfo",
    "PerpAccount",
    "AccountState",
    "GroupSnapshot",
    "MarginAccount",
    "SpotOpenOrders",
    "account_state",
    "health",
    "health_ratio",
    "is_bankrupt",
    "is_liquidatable",
    "RiskEngineError",
    "OutOfRangeError",
    "DivideByZeroError",
    "MalformedDataError",
]

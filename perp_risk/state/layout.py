"""
Byte layouts of the protocol accounts the risk engine reads.

Every structure is packed little-endian with no implicit padding, so each one
is a fixed-size record. Decoders check the exact size and raise
`MalformedDataError` on a mismatch; encoders produce the same bytes back.

Book sides live in `core.book` since their node layout is inseparable from
the tree walk.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Callable, List, Tuple, TypeVar

from loguru import logger
from solders.pubkey import Pubkey

from ..core.errors import MalformedDataError
from ..core.fixednum import FIXED_POINT_BYTES, FixedPoint128
from ..core.health import MarginAccount
from ..core.market import (
    PerpMarketCache,
    PerpMarketInfo,
    PriceCache,
    RootBankCache,
    SpotMarketInfo,
    TokenInfo,
)
from ..core.perp_account import PerpAccount


MAX_TOKENS = 16
MAX_PAIRS = MAX_TOKENS - 1
MAX_PERP_OPEN_ORDERS = 64
INFO_LEN = 32
PUBKEY_BYTES = 32

DATA_TYPE_MARGIN_ACCOUNT = 1

METADATA_SIZE = 8
PERP_ACCOUNT_SIZE = 96
MARGIN_ACCOUNT_SIZE = 4296
PERP_MARKET_CACHE_SIZE = 40
PRICE_CACHE_SIZE = 24
ROOT_BANK_CACHE_SIZE = 40
PERP_MARKET_INFO_SIZE = 160
SPOT_MARKET_INFO_SIZE = 112
TOKEN_INFO_SIZE = 72

# u8 data_type, u8 version, u8 is_initialized, u8[5] extra
_METADATA = struct.Struct("<BBB5s")
# i64 base, I80F48 quote, I80F48 long_settled, I80F48 short_settled,
# i64 bids, i64 asks, i64 taker_base, i64 taker_quote, u64 rewards
_PERP_ACCOUNT = struct.Struct("<q16s16s16sqqqqQ")
_PERP_MARKET_CACHE = struct.Struct("<16s16sQ")
_PRICE_CACHE = struct.Struct("<16sQ")
_ROOT_BANK_CACHE = struct.Struct("<16s16sQ")
# perp_market, 7 x I80F48 (maint/init asset, maint/init liab, liq fee, maker, taker),
# i64 base_lot_size, i64 quote_lot_size
_PERP_MARKET_INFO = struct.Struct("<32s16s16s16s16s16s16s16sqq")
# spot_market, 5 x I80F48 (maint/init asset, maint/init liab, liq fee)
_SPOT_MARKET_INFO = struct.Struct("<32s16s16s16s16s16s")
# mint, root_bank, u8 decimals, u8[7] padding
_TOKEN_INFO = struct.Struct("<32s32sB7s")

assert _METADATA.size == METADATA_SIZE
assert _PERP_ACCOUNT.size == PERP_ACCOUNT_SIZE
assert _PERP_MARKET_CACHE.size == PERP_MARKET_CACHE_SIZE
assert _PRICE_CACHE.size == PRICE_CACHE_SIZE
assert _ROOT_BANK_CACHE.size == ROOT_BANK_CACHE_SIZE
assert _PERP_MARKET_INFO.size == PERP_MARKET_INFO_SIZE
assert _SPOT_MARKET_INFO.size == SPOT_MARKET_INFO_SIZE
assert _TOKEN_INFO.size == TOKEN_INFO_SIZE

T = TypeVar("T")


@dataclass(frozen=True)
class MetaData:
    data_type: int
    version: int = 0
    is_initialized: bool = True
    extra: bytes = b"\x00" * 5


def _check_size(data: bytes | bytearray | memoryview, expected: int, *, what: str) -> bytes:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError("data must be bytes")
    data = bytes(data)
    if len(data) != expected:
        raise MalformedDataError(f"{what} must be {expected} bytes, got {len(data)}")
    return data


def _fixed(raw: bytes) -> FixedPoint128:
    return FixedPoint128.from_bytes(raw)


def _pubkey_or_none(raw: bytes) -> Pubkey | None:
    key = Pubkey.from_bytes(raw)
    return None if key == Pubkey.default() else key


def _pubkey_bytes(key: Pubkey | None) -> bytes:
    return bytes(key) if key is not None else bytes(PUBKEY_BYTES)


# -- Scalar records ----------------------------------------------------------

def decode_metadata(data: bytes) -> MetaData:
    data = _check_size(data, METADATA_SIZE, what="metadata")
    data_type, version, is_initialized, extra = _METADATA.unpack(data)
    return MetaData(data_type=data_type, version=version, is_initialized=bool(is_initialized), extra=extra)


def encode_metadata(meta: MetaData) -> bytes:
    return _METADATA.pack(meta.data_type, meta.version, int(meta.is_initialized), meta.extra)


def decode_perp_account(data: bytes) -> PerpAccount:
    data = _check_size(data, PERP_ACCOUNT_SIZE, what="perp account")
    base, quote, long_settled, short_settled, bids, asks, taker_base, taker_quote, rewards = _PERP_ACCOUNT.unpack(data)
    return PerpAccount(
        base_position=base,
        quote_position=_fixed(quote),
        long_settled_funding=_fixed(long_settled),
        short_settled_funding=_fixed(short_settled),
        bids_quantity=bids,
        asks_quantity=asks,
        taker_base=taker_base,
        taker_quote=taker_quote,
        rewards_accrued=rewards,
    )


def encode_perp_account(pa: PerpAccount) -> bytes:
    try:
        return _PERP_ACCOUNT.pack(
            pa.base_position,
            pa.quote_position.to_bytes(),
            pa.long_settled_funding.to_bytes(),
            pa.short_settled_funding.to_bytes(),
            pa.bids_quantity,
            pa.asks_quantity,
            pa.taker_base,
            pa.taker_quote,
            pa.rewards_accrued,
        )
    except struct.error as exc:
        raise MalformedDataError(f"perp account field out of range: {exc}") from exc


def decode_perp_market_cache(data: bytes) -> PerpMarketCache:
    data = _check_size(data, PERP_MARKET_CACHE_SIZE, what="perp market cache")
    long_funding, short_funding, last_update = _PERP_MARKET_CACHE.unpack(data)
    return PerpMarketCache(long_funding=_fixed(long_funding), short_funding=_fixed(short_funding), last_update=last_update)


def encode_perp_market_cache(cache: PerpMarketCache) -> bytes:
    return _PERP_MARKET_CACHE.pack(cache.long_funding.to_bytes(), cache.short_funding.to_bytes(), cache.last_update)


def decode_price_cache(data: bytes) -> PriceCache:
    data = _check_size(data, PRICE_CACHE_SIZE, what="price cache")
    price, last_update = _PRICE_CACHE.unpack(data)
    return PriceCache(price=_fixed(price), last_update=last_update)


def encode_price_cache(cache: PriceCache) -> bytes:
    return _PRICE_CACHE.pack(cache.price.to_bytes(), cache.last_update)


def decode_root_bank_cache(data: bytes) -> RootBankCache:
    data = _check_size(data, ROOT_BANK_CACHE_SIZE, what="root bank cache")
    deposit_index, borrow_index, last_update = _ROOT_BANK_CACHE.unpack(data)
    return RootBankCache(deposit_index=_fixed(deposit_index), borrow_index=_fixed(borrow_index), last_update=last_update)


def encode_root_bank_cache(cache: RootBankCache) -> bytes:
    return _ROOT_BANK_CACHE.pack(cache.deposit_index.to_bytes(), cache.borrow_index.to_bytes(), cache.last_update)


def decode_perp_market_info(data: bytes) -> PerpMarketInfo:
    data = _check_size(data, PERP_MARKET_INFO_SIZE, what="perp market info")
    (
        perp_market,
        maint_asset,
        init_asset,
        maint_liab,
        init_liab,
        liquidation_fee,
        maker_fee,
        taker_fee,
        base_lot_size,
        quote_lot_size,
    ) = _PERP_MARKET_INFO.unpack(data)
    if base_lot_size < 0 or quote_lot_size < 0:
        raise MalformedDataError("negative lot size in perp market info")
    return PerpMarketInfo(
        base_lot_size=base_lot_size,
        quote_lot_size=quote_lot_size,
        maint_asset_weight=_fixed(maint_asset),
        init_asset_weight=_fixed(init_asset),
        maint_liab_weight=_fixed(maint_liab),
        init_liab_weight=_fixed(init_liab),
        liquidation_fee=_fixed(liquidation_fee),
        maker_fee=_fixed(maker_fee),
        taker_fee=_fixed(taker_fee),
        perp_market=_pubkey_or_none(perp_market),
    )


def encode_perp_market_info(info: PerpMarketInfo) -> bytes:
    return _PERP_MARKET_INFO.pack(
        _pubkey_bytes(info.perp_market),
        info.maint_asset_weight.to_bytes(),
        info.init_asset_weight.to_bytes(),
        info.maint_liab_weight.to_bytes(),
        info.init_liab_weight.to_bytes(),
        info.liquidation_fee.to_bytes(),
        info.maker_fee.to_bytes(),
        info.taker_fee.to_bytes(),
        info.base_lot_size,
        info.quote_lot_size,
    )


def decode_spot_market_info(data: bytes) -> SpotMarketInfo:
    data = _check_size(data, SPOT_MARKET_INFO_SIZE, what="spot market info")
    spot_market, maint_asset, init_asset, maint_liab, init_liab, liquidation_fee = _SPOT_MARKET_INFO.unpack(data)
    return SpotMarketInfo(
        maint_asset_weight=_fixed(maint_asset),
        init_asset_weight=_fixed(init_asset),
        maint_liab_weight=_fixed(maint_liab),
        init_liab_weight=_fixed(init_liab),
        liquidation_fee=_fixed(liquidation_fee),
        spot_market=_pubkey_or_none(spot_market),
    )


def decode_token_info(data: bytes) -> TokenInfo:
    data = _check_size(data, TOKEN_INFO_SIZE, what="token info")
    mint, _root_bank, decimals, _padding = _TOKEN_INFO.unpack(data)
    return TokenInfo(decimals=decimals, mint=_pubkey_or_none(mint))


def decode_array(data: bytes, item_size: int, decode: Callable[[bytes], T]) -> List[T]:
    """Decode a packed array of fixed-size records."""
    data = bytes(data)
    if item_size <= 0 or len(data) % item_size != 0:
        raise MalformedDataError(f"array of {len(data)} bytes is not a multiple of {item_size}")
    return [decode(data[i : i + item_size]) for i in range(0, len(data), item_size)]


# -- Margin account ----------------------------------------------------------

class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self.offset = 0

    def take(self, n: int) -> bytes:
        chunk = self._data[self.offset : self.offset + n]
        self.offset += n
        return chunk

    def unpack(self, fmt: str) -> Tuple[Any, ...]:
        values = struct.unpack_from(fmt, self._data, self.offset)
        self.offset += struct.calcsize(fmt)
        return values

    def fixed_array(self, n: int) -> Tuple[FixedPoint128, ...]:
        return tuple(_fixed(self.take(FIXED_POINT_BYTES)) for _ in range(n))

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self.take(PUBKEY_BYTES))


def decode_margin_account(data: bytes) -> MarginAccount:
    """
    Decode a 4296-byte margin account.

    Spot open-orders balances are not part of the account; the returned
    record carries only their keys in `spot_open_orders_keys`. Attach balances
    with `dataclasses.replace(account, spot_open_orders=...)`.
    """
    data = _check_size(data, MARGIN_ACCOUNT_SIZE, what="margin account")
    r = _Reader(data)
    meta = decode_metadata(r.take(METADATA_SIZE))
    if meta.data_type != DATA_TYPE_MARGIN_ACCOUNT:
        raise MalformedDataError(f"unexpected data type {meta.data_type} for a margin account")
    group = r.pubkey()
    owner = r.pubkey()
    in_margin_basket = tuple(bool(b) for b in r.take(MAX_PAIRS))
    (_num_in_margin_basket,) = r.unpack("<B")
    deposits = r.fixed_array(MAX_TOKENS)
    borrows = r.fixed_array(MAX_TOKENS)
    spot_open_orders_keys = tuple(r.pubkey() for _ in range(MAX_PAIRS))
    perp_accounts = tuple(decode_perp_account(r.take(PERP_ACCOUNT_SIZE)) for _ in range(MAX_PAIRS))
    order_market = tuple(r.take(MAX_PERP_OPEN_ORDERS))
    order_side = tuple(r.take(MAX_PERP_OPEN_ORDERS))
    orders = tuple(
        int.from_bytes(r.take(16), byteorder="little", signed=True) for _ in range(MAX_PERP_OPEN_ORDERS)
    )
    client_order_ids = r.unpack(f"<{MAX_PERP_OPEN_ORDERS}Q")
    msrm_amount, being_liquidated, is_bankrupt = r.unpack("<Q??")
    info = r.take(INFO_LEN)
    advanced_orders_key = r.pubkey()
    (not_upgradable,) = r.unpack("<?")
    delegate = r.pubkey()
    r.take(5)
    assert r.offset == MARGIN_ACCOUNT_SIZE

    account = MarginAccount(
        deposits=deposits,
        borrows=borrows,
        perp_accounts=perp_accounts,
        in_margin_basket=in_margin_basket,
        being_liquidated=being_liquidated,
        is_bankrupt=is_bankrupt,
        owner=owner,
        group=group,
        order_market=order_market,
        order_side=order_side,
        orders=orders,
        client_order_ids=tuple(client_order_ids),
        info=info,
        spot_open_orders_keys=spot_open_orders_keys,
        msrm_amount=msrm_amount,
        advanced_orders_key=_pubkey_or_none(bytes(advanced_orders_key)),
        not_upgradable=not_upgradable,
        delegate=_pubkey_or_none(bytes(delegate)),
    )
    logger.bind(account=str(owner)).debug("decoded margin account with {} basket markets", sum(in_margin_basket))
    return account


def _padded(values: Tuple[T, ...], n: int, fill: T, *, name: str) -> List[T]:
    if len(values) > n:
        raise MalformedDataError(f"{name} has {len(values)} entries, max {n}")
    return list(values) + [fill] * (n - len(values))


def encode_margin_account(account: MarginAccount) -> bytes:
    out = bytearray()
    out += encode_metadata(MetaData(data_type=DATA_TYPE_MARGIN_ACCOUNT))
    out += _pubkey_bytes(account.group)
    out += _pubkey_bytes(account.owner)
    basket = _padded(account.in_margin_basket, MAX_PAIRS, False, name="in_margin_basket")
    out += bytes(int(b) for b in basket)
    out += struct.pack("<B", sum(basket))
    for value in _padded(account.deposits, MAX_TOKENS, FixedPoint128(0), name="deposits"):
        out += value.to_bytes()
    for value in _padded(account.borrows, MAX_TOKENS, FixedPoint128(0), name="borrows"):
        out += value.to_bytes()
    for key in _padded(account.spot_open_orders_keys, MAX_PAIRS, None, name="spot_open_orders_keys"):
        out += _pubkey_bytes(key)
    for pa in _padded(account.perp_accounts, MAX_PAIRS, PerpAccount(), name="perp_accounts"):
        out += encode_perp_account(pa)
    out += bytes(_padded(account.order_market, MAX_PERP_OPEN_ORDERS, 255, name="order_market"))
    out += bytes(_padded(account.order_side, MAX_PERP_OPEN_ORDERS, 0, name="order_side"))
    for key in _padded(account.orders, MAX_PERP_OPEN_ORDERS, 0, name="orders"):
        out += key.to_bytes(16, byteorder="little", signed=True)
    out += struct.pack(
        f"<{MAX_PERP_OPEN_ORDERS}Q", *_padded(account.client_order_ids, MAX_PERP_OPEN_ORDERS, 0, name="client_order_ids")
    )
    out += struct.pack("<Q??", account.msrm_amount, account.being_liquidated, account.is_bankrupt)
    out += account.info[:INFO_LEN].ljust(INFO_LEN, b"\x00")
    out += _pubkey_bytes(account.advanced_orders_key)
    out += struct.pack("<?", account.not_upgradable)
    out += _pubkey_bytes(account.delegate)
    out += bytes(5)
    assert len(out) == MARGIN_ACCOUNT_SIZE
    return bytes(out)

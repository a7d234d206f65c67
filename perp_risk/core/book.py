"""
One side of a perp order book, decoded from its account bytes.

On chain the book side is a crit-bit tree stored in a flat array of 1024
fixed-size slots. Each slot is tagged as inner node, leaf (a resting order),
free-list entry, or uninitialized. Order keys are 128-bit:

    key = (price_lots << 64) | seq_bits

so in-order traversal gives price-then-time priority without any sorting.
For bids the sequence bits are inverted on insertion so older orders still
rank first. Inner node ``children[0]`` holds the lower keys.

Decoding validates the tree shape up front (index bounds, cycles, leaf count);
once a ``BookSide`` exists, traversal cannot fail.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum, unique
from typing import Iterator, List, Optional, Tuple, Union

from loguru import logger
from solders.pubkey import Pubkey

from .errors import MalformedDataError
from .fixednum import FixedPoint128


MAX_BOOK_NODES = 1024
BOOK_NODE_SIZE = 88
BOOK_HEADER_SIZE = 40
BOOK_SIDE_SIZE = BOOK_HEADER_SIZE + MAX_BOOK_NODES * BOOK_NODE_SIZE  # 90152

DATA_TYPE_BIDS = 5
DATA_TYPE_ASKS = 6

U64_MASK = (1 << 64) - 1

# metadata (u8 data_type, u8 version, u8 is_initialized, u8[5] extra),
# u64 bump_index, u64 free_list_len, u32 free_list_head, u32 root_node, u64 leaf_count
_HEADER = struct.Struct("<BBB5sQQIIQ")
_TAG = struct.Struct("<I")
# u32 prefix_len, u128 key, u32 children[2]
_INNER = struct.Struct("<I16sII")
# u8 owner_slot, u8 order_type, u8 version, u8 time_in_force, u128 key, [32] owner,
# u64 quantity, u64 client_order_id, u64 best_initial, u64 timestamp
_LEAF = struct.Struct("<BBBB16s32sQQQQ")
_FREE = struct.Struct("<I")

assert _HEADER.size == BOOK_HEADER_SIZE
assert _TAG.size + _LEAF.size == BOOK_NODE_SIZE


@unique
class NodeTag(IntEnum):
    UNINITIALIZED = 0
    INNER = 1
    LEAF = 2
    FREE = 3
    LAST_FREE = 4


def price_from_key(key: int) -> int:
    """Price in lots: the high 64 bits of an order key."""
    return key >> 64


def order_key(price_lots: int, seq_num: int, *, is_bids: bool) -> int:
    """Build an order key the way the matching engine does on insertion."""
    low = (~seq_num & U64_MASK) if is_bids else (seq_num & U64_MASK)
    return (price_lots << 64) | low


@dataclass(frozen=True)
class InnerNode:
    prefix_len: int
    key: int
    children: Tuple[int, int]


@dataclass(frozen=True)
class LeafNode:
    """A resting order."""

    owner_slot: int
    order_type: int
    version: int
    time_in_force: int
    key: int
    owner: Pubkey
    quantity: int
    client_order_id: int
    best_initial: int
    timestamp: int

    @property
    def price_lots(self) -> int:
        return price_from_key(self.key)

    @property
    def seq_bits(self) -> int:
        return self.key & U64_MASK


@dataclass(frozen=True)
class FreeNode:
    """Free-list slot; ``next`` is None for the last entry."""

    next: Optional[int]


BookNode = Union[InnerNode, LeafNode, FreeNode, None]


@dataclass(frozen=True)
class BookLevel:
    """Aggregated L2 level."""

    price_lots: int
    size_lots: int
    native_price: FixedPoint128
    native_size: FixedPoint128


def _u128(raw: bytes) -> int:
    return int.from_bytes(raw, byteorder="little", signed=False)


def _decode_node(data: bytes, index: int) -> BookNode:
    offset = BOOK_HEADER_SIZE + index * BOOK_NODE_SIZE
    (tag,) = _TAG.unpack_from(data, offset)
    body = offset + _TAG.size
    if tag == NodeTag.UNINITIALIZED:
        return None
    if tag == NodeTag.INNER:
        prefix_len, key, left, right = _INNER.unpack_from(data, body)
        if left >= MAX_BOOK_NODES or right >= MAX_BOOK_NODES:
            raise MalformedDataError(f"inner node {index} has child index out of range")
        return InnerNode(prefix_len=prefix_len, key=_u128(key), children=(left, right))
    if tag == NodeTag.LEAF:
        (
            owner_slot,
            order_type,
            version,
            time_in_force,
            key,
            owner,
            quantity,
            client_order_id,
            best_initial,
            timestamp,
        ) = _LEAF.unpack_from(data, body)
        return LeafNode(
            owner_slot=owner_slot,
            order_type=order_type,
            version=version,
            time_in_force=time_in_force,
            key=_u128(key),
            owner=Pubkey.from_bytes(owner),
            quantity=quantity,
            client_order_id=client_order_id,
            best_initial=best_initial,
            timestamp=timestamp,
        )
    if tag == NodeTag.FREE:
        (next_index,) = _FREE.unpack_from(data, body)
        return FreeNode(next=next_index)
    if tag == NodeTag.LAST_FREE:
        return FreeNode(next=None)
    raise MalformedDataError(f"node {index} has unknown tag {tag}")


def _check_tree(nodes: Tuple[BookNode, ...], root: int, leaf_count: int) -> None:
    if leaf_count == 0:
        return
    if root >= MAX_BOOK_NODES:
        raise MalformedDataError(f"root index {root} out of range")
    seen: set[int] = set()
    leaves = 0
    stack = [root]
    while stack:
        index = stack.pop()
        if index in seen:
            raise MalformedDataError(f"node {index} reachable twice (cycle or shared child)")
        seen.add(index)
        node = nodes[index]
        if isinstance(node, LeafNode):
            leaves += 1
        elif isinstance(node, InnerNode):
            stack.extend(node.children)
        else:
            raise MalformedDataError(f"node {index} is reachable from the root but is not inner or leaf")
    if leaves != leaf_count:
        raise MalformedDataError(f"leaf_count is {leaf_count} but the tree holds {leaves} leaves")


@dataclass(frozen=True)
class BookSide:
    """Immutable snapshot of one side of the book."""

    is_bids: bool
    root_node: int
    leaf_count: int
    nodes: Tuple[BookNode, ...]
    bump_index: int = 0
    free_list_len: int = 0
    free_list_head: int = 0
    version: int = 0
    base_lot_size: int = 1
    quote_lot_size: int = 1

    def __post_init__(self) -> None:
        if len(self.nodes) != MAX_BOOK_NODES:
            raise MalformedDataError(f"book side must have {MAX_BOOK_NODES} slots, got {len(self.nodes)}")
        if self.base_lot_size <= 0 or self.quote_lot_size <= 0:
            raise ValueError("lot sizes must be positive")
        _check_tree(self.nodes, self.root_node, self.leaf_count)

    @classmethod
    def decode(cls, data: bytes | bytearray | memoryview, *, base_lot_size: int = 1, quote_lot_size: int = 1) -> BookSide:
        """Decode a full book-side account. Raises ``MalformedDataError`` on any shape mismatch."""
        data = bytes(data)
        if len(data) != BOOK_SIDE_SIZE:
            raise MalformedDataError(f"book side must be {BOOK_SIDE_SIZE} bytes, got {len(data)}")
        (
            data_type,
            version,
            _is_initialized,
            _extra,
            bump_index,
            free_list_len,
            free_list_head,
            root_node,
            leaf_count,
        ) = _HEADER.unpack_from(data, 0)
        if data_type not in (DATA_TYPE_BIDS, DATA_TYPE_ASKS):
            raise MalformedDataError(f"unexpected data type {data_type} for a book side")
        if leaf_count > MAX_BOOK_NODES:
            raise MalformedDataError(f"leaf_count {leaf_count} exceeds {MAX_BOOK_NODES}")
        nodes = tuple(_decode_node(data, i) for i in range(MAX_BOOK_NODES))
        side = cls(
            is_bids=data_type == DATA_TYPE_BIDS,
            root_node=root_node,
            leaf_count=leaf_count,
            nodes=nodes,
            bump_index=bump_index,
            free_list_len=free_list_len,
            free_list_head=free_list_head,
            version=version,
            base_lot_size=base_lot_size,
            quote_lot_size=quote_lot_size,
        )
        logger.debug("decoded {} side with {} orders", "bid" if side.is_bids else "ask", leaf_count)
        return side

    def encode(self) -> bytes:
        """Serialize back to the account layout."""
        out = bytearray(BOOK_SIDE_SIZE)
        _HEADER.pack_into(
            out,
            0,
            DATA_TYPE_BIDS if self.is_bids else DATA_TYPE_ASKS,
            self.version,
            1,
            b"\x00" * 5,
            self.bump_index,
            self.free_list_len,
            self.free_list_head,
            self.root_node,
            self.leaf_count,
        )
        for index, node in enumerate(self.nodes):
            offset = BOOK_HEADER_SIZE + index * BOOK_NODE_SIZE
            body = offset + _TAG.size
            if node is None:
                _TAG.pack_into(out, offset, NodeTag.UNINITIALIZED)
            elif isinstance(node, InnerNode):
                _TAG.pack_into(out, offset, NodeTag.INNER)
                _INNER.pack_into(out, body, node.prefix_len, node.key.to_bytes(16, "little"), *node.children)
            elif isinstance(node, LeafNode):
                _TAG.pack_into(out, offset, NodeTag.LEAF)
                _LEAF.pack_into(
                    out,
                    body,
                    node.owner_slot,
                    node.order_type,
                    node.version,
                    node.time_in_force,
                    node.key.to_bytes(16, "little"),
                    bytes(node.owner),
                    node.quantity,
                    node.client_order_id,
                    node.best_initial,
                    node.timestamp,
                )
            elif node.next is None:
                _TAG.pack_into(out, offset, NodeTag.LAST_FREE)
            else:
                _TAG.pack_into(out, offset, NodeTag.FREE)
                _FREE.pack_into(out, body, node.next)
        return bytes(out)

    # -- Traversal -----------------------------------------------------------

    def items(self) -> Iterator[LeafNode]:
        """
        Yield resting orders in priority order: best price first, then oldest.

        Each call starts a fresh depth-first walk over the immutable snapshot.
        """
        if self.leaf_count == 0:
            return
        stack = [self.root_node]
        while stack:
            node = self.nodes[stack.pop()]
            if isinstance(node, LeafNode):
                yield node
            elif isinstance(node, InnerNode):
                left, right = node.children
                if self.is_bids:
                    stack.extend((left, right))
                else:
                    stack.extend((right, left))

    def __iter__(self) -> Iterator[LeafNode]:
        return self.items()

    def __len__(self) -> int:
        return self.leaf_count

    def get_best(self) -> LeafNode | None:
        return next(self.items(), None)

    def get_l2(self, depth: int) -> List[BookLevel]:
        """Top ``depth`` price levels, equal prices merged, best first."""
        if not isinstance(depth, int) or isinstance(depth, bool) or depth < 0:
            raise ValueError("depth must be a non-negative int")
        levels: list[list[int]] = []
        for order in self.items():
            price = order.price_lots
            if levels and levels[-1][0] == price:
                levels[-1][1] += order.quantity
            elif len(levels) == depth:
                break
            else:
                levels.append([price, order.quantity])
        return [
            BookLevel(
                price_lots=price,
                size_lots=size,
                native_price=self.price_lots_to_native(price),
                native_size=FixedPoint128.from_int(self.base_lot_size * size),
            )
            for price, size in levels
        ]

    def get_impact_price(self, quantity_lots: int) -> int | None:
        """
        Price (lots) of the order at which cumulative size reaches ``quantity_lots``.

        Returns None when the whole side is too thin.
        """
        if not isinstance(quantity_lots, int) or isinstance(quantity_lots, bool) or quantity_lots <= 0:
            raise ValueError("quantity_lots must be a positive int")
        filled = 0
        for order in self.items():
            filled += order.quantity
            if filled >= quantity_lots:
                return order.price_lots
        return None

    def get_impact_price_native(self, quantity_lots: int) -> FixedPoint128 | None:
        price = self.get_impact_price(quantity_lots)
        return None if price is None else self.price_lots_to_native(price)

    def total_size_lots(self) -> int:
        return sum(order.quantity for order in self.items())

    def orders_for_owner(self, owner: Pubkey) -> List[LeafNode]:
        return [order for order in self.items() if order.owner == owner]

    def price_lots_to_native(self, price_lots: int) -> FixedPoint128:
        return FixedPoint128.from_int(self.quote_lot_size * price_lots).div(
            FixedPoint128.from_int(self.base_lot_size)
        )

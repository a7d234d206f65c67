from __future__ import annotations

from typing import Callable, List, Optional, Sequence, Tuple

import pytest
from solders.pubkey import Pubkey

from perp_risk.core.book import MAX_BOOK_NODES, BookNode, BookSide, InnerNode, LeafNode, order_key


OWNER = Pubkey.from_bytes(bytes([7] * 32))


def build_book_side(
    orders: Sequence[Tuple[int, int]],
    *,
    is_bids: bool,
    owners: Optional[Sequence[Pubkey]] = None,
    base_lot_size: int = 1,
    quote_lot_size: int = 1,
) -> BookSide:
    """
    Balanced crit-bit-shaped tree from (price_lots, quantity) pairs.

    Sequence numbers follow list order, so earlier entries are older orders.
    """
    leaves: List[LeafNode] = []
    for seq, (price, quantity) in enumerate(orders):
        leaves.append(
            LeafNode(
                owner_slot=0,
                order_type=0,
                version=0,
                time_in_force=0,
                key=order_key(price, seq, is_bids=is_bids),
                owner=owners[seq] if owners is not None else OWNER,
                quantity=quantity,
                client_order_id=seq,
                best_initial=0,
                timestamp=seq,
            )
        )
    leaves.sort(key=lambda leaf: leaf.key)
    nodes: List[BookNode] = list(leaves)

    def build(lo: int, hi: int) -> int:
        if hi - lo == 1:
            return lo
        mid = (lo + hi) // 2
        left = build(lo, mid)
        right = build(mid, hi)
        nodes.append(InnerNode(prefix_len=0, key=leaves[mid].key, children=(left, right)))
        return len(nodes) - 1

    root = build(0, len(leaves)) if leaves else 0
    nodes.extend([None] * (MAX_BOOK_NODES - len(nodes)))
    return BookSide(
        is_bids=is_bids,
        root_node=root,
        leaf_count=len(leaves),
        nodes=tuple(nodes),
        bump_index=len([n for n in nodes if n is not None]),
        base_lot_size=base_lot_size,
        quote_lot_size=quote_lot_size,
    )


@pytest.fixture
def make_book_side() -> Callable[..., BookSide]:
    return build_book_side

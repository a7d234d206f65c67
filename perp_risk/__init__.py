"""
perp_risk: client-side mirror of an on-chain perp/margin risk engine.

Pure computations over decoded account snapshots:
- `core`: fixed-point math, order book sides, per-market positions, account health
- `state`: account byte layouts
- `integration`: configuration and batch scanning
"""

__version__ = "0.1.0"

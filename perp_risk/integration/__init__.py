"""
Configuration and batch helpers for callers of the risk engine.
"""

from .config import EngineConfig, load_config
from .scanner import AccountHealthReport, BookSummary, book_summary, scan_accounts

__all__ = [
    "EngineConfig",
    "load_config",
    "AccountHealthReport",
    "BookSummary",
    "book_summary",
    "scan_accounts",
]

"""
Exchange adapters. The orchestrator only talks to ExchangeAdapter.
"""
from .base import ExchangeAdapter
from .hyperliquid import HyperliquidAdapter

__all__ = ["ExchangeAdapter", "HyperliquidAdapter"]

"""
Fleet Trader - lifecycle supervision and execution orchestration for
autonomous perpetuals trading agents on Hyperliquid.
"""
__version__ = "0.1.0"

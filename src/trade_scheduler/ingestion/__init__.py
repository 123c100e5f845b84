"""
Ingestion Layer - market data for trigger evaluation.

Public API:
    MarketSnapshotProvider - public ticker polling and latest-price lookup
"""
from .market_data import MarketSnapshotProvider

__all__ = ["MarketSnapshotProvider"]

"""
LN Markets Trade Scheduler

Background engine that holds users' scheduled (conditional) trades,
fires them against live BTC/USD market data, and keeps local trade
records reconciled with the exchange.

Layers:
    storage    - asyncpg database, repositories, pydantic models
    exchange   - LN Markets REST client and per-user gateway
    ingestion  - market snapshot provider (public ticker)
    execution  - trade executor and exchange state reconciler
    core       - trigger evaluation, scheduler loop, service facade
"""

__version__ = "0.1.0"

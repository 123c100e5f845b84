"""
Integration tests for the trade scheduler.

These tests verify that components work together correctly.
They run on the in-memory backend against a fake exchange.

Run with:
    pytest tests/integration/ -v -m integration

Skip with:
    pytest -m "not integration"
"""

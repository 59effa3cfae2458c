"""
Integration tests for the price monitor.

These tests run the full service against a scripted websocket feed.
They never touch the network.

Run with:
    pytest tests/integration/ -v -m integration

Skip with:
    pytest -m "not integration"
"""

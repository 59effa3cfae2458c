"""
FastAPI status app for the price monitor.

Read-only endpoints:
    GET /health               200 when the feed is connected, else 503
    GET /api/status           full service snapshot
    GET /api/prices           latest price per symbol
    GET /api/symbols/{symbol} tick fields and band for one symbol
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from price_monitor import __version__

if TYPE_CHECKING:
    from price_monitor.core.service import MonitorService

logger = logging.getLogger(__name__)


def create_dashboard_app(service: "MonitorService") -> FastAPI:
    """
    Create the FastAPI status application.

    Args:
        service: The monitor service to report on

    Returns:
        FastAPI application instance
    """
    app = FastAPI(
        title="Price Monitor",
        description="Status endpoints for the live price-threshold monitor",
        version=__version__,
    )

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint for Docker/Kubernetes.

        Returns 200 if the feed is connected, 503 otherwise.
        """
        status = service.status()
        if status.is_connected:
            return {"status": "healthy", "state": status.state.value}
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "state": status.state.value,
                "connection": status.connection.get("state"),
            },
        )

    @app.get("/api/status")
    async def get_status():
        """Get the full service snapshot."""
        return service.status().to_dict()

    @app.get("/api/prices")
    async def get_prices():
        """Get the latest price for every symbol seen so far."""
        return service.get_all_prices()

    @app.get("/api/symbols/{symbol}")
    async def get_symbol(symbol: str):
        """Get tick fields and band for one symbol."""
        info = service.get_symbol_info(symbol.upper())
        if info is None:
            raise HTTPException(status_code=404, detail=f"No data for {symbol}")
        return info

    return app

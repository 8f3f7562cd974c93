"""API routes for the job orchestrator."""

from swapflow.api import routes, websocket

__all__ = ["routes", "websocket"]

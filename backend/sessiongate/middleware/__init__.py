"""Middleware module for SessionGate."""

from sessiongate.middleware.route_gate import RouteGateMiddleware

__all__ = [
    "RouteGateMiddleware",
]

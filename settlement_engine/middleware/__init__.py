"""
Middleware components for request processing.
"""

from settlement_engine.middleware.request_context import RequestContextMiddleware

__all__ = ["RequestContextMiddleware"]

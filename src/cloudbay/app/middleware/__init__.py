"""HTTP middleware."""

from cloudbay.app.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]

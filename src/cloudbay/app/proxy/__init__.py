"""Edge proxy: Host-based routing to the frontend, the API and published resources."""

from cloudbay.app.proxy.router import EdgeRouter, RouteKind, Target
from cloudbay.app.proxy.routes import router

__all__ = ["EdgeRouter", "RouteKind", "Target", "router"]

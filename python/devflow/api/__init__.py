"""HTTP and WebSocket surface."""

from devflow.api.app import create_app

__all__ = ["create_app"]

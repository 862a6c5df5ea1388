"""HTTP API for chatbridge."""

from chatbridge.api.app import create_app, serve

__all__ = ["create_app", "serve"]

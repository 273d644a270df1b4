"""
REST API module for the stake engine.
Exposes agreements, invites, identities and reconciliation to the app clients.
"""

from .routes import router, create_api_app

__all__ = ["router", "create_api_app"]

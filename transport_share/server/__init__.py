"""HTTP server exposing this device's event log to peers.

Implements the GetEvents/PutEvents peer protocol with FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]

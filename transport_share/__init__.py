"""transport-share: local-first sync of transport events between devices."""

__version__ = "0.1.0"

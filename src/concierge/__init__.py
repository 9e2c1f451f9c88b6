"""Concierge: appointment scheduling and conflict-resolution daemon."""

__version__ = "0.1.0"

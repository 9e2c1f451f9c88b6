"""Pluggable daemon modules."""

from concierge.modules.base import Module

__all__ = ["Module"]

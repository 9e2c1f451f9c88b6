"""The contract every concierge module implements."""

from __future__ import annotations

import abc
from typing import Any

from pydantic import BaseModel


class Module(abc.ABC):
    """A pluggable unit of the daemon: a config section plus a set of MCP tools.

    Lifecycle, in order: ``config_schema`` validates ``[modules.<name>]``,
    ``on_startup`` runs once dependencies have started, ``register_tools``
    attaches tools to the MCP server, and ``on_shutdown`` runs in reverse
    dependency order.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Config section and registry key, e.g. ``"calendar"``."""

    @property
    @abc.abstractmethod
    def config_schema(self) -> type[BaseModel]: ...

    @property
    @abc.abstractmethod
    def dependencies(self) -> list[str]:
        """Modules that must start before this one."""

    @abc.abstractmethod
    async def register_tools(self, mcp: Any, config: Any, db: Any) -> None: ...

    @abc.abstractmethod
    async def on_startup(self, config: Any, db: Any) -> None:
        """Acquire resources. *db* is the :class:`~concierge.db.Database` or ``None``."""

    @abc.abstractmethod
    async def on_shutdown(self) -> None: ...

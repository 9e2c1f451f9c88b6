"""Concierge daemon: brings up one deployment and tears it down again.

``start()`` loads ``concierge.toml``, configures logging and tracing, orders
and validates the enabled modules, checks ``[concierge.env].required``,
prepares Postgres (when enabled), then starts the modules dependency-first.
Serving adds the FastMCP tool surface on an SSE endpoint.

A module that fails to start causes every module already started to be shut
down again before the error propagates. ``shutdown()`` stops the server,
stops modules last-started-first, then releases the pool.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Any

import uvicorn
from fastmcp import FastMCP
from pydantic import ValidationError

from concierge.config import ConciergeConfig, ConfigError, load_config
from concierge.core.logging import configure_logging
from concierge.core.telemetry import init_telemetry, tool_span
from concierge.db import Database
from concierge.migrations import run_migrations
from concierge.modules.base import Module
from concierge.modules.registry import ModuleRegistry, default_registry

logger = logging.getLogger(__name__)


class ModuleConfigError(Exception):
    """A ``[modules.<name>]`` section does not match the module's schema."""


class _TracedToolRegistrar:
    """Stands in for FastMCP during module tool registration.

    ``tool()`` registers the function with FastMCP wrapped in a
    :class:`tool_span`; anything else is delegated.
    """

    def __init__(self, mcp: FastMCP, service_name: str) -> None:
        self._mcp = mcp
        self._service_name = service_name

    def tool(self, *args, **kwargs):  # noqa: ANN002, ANN003, ANN201
        register = self._mcp.tool(*args, **kwargs)

        def decorate(fn):  # noqa: ANN001, ANN202
            traced = tool_span(kwargs.get("name") or fn.__name__, service_name=self._service_name)
            return register(traced(fn))

        return decorate

    def __getattr__(self, name: str) -> Any:
        return getattr(self._mcp, name)


async def _stop_modules(modules: list[Module]) -> None:
    for mod in reversed(modules):
        try:
            await mod.on_shutdown()
        except Exception:
            logger.exception("Module %s failed to shut down cleanly", mod.name)


class ConciergeDaemon:
    """Lifecycle owner for a single concierge deployment."""

    def __init__(self, config_dir: Path, registry: ModuleRegistry | None = None) -> None:
        self.config_dir = config_dir
        self._registry = registry or default_registry()
        self.config: ConciergeConfig | None = None
        self.db: Database | None = None
        self.mcp: FastMCP | None = None
        self._modules: list[Module] = []
        self._module_configs: dict[str, Any] = {}
        self._started_at: float | None = None
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task | None = None

    @property
    def modules(self) -> list[Module]:
        return list(self._modules)

    def get_module(self, name: str) -> Module | None:
        return next((mod for mod in self._modules if mod.name == name), None)

    async def start(self, *, serve: bool = True) -> None:
        """Bring the deployment up.

        ``serve=False`` is for one-shot CLI commands: modules start without
        their background tasks and no MCP server is created.
        """
        self.config = config = load_config(self.config_dir)
        configure_logging(
            level=config.logging.level,
            fmt=config.logging.format,
            log_root=Path(config.logging.log_root) if config.logging.log_root else None,
            service_name=config.name,
        )
        logger.info("Starting concierge %s from %s", config.name, self.config_dir)
        init_telemetry(f"concierge.{config.name}")

        self._modules = self._registry.load_from_config(config.modules)
        self._module_configs = self._validate_module_configs()
        self._validate_required_env()

        if config.db_enabled:
            await self._prepare_database()
        else:
            logger.info("Database disabled; reminder markers are kept in memory only")

        started: list[Module] = []
        try:
            for mod in self._modules:
                self._wire_collaborators(mod, background_tasks=serve)
                await mod.on_startup(self._module_configs.get(mod.name), self.db)
                started.append(mod)
        except Exception:
            logger.error("Module startup failed; stopping %d started module(s)", len(started))
            await _stop_modules(started)
            if self.db is not None:
                await self.db.close()
            raise
        self._started_at = time.monotonic()

        if serve:
            self.mcp = FastMCP(config.name)
            self._register_core_tools()
            await self._register_module_tools()
            await self._start_mcp_server()
            logger.info("Concierge %s serving MCP on port %d", config.name, config.port)

    def _require_config(self) -> ConciergeConfig:
        if self.config is None:
            raise RuntimeError("Concierge daemon has no configuration; call start() first")
        return self.config

    def _require_mcp(self) -> FastMCP:
        if self.mcp is None:
            raise RuntimeError("Concierge daemon is not serving MCP")
        return self.mcp

    async def _prepare_database(self) -> None:
        config = self._require_config()
        self.db = Database.from_env(config.db_name)
        await self.db.provision()
        await self.db.connect()
        await run_migrations(self.db.url, chain="core")

    def _validate_module_configs(self) -> dict[str, Any]:
        """Each module's ``[modules.<name>]`` dict parsed by its ``config_schema``.

        Raises :class:`ModuleConfigError` naming the module on the first failure.
        """
        config = self._require_config()
        validated: dict[str, Any] = {}
        for mod in self._modules:
            try:
                validated[mod.name] = mod.config_schema(**config.modules.get(mod.name, {}))
            except ValidationError as exc:
                raise ModuleConfigError(f"[modules.{mod.name}] is invalid: {exc}") from exc
        return validated

    def _validate_required_env(self) -> None:
        config = self._require_config()
        missing = sorted(var for var in config.env_required if not os.environ.get(var))
        if missing:
            raise ConfigError(f"Missing required environment variable(s): {', '.join(missing)}")

    def _wire_collaborators(self, mod: Module, *, background_tasks: bool) -> None:
        """Pass already-started modules' resources to *mod* through its setters."""
        calendar = self.get_module("calendar")
        email = self.get_module("email")
        hooks = (
            ("set_calendar_provider", calendar, lambda m: (m.provider, m.config)),
            ("set_notifier", email, lambda m: (m.notifier, m.branding)),
        )
        for setter_name, source, resources in hooks:
            setter = getattr(mod, setter_name, None)
            if callable(setter) and source is not None:
                setter(*resources(source))

        set_background = getattr(mod, "set_background_tasks", None)
        if callable(set_background):
            set_background(background_tasks)

    def _register_core_tools(self) -> None:
        mcp, config = self._require_mcp(), self._require_config()
        daemon = self

        @mcp.tool()
        @tool_span("status", service_name=config.name)
        async def status() -> dict:
            """Return concierge identity, health, loaded modules, and uptime."""
            started = daemon._started_at
            return {
                "name": config.name,
                "description": config.description,
                "port": config.port,
                "modules": [mod.name for mod in daemon._modules],
                "health": await daemon._check_health(),
                "uptime_seconds": round(time.monotonic() - started, 1) if started else 0,
            }

    async def _register_module_tools(self) -> None:
        registrar = _TracedToolRegistrar(self._require_mcp(), self._require_config().name)
        for mod in self._modules:
            await mod.register_tools(registrar, self._module_configs.get(mod.name), self.db)

    async def _check_health(self) -> str:
        """``"degraded"`` when the database is enabled but not answering."""
        if self.db is not None:
            try:
                await self.db.fetchval("SELECT 1")
            except Exception:
                logger.warning("Health check: database did not answer", exc_info=True)
                return "degraded"
        return "ok"

    async def _start_mcp_server(self) -> None:
        mcp, config = self._require_mcp(), self._require_config()
        self._server = uvicorn.Server(
            uvicorn.Config(
                mcp.http_app(transport="sse"),
                host="0.0.0.0",
                port=config.port,
                log_level="info",
                timeout_graceful_shutdown=0,
            )
        )
        self._server_task = asyncio.create_task(self._server.serve(), name="concierge-mcp")

    async def wait_closed(self) -> None:
        """Block until the MCP server task finishes."""
        if self._server_task is not None:
            await self._server_task

    async def shutdown(self) -> None:
        name = self.config.name if self.config else "unknown"
        logger.info("Stopping concierge %s", name)

        server, task = self._server, self._server_task
        self._server = self._server_task = None
        if server is not None:
            server.should_exit = True
        if task is not None:
            timeout = self.config.shutdown_timeout_s if self.config else 30.0
            try:
                await asyncio.wait_for(task, timeout=timeout)
            except TimeoutError:
                logger.warning("MCP server still running after %.1fs; abandoning it", timeout)
            except Exception:
                logger.exception("MCP server exited with an error")

        await _stop_modules(self._modules)
        if self.db is not None:
            await self.db.close()
        logger.info("Concierge %s stopped", name)

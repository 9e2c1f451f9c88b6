"""structlog-based logging for the concierge daemon.

Every stdlib ``logging.getLogger(__name__)`` call goes through structlog's
``ProcessorFormatter``, so module code never imports structlog directly.
Records carry the deployment name (``service``) and the active OTel trace
and span ids.

``fmt="text"`` renders colored console lines; ``fmt="json"`` renders one JSON
object per line. With ``log_root`` set, JSON copies are also written to
``<log_root>/concierge/<service>.log`` and HTTP transport logs to
``<log_root>/uvicorn/<service>.log``.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace

_service_context: ContextVar[str | None] = ContextVar("concierge_service", default=None)

# Chatty third-party loggers kept at WARNING on the console.
_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "mcp.server.lowlevel.server",
    "httpx",
    "httpcore",
)

_NO_TRACE_ID = "0" * 32
_NO_SPAN_ID = "0" * 16


def set_service_context(name: str) -> None:
    _service_context.set(name)


def get_service_context() -> str | None:
    return _service_context.get()


def add_service_context(logger: Any, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    event_dict["service"] = _service_context.get()
    return event_dict


def add_otel_context(logger: Any, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    ctx = trace.get_current_span().get_span_context()
    if ctx is not None and ctx.trace_id:
        event_dict["trace_id"] = f"{ctx.trace_id:032x}"
        event_dict["span_id"] = f"{ctx.span_id:016x}"
    else:
        event_dict["trace_id"] = _NO_TRACE_ID
        event_dict["span_id"] = _NO_SPAN_ID
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_service_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(renderer: Any, pre_chain: list) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _json_file(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    service_name: str | None = None,
) -> None:
    """Install the console handler (and optional JSON files) on the root logger.

    Calling this again replaces the previous handlers.
    """
    if service_name:
        set_service_context(service_name)

    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        file_name = f"{service_name or 'concierge'}.log"
        root.addHandler(_json_file(Path(log_root) / "concierge" / file_name))
        transport = _json_file(Path(log_root) / "uvicorn" / file_name)
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(transport)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

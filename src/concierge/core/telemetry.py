"""OpenTelemetry tracing for the concierge daemon.

Tracing is off unless ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set. Every MCP tool
call runs inside a ``concierge.tool.<name>`` span (see :class:`tool_span`).
"""

from __future__ import annotations

import functools
import logging
import os
from contextlib import AbstractContextManager

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "concierge"

_installed_endpoint: str | None = None


def init_telemetry(service_name: str) -> trace.Tracer:
    """Install an OTLP/gRPC exporting provider once per process, if configured.

    Without an endpoint the API's default (no-op) provider stays in place.
    """
    global _installed_endpoint

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.info("Tracing disabled (OTEL_EXPORTER_OTLP_ENDPOINT unset)")
    elif _installed_endpoint is None:
        # The exporter pulls in grpc; only import it when tracing is on.
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _installed_endpoint = endpoint
        logger.info("Exporting traces for %s to %s", service_name, endpoint)
    return trace.get_tracer(service_name)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    return trace.get_tracer(name)


class tool_span:
    """Span around one MCP tool invocation, usable with ``with`` or as a decorator.

    ::

        with tool_span("appointments_cancel", service_name="clinic"):
            ...

        @tool_span("status", service_name="clinic")
        async def status(): ...

    The span is current for the duration of the call and tags log records
    with *service_name*. A raised exception is recorded on the span, which
    ends with ERROR status, and then propagates.
    """

    def __init__(self, tool_name: str, *, service_name: str) -> None:
        self.tool_name = tool_name
        self.service_name = service_name
        self._cm: AbstractContextManager[trace.Span] | None = None

    def __enter__(self) -> trace.Span:
        from concierge.core.logging import set_service_context

        self._cm = get_tracer().start_as_current_span(
            f"concierge.tool.{self.tool_name}",
            attributes={
                "concierge.service": self.service_name,
                "concierge.tool": self.tool_name,
            },
        )
        span = self._cm.__enter__()
        set_service_context(self.service_name)
        return span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        cm, self._cm = self._cm, None
        if cm is not None:
            cm.__exit__(exc_type, exc_val, exc_tb)

    def __call__(self, func):  # noqa: ANN001, ANN204
        tool_name, service_name = self.tool_name, self.service_name

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            # A fresh instance per call keeps concurrent invocations apart.
            with tool_span(tool_name, service_name=service_name):
                return await func(*args, **kwargs)

        return _wrapper

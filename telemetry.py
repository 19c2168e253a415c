#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry and Azure Application Insights.

This module configures tracing for aiohttp page fetches, SQLite access and
the collector/scheduler spans, exporting to Azure Monitor when an Application
Insights connection string is provided via environment variable.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - OTEL_SERVICE_NAME (default: new-works-watcher)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true to fully disable

The module is safe to import multiple times; initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
from typing import Optional, Callable
import inspect
import functools

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor
from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def _connection_string() -> Optional[str]:
    conn = os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )
    if conn:
        return conn
    ikey = os.environ.get("APPLICATIONINSIGHTS_INSTRUMENTATIONKEY")
    return f"InstrumentationKey={ikey}" if ikey else None


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true":
        return
    if _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "new-works-watcher")
        env = os.environ.get("OTEL_ENVIRONMENT")
        attrs = {"service.name": svc}
        if env:
            attrs["deployment.environment"] = env
        resource = Resource.create(attrs)

        # Reuse a provider installed by external auto-instrumentation
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=resource)

        conn = _connection_string()
        if conn:
            try:
                exporter = AzureMonitorTraceExporter.from_connection_string(conn)
                provider.add_span_processor(BatchSpanProcessor(exporter))
                _logger.info("Telemetry initialized: Azure Monitor trace exporter enabled (service=%s)", svc)
            except ValueError as e:
                _logger.warning("Telemetry init: invalid Azure connection string, spans will not be exported: %s", e)
        else:
            _logger.info("Telemetry initialized without exporter (service=%s); no spans will be exported", svc)

        if not isinstance(existing, TracerProvider):
            trace.set_tracer_provider(provider)
        _provider = provider

        AioHttpClientInstrumentor().instrument()
        # Inject trace/span ids into log records as otelTraceID / otelSpanID without changing format
        LoggingInstrumentor().instrument()
        SQLite3Instrumentor().instrument()

        _initialized = True

        def _shutdown():
            if _provider:
                _provider.shutdown()

        atexit.register(_shutdown)


def get_tracer(name: str = "new-works-watcher"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to the first dotted part of span_name)
        static_attrs: Dict of attributes to set on the span
        attr_from_args: Callable taking (*args, **kwargs) and returning a dict
                        of attributes to set on the span

    Works with sync and async functions.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tname = tracer_name or name.split(".")[0] or "new-works-watcher"
        tracer = get_tracer(tname)

        def _set_attrs(span, args, kwargs):
            if not span or not span.is_recording():
                return
            if static_attrs:
                for k, v in static_attrs.items():
                    span.set_attribute(k, v)
            if callable(attr_from_args):
                try:
                    dyn = attr_from_args(*args, **kwargs) or {}
                except (TypeError, ValueError, AttributeError) as e:
                    _logger.debug("Could not compute span attributes for %s: %s", name, e)
                    return
                for k, v in dyn.items():
                    span.set_attribute(k, v)

        def _record_error(span, exc):
            if span:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR))

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _aw(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _record_error(span, e)
                        raise

            return _aw

        @functools.wraps(func)
        def _w(*args, **kwargs):
            with tracer.start_as_current_span(name) as span:
                _set_attrs(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _record_error(span, e)
                    raise

        return _w

    return _decorator

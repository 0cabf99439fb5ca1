#!/usr/bin/env python3
"""
OpenTelemetry tracing for the aggregator.

Spans cover proxy fetches, normalization, refreshes, backend calls and
storage operations; aiohttp, logging and sqlite3 are auto-instrumented.
Nothing is exported unless OTEL_CONSOLE_EXPORT=true, which prints finished
spans to stdout.

Environment:
  OTEL_SERVICE_NAME     service.name resource attribute (default greek-tax-news)
  OTEL_ENVIRONMENT      deployment.environment resource attribute
  OTEL_CONSOLE_EXPORT   "true" to print spans
  DISABLE_TELEMETRY     "true" to skip initialization entirely
"""

from __future__ import annotations

import atexit
import functools
import inspect
import logging
import os
import threading
from typing import Any, Callable, Dict, Optional

from opentelemetry import trace
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Status, StatusCode

DEFAULT_SERVICE_NAME = "greek-tax-news"

_logger = logging.getLogger("GreekTaxNews.telemetry")
_lock = threading.Lock()
_provider: Optional[TracerProvider] = None


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").strip().lower() == "true"


def _resource_attributes(service_name: Optional[str]) -> Dict[str, str]:
    attributes = {"service.name": service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)}
    environment = os.environ.get("OTEL_ENVIRONMENT")
    if environment:
        attributes["deployment.environment"] = environment
    return attributes


def _install_provider(attributes: Dict[str, str]) -> TracerProvider:
    # An auto-instrumentation agent may already have installed an SDK provider
    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        return current
    provider = TracerProvider(resource=Resource.create(attributes))
    trace.set_tracer_provider(provider)
    return provider


def _instrument_libraries() -> None:
    for instrumentor in (AioHttpClientInstrumentor(), LoggingInstrumentor(), SQLite3Instrumentor()):
        try:
            instrumentor.instrument()
        except Exception as e:
            _logger.debug("Telemetry: %s not instrumented: %s", type(instrumentor).__name__, e)


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Set up tracing once per process. No-op when DISABLE_TELEMETRY=true."""
    global _provider
    if _env_flag("DISABLE_TELEMETRY") or _provider is not None:
        return
    with _lock:
        if _provider is not None:
            return
        attributes = _resource_attributes(service_name)
        provider = _install_provider(attributes)

        console_export = _env_flag("OTEL_CONSOLE_EXPORT")
        if console_export:
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

        _instrument_libraries()
        _provider = provider
        # shutdown() flushes any pending console spans
        atexit.register(provider.shutdown)
        _logger.info(
            "Telemetry initialized for %s (console export: %s)",
            attributes["service.name"],
            console_export,
        )


def get_tracer(name: str = DEFAULT_SERVICE_NAME):
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: Dict[str, Any] | None = None,
    attr_from_args: Optional[Callable[..., Dict[str, Any]]] = None,
):
    """Run the decorated function (sync or async) inside a span.

    Args:
        span_name: Span name, ``module.function`` by default
        tracer_name: Tracer name, the first dotted part of the span name by default
        static_attrs: Attributes set on every span
        attr_from_args: Called with the function's arguments; returns extra
                        attributes. ``None`` values are dropped.

    Exceptions are recorded on the span and re-raised unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or DEFAULT_SERVICE_NAME)

        def _attributes(args, kwargs) -> Dict[str, Any]:
            attributes = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    extra = attr_from_args(*args, **kwargs) or {}
                except Exception as e:
                    _logger.debug("Telemetry: attributes for %s unavailable: %s", name, e)
                    extra = {}
                attributes.update({key: value for key, value in extra.items() if value is not None})
            return attributes

        def _start(args, kwargs):
            return tracer.start_as_current_span(
                name,
                attributes=_attributes(args, kwargs),
                record_exception=False,
                set_status_on_exception=False,
            )

        def _fail(span, error: Exception) -> None:
            span.record_exception(error)
            span.set_status(Status(StatusCode.ERROR, str(error)))

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with _start(args, kwargs) as span:
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _fail(span, e)
                        raise

            return _async_wrapper

        @functools.wraps(func)
        def _wrapper(*args, **kwargs):
            with _start(args, kwargs) as span:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _fail(span, e)
                    raise

        return _wrapper

    return _decorator

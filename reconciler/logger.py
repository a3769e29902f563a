"""Structured logging for the reconciliation engine.

structlog renders JSON in production and a console view when ``debug`` is on;
records can also be shipped over OTLP when the ``otel`` extra is installed.
The helpers below time batch operations and collaborator calls.
"""

import logging
import sys
import time
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any

import structlog
from structlog.stdlib import BoundLogger
from structlog.types import Processor

from reconciler.config import parse_key_value_pairs, settings

_SHARED_PROCESSORS: list[Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.format_exc_info,
    structlog.processors.TimeStamper(fmt="iso"),
]


def _select_renderer() -> Processor:
    if settings.debug:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def _build_otlp_logs_endpoint(endpoint: str) -> str:
    base = endpoint.rstrip("/")
    return base if base.endswith("/v1/logs") else f"{base}/v1/logs"


def _configure_otel_logging() -> None:
    """Attach an OTLP log handler to the root logger when an endpoint is configured."""
    endpoint = settings.otel_exporter_otlp_endpoint
    if not endpoint:
        return

    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
        from opentelemetry.sdk.resources import Resource
    except ImportError:
        logging.getLogger(__name__).warning(
            "OTEL log exporter not available (install the 'otel' extra)",
            exc_info=True,
        )
        return

    attributes = {"service.name": settings.otel_service_name}
    attributes.update(parse_key_value_pairs(settings.otel_resource_attributes))

    provider = LoggerProvider(resource=Resource.create(attributes))
    provider.add_log_record_processor(
        BatchLogRecordProcessor(OTLPLogExporter(endpoint=_build_otlp_logs_endpoint(endpoint)))
    )
    set_logger_provider(provider)
    logging.getLogger().addHandler(LoggingHandler(level=logging.INFO, logger_provider=provider))


def configure_logging() -> None:
    """Route structlog through stdlib logging to stdout, plus OTLP if enabled."""
    structlog.configure(
        processors=[*_SHARED_PROCESSORS, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=_select_renderer(), foreign_pre_chain=_SHARED_PROCESSORS)
    )
    logging.basicConfig(handlers=[handler], level=logging.DEBUG if settings.debug else logging.INFO)

    _configure_otel_logging()


def get_logger(name: str | None = None) -> BoundLogger:
    return structlog.get_logger(name)


# =============================================================================
# Timing
# =============================================================================


def _emit_timing(
    log: BoundLogger,
    level: str,
    operation: str,
    started: float,
    context: dict[str, Any],
    collected: dict[str, Any],
) -> None:
    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    collected["duration_ms"] = duration_ms
    extra = {k: v for k, v in collected.items() if k != "duration_ms"}
    getattr(log, level, log.info)(
        f"{operation} completed",
        operation=operation,
        duration_ms=duration_ms,
        **context,
        **extra,
    )


@contextmanager
def log_timing(
    operation: str,
    logger: BoundLogger | None = None,
    level: str = "info",
    **context: Any,
) -> Iterator[dict[str, Any]]:
    """Log how long the block took, with `context` and whatever it adds to the yielded dict.

    Usage:
        with log_timing("score_pairs", logger=logger, debits=len(left)) as ctx:
            ctx["pairs_generated"] = len(candidates)
    """
    collected: dict[str, Any] = {}
    started = time.perf_counter()
    try:
        yield collected
    finally:
        _emit_timing(logger or get_logger(__name__), level, operation, started, context, collected)


@asynccontextmanager
async def async_log_timing(
    operation: str,
    logger: BoundLogger | None = None,
    level: str = "info",
    **context: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Async form of log_timing, for blocks that await."""
    collected: dict[str, Any] = {}
    started = time.perf_counter()
    try:
        yield collected
    finally:
        _emit_timing(logger or get_logger(__name__), level, operation, started, context, collected)


@asynccontextmanager
async def log_collaborator_call(service: str, logger: BoundLogger | None = None) -> AsyncIterator[None]:
    """Time one call into an external collaborator; failures are logged and re-raised."""
    log = logger or get_logger(__name__)
    started = time.perf_counter()
    try:
        yield
    except Exception as exc:
        log.warning(
            f"Call to {service} failed",
            service=service,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            success=False,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise
    log.debug(
        f"Call to {service}",
        service=service,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
        success=True,
    )


# =============================================================================
# Exceptions
# =============================================================================


def log_exception(
    logger: BoundLogger,
    exc: BaseException,
    context: str,
    *,
    level: str = "error",
    **extra: Any,
) -> None:
    """Log `exc` under the message `context`, with its type and traceback.

    Usage:
        except ReconcilerError as exc:
            log_exception(logger, exc, "Row commit failed", level="warning", staging_id=row.id)
    """
    getattr(logger, level, logger.error)(
        context,
        exc_info=exc,
        error=str(exc),
        error_type=type(exc).__name__,
        error_module=type(exc).__module__,
        **extra,
    )

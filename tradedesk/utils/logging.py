"""structlog configuration for the reconciliation engine.

Engine modules log through a module-level ``structlog.get_logger()`` with
an event name and key/value fields (symbol, position_id, call). Cycle and
close ids ride along via contextvars, see ``log_context``.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator

import structlog


def configure_logging(json_output: bool = True, level: str = "INFO") -> None:
    """Install the processor chain used by every tradedesk logger.

    Call once at process start; ``build_runtime`` does it from settings.

    Args:
        json_output: One JSON object per line (log shippers). False renders
            coloured key=value lines for a terminal.
        level: Lines below this level are dropped (DEBUG shows skipped
            in-flight symbols and per-row store writes).
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, correlation_id: str | None = None) -> structlog.BoundLogger:
    """Logger tagged with the wiring component (``factory``, ``service``...).

    ``correlation_id`` is bound too when given, e.g. an operator request id
    that should appear on every line of a retried close.
    """
    logger = structlog.get_logger().bind(component=component)
    if correlation_id:
        logger = logger.bind(correlation_id=correlation_id)
    return logger


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """Bind ``values`` to every log line emitted inside the block.

    Used to tag all lines of one reconciliation cycle or one close with
    the same id. Bindings are task-local (contextvars).
    """
    structlog.contextvars.bind_contextvars(**values)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars(*values)

"""structlog configuration and per-stage logging context.

Every CLI run gets a session id; inside a run the open project and the
active pipeline stage are bound as context variables so each entry can be
traced back to the graph node it concerns.
"""

from __future__ import annotations

import logging
import sys
import time
import uuid
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Session and project context
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    """Generate a unique session identifier.

    Returns:
        A UUID4 string for the current CLI session.
    """
    return str(uuid.uuid4())


@contextmanager
def project_logging_context(project_id: str) -> Iterator[None]:
    """Bind the open project's id to every log entry inside the block."""
    structlog.contextvars.bind_contextvars(project_id=project_id)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars("project_id")


# ---------------------------------------------------------------------------
# structlog configuration
# ---------------------------------------------------------------------------


_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def configure_logging(
    level: str = "INFO",
    fmt: str = "console",
    log_file: str | Path | None = None,
    session_id: str | None = None,
) -> None:
    """Configure structlog for the application.

    Sets up structlog with shared processors and a format-specific
    renderer. Configures the stdlib logging root to respect the given
    level and optionally adds a file handler.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: Output format: ``"console"`` for human-readable or
            ``"json"`` for machine-parseable.
        log_file: Optional file path for log output (in addition to stderr).
        session_id: Optional session ID to bind to all log entries.

    Raises:
        ValueError: If ``level`` is not a recognized log level.
    """
    level_upper = level.upper()
    if level_upper not in _VALID_LEVELS:
        msg = f"Invalid log level: {level!r}. Must be one of {sorted(_VALID_LEVELS)}"
        raise ValueError(msg)

    numeric_level = getattr(logging, level_upper)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: structlog.types.Processor
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Re-configuration must not stack handlers
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(numeric_level)
    root_logger.addHandler(stderr_handler)

    if log_file:
        file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
        file_handler.setLevel(numeric_level)
        root_logger.addHandler(file_handler)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    for handler in root_logger.handlers:
        handler.setFormatter(formatter)

    if session_id:
        structlog.contextvars.bind_contextvars(session_id=session_id)


# ---------------------------------------------------------------------------
# Stage logging context manager
# ---------------------------------------------------------------------------


@contextmanager
def stage_logging_context(
    stage: str,
    node_id: str = "",
    **extra: Any,
) -> Iterator[structlog.stdlib.BoundLogger]:
    """Bind pipeline-stage metadata to structlog for the duration of a stage.

    ``stage_start`` and ``stage_end`` are logged around the block; the end
    entry carries the elapsed ``duration_ms`` and whether the stage ``ok``.

    Args:
        stage: Pipeline stage name (``optimize``, ``search``, ``rank``, ...).
        node_id: Graph node whose lifecycle the stage drives.
        **extra: Additional key-value pairs to bind.

    Yields:
        A bound structlog logger with stage context.

    Example::

        with stage_logging_context("search", node_id=search_id) as log:
            log.info("search_issued", query=query)
    """
    structlog.contextvars.bind_contextvars(stage=stage, node_id=node_id, **extra)
    log: structlog.stdlib.BoundLogger = structlog.get_logger(stage)
    log.info("stage_start")

    started = time.perf_counter()
    ok = False
    try:
        yield log
        ok = True
    except Exception as exc:
        log.warning("stage_error", error=str(exc), error_type=type(exc).__name__)
        raise
    finally:
        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        log.info("stage_end", ok=ok, duration_ms=duration_ms)
        structlog.contextvars.unbind_contextvars("stage", "node_id", *extra.keys())

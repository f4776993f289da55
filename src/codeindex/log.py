"""Structured logging for the code index.

structlog events are rendered through stdlib logging handlers so that library
loggers (fastembed, onnxruntime) share the same output. User-facing messages
are printed by the CLI with rich; structured events default to WARNING so the
terminal stays quiet unless asked.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog

_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

_HANDLER_MARK = "_codeindex_handler"


def configure_logging(level: str = "WARNING", log_file: str | Path | None = None) -> None:
    """Configure structlog + stdlib logging. Safe to call more than once.

    Args:
        level: Minimum level for emitted events.
        log_file: Optional file that receives JSON lines in addition to stderr.
    """
    numeric = _LEVEL_MAP.get(level.upper(), logging.WARNING)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    root = logging.getLogger()
    for handler in [h for h in root.handlers if getattr(h, _HANDLER_MARK, False)]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(numeric)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
            foreign_pre_chain=shared_processors,
        )
    )
    console.setLevel(numeric)
    setattr(console, _HANDLER_MARK, True)
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
                foreign_pre_chain=shared_processors,
            )
        )
        file_handler.setLevel(numeric)
        setattr(file_handler, _HANDLER_MARK, True)
        root.addHandler(file_handler)

    # onnxruntime/fastembed are chatty at INFO
    logging.getLogger("fastembed").setLevel(max(numeric, logging.WARNING))


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger=name)
    return logger  # type: ignore[no-any-return]

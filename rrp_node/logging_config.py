"""
Structured logging for the coordinator.

Every record goes through structlog. LOG_FORMAT picks the output: "json"
writes one JSON object per line for log shippers, "console" writes colored
key=value lines for a terminal. Pipelines bind coordinator_id, chain_id and
provider on each record, so a cycle can be followed across chains.
"""

import logging
import sys
from typing import List, Optional

import structlog

from .config import settings

NOISY_LOGGERS = ("httpcore", "httpx")


def _shared_processors(use_console: bool) -> List[structlog.types.Processor]:
    processors: List[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if not use_console:
        # ConsoleRenderer prints tracebacks itself
        processors.append(structlog.processors.format_exc_info)
    return processors


def _renderer(use_console: bool) -> structlog.types.Processor:
    if use_console:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Configure structlog and route stdlib logging through it.

    The output format follows LOG_FORMAT rather than the level, so a
    production node can log at DEBUG and still emit JSON.

    Args:
        log_level: Override log level (default: settings.log_level).
            Unknown names fall back to INFO.
        log_format: "json" or "console" (default: settings.log_format)
    """
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    use_console = (log_format or settings.log_format) == "console"
    shared = _shared_processors(use_console)

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(use_console),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

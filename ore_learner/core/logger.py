"""
Structured logging for ORE Learner
structlog over stdlib logging: JSON lines for services, console for local runs.
Round completion binds `round_id` so every event logged while a round is
resolved and learned from carries it.
"""

import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import structlog
from structlog.typing import Processor

from ore_learner.core.config import LogConfig


# Chatty at INFO and not useful next to the learner's own events
QUIET_LOGGERS = ("aiohttp", "aiosqlite", "asyncio")

_HANDLER_NAME = "ore_learner"


def _build_processors(log_format: str, to_file: bool) -> List[Processor]:
    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=not to_file and sys.stdout.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )
    return processors


def _install_handlers(level: int, output_file: Optional[str]) -> None:
    """Replace handlers from an earlier setup_logging call; leave foreign ones alone"""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)
            handler.close()

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if output_file:
        Path(output_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(output_file))

    for handler in handlers:
        handler.set_name(_HANDLER_NAME)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def setup_logging(log_config: Optional[LogConfig] = None) -> None:
    """
    Configure stdlib handlers and structlog from the `logging` section

    Safe to call more than once: the previous handlers are swapped out.
    """
    log_config = log_config or LogConfig()
    level = getattr(logging, log_config.level.upper(), logging.INFO)

    _install_handlers(level, log_config.output_file)
    structlog.configure(
        processors=_build_processors(log_config.format, to_file=bool(log_config.output_file)),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def round_context(round_id: int) -> Iterator[None]:
    """Bind round_id to every event logged inside the block"""
    with structlog.contextvars.bound_contextvars(round_id=round_id):
        yield

import logging
import os

import structlog
from dotenv import load_dotenv

load_dotenv()

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def setup_logging(level: int | None = logging.INFO, json_logs: bool = False) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: The logging level to use. Defaults to INFO.
        json_logs: Render one JSON object per line instead of the coloured
            console output. Training worker processes inherit the parent's
            choice through :func:`json_logs_enabled`.
    """
    logging.basicConfig(level=level)
    logging.getLogger().setLevel(level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(
            colors=True,
            exception_formatter=structlog.dev.plain_traceback,
            pad_event=50,
        )
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def json_logs_enabled() -> bool:
    """Whether the current structlog configuration renders JSON"""
    processors = structlog.get_config()["processors"]
    return bool(processors) and isinstance(processors[-1], structlog.processors.JSONRenderer)


def level_from_env(default: int = logging.DEBUG) -> int:
    """Resolve LOG_LEVEL from the environment, falling back to ``default``"""
    return LOG_LEVELS.get(os.getenv("LOG_LEVEL", "").upper(), default)


setup_logging(level=level_from_env(), json_logs=os.getenv("LOG_FORMAT") == "json")

log = structlog.get_logger("flowstate")

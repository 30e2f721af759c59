"""Structured logging setup for applications embedding the session core.

Library modules only obtain loggers (``structlog.get_logger(__name__)``) and
log dotted event names such as ``turn_state.transition`` or
``help.generated`` with keyword context. Rendering is left to the host
application, which calls configure_structlog() once at startup before it
creates any ConversationSession or TimedRecordingController:

    from src.practice.core.logging import configure_structlog

    configure_structlog()

Production renders one JSON object per line; other environments use the
structlog console renderer.
"""

from __future__ import annotations

import logging

import structlog

from src.practice.config import Environment, Settings, get_settings


def _renderer(environment: Environment) -> structlog.types.Processor:
    if environment == Environment.production:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def configure_structlog(settings: Settings | None = None) -> None:
    """Route structlog through stdlib logging at LOG_LEVEL.

    Args:
        settings: Settings to read ENVIRONMENT and LOG_LEVEL from.
            Defaults to get_settings().
    """
    settings = settings or get_settings()
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(settings.ENVIRONMENT),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

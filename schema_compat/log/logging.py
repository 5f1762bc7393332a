"""
Loguru logger setup for the schema compatibility service.

Every module imports ``logger`` from here; structured context is passed as
keyword arguments (always including ``event_type``) and ends up in the
record's ``extra`` dict, which the JSON sink serializes.
"""

import logging
import logging.handlers
import sys

from loguru import logger

from schema_compat.core.config import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[app_name]}</cyan> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def configure_logging(config: dict | None = None) -> None:
    """
    (Re)configure loguru sinks from the given logging configuration.

    Args:
        config: Dictionary shaped like ``settings.logging_config``.
    """
    config = config or settings.logging_config

    logger.remove()
    logger.configure(extra={"app_name": config["app_name"]})

    if config["json_logs"]:
        logger.add(sys.stderr, level=config["log_level"], serialize=True, enqueue=False)
    else:
        logger.add(sys.stderr, level=config["log_level"], format=CONSOLE_FORMAT, colorize=True)

    if config.get("enable_logstash") and config.get("syslog_host"):
        handler = logging.handlers.SysLogHandler(
            address=(config["syslog_host"], config["syslog_port"])
        )
        logger.add(handler, level=config["log_level"], serialize=True)


configure_logging()

__all__ = ["logger", "configure_logging"]

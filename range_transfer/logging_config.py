"""
Opt-in log output for the transfer engine.

Every module logs through a child of the `range_transfer` logger and emits
nothing until the host application configures logging. `setup_logging`
attaches a stdout handler and, when enabled, a Loki handler to that logger.
Each record carries the id bound by the client's `transfer_scope`, so all
lines of one upload or download can be grouped.
"""

import logging
import os
import sys
from typing import Optional
from typing import Protocol

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler

from range_transfer.config import get_config
from range_transfer.services.transfer_id_service import transfer_id_context


PACKAGE_LOGGER = "range_transfer"


class LoggingConfig(Protocol):
    log_level: str
    loki_enabled: bool
    loki_url: str
    environment: str


class TransferIDFilter(logging.Filter):
    """Copies the current transfer id onto records that don't already carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "transfer_id"):
            record.transfer_id = transfer_id_context.get()
        return True


def _build_handlers(config: LoggingConfig, service_name: str) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.loki_enabled and config.loki_url:
        handlers.append(
            LokiLoggerHandler(
                url=config.loki_url,
                labels={
                    "service": service_name,
                    "component": PACKAGE_LOGGER,
                    "environment": config.environment,
                    "host": os.getenv("HOSTNAME", "unknown"),
                },
                timeout=10,
                compressed=True,
            )
        )
    return handlers


def setup_logging(
    config: Optional[LoggingConfig] = None,
    service_name: str = "range-transfer",
    include_transfer_id: bool = True,
) -> logging.Logger:
    """
    Attach handlers to the `range_transfer` logger.

    Calling it again replaces the handlers a previous call installed, so the
    level or Loki settings can be changed at runtime. Records do not propagate
    to the root logger once handlers are attached here.

    Args:
        config: Logging settings. Loaded from the environment if not provided.
        service_name: Loki `service` label of the application using the engine.
        include_transfer_id: Prefix each line with the transfer id.

    Returns:
        The configured `range_transfer` logger.
    """
    if config is None:
        config = get_config()

    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in [h for h in logger.handlers if getattr(h, "_range_transfer_handler", False)]:
        logger.removeHandler(handler)
        handler.close()

    if include_transfer_id:
        formatter = logging.Formatter("%(asctime)s - [%(transfer_id)s] - %(name)s - %(levelname)s - %(message)s")
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    for handler in _build_handlers(config, service_name):
        handler.setFormatter(formatter)
        if include_transfer_id:
            handler.addFilter(TransferIDFilter())
        handler._range_transfer_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)

    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    logger.propagate = False
    return logger

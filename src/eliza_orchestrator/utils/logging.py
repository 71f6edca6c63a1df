"""Logging utilities for the Eliza orchestrator."""

import logging
import re
import sys
from typing import Iterable, List

from pythonjsonlogger import jsonlogger

SERVICE_NAME = "eliza-orchestrator"

_SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN")
_URL_CREDENTIALS = re.compile(r"(://[^:/@]+:)[^@]+@")

# Client libraries that log every request or frame at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "socketio", "engineio")


class OrchestratorJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding level, logger and service fields to every record."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record.setdefault("service", SERVICE_NAME)


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Route orchestrator logs to stderr as JSON or plain text.

    Args:
        log_level: Root level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: ``json`` or ``text``
    """
    level = getattr(logging, log_level.upper())
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    # stdout is reserved for the stdio command transport
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if log_format.lower() == "json":
        handler.setFormatter(OrchestratorJsonFormatter("%(asctime)s %(message)s"))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s [%(name)s] %(message)s")
        )
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def redact_env(environment: Iterable[str]) -> List[str]:
    """
    Redact secrets from KEY=VALUE pairs before they are logged.

    Args:
        environment: Environment entries in KEY=VALUE form

    Returns:
        Entries with secret values replaced and URL credentials masked
    """
    redacted = []
    for entry in environment:
        key, sep, value = entry.partition("=")
        if sep and any(marker in key.upper() for marker in _SECRET_MARKERS):
            redacted.append(f"{key}{sep}***REDACTED***")
        else:
            masked = _URL_CREDENTIALS.sub(r"\1***@", value)
            redacted.append(f"{key}{sep}{masked}")
    return redacted

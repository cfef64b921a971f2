"""Logging setup shared by the transfer worker and the coordinator.

All output goes to stderr: the host build tool owns stdout.
"""

import logging
import os
import re
import sys
from typing import Optional, Sequence

LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_VALUE = r'["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)'


class SensitiveDataFilter(logging.Filter):
    """Mask storage credentials in log records (keys, session tokens, auth headers)."""

    PATTERNS = [
        re.compile(r'(secret[_-]?access[_-]?key' + _VALUE, re.IGNORECASE),
        re.compile(r'(access[_-]?key[_-]?id' + _VALUE, re.IGNORECASE),
        re.compile(r'(session[_-]?token' + _VALUE, re.IGNORECASE),
        re.compile(r'(authorization' + _VALUE, re.IGNORECASE),
        re.compile(r'(password' + _VALUE, re.IGNORECASE),
        re.compile(r'(secret' + _VALUE, re.IGNORECASE),
    ]
    MASK = r'\1***MASKED***'

    @classmethod
    def mask(cls, text: str) -> str:
        for pattern in cls.PATTERNS:
            text = pattern.sub(cls.MASK, text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.mask(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask_value(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._mask_value(arg) for arg in record.args)

        return True

    def _mask_value(self, value):
        return self.mask(value) if isinstance(value, str) else value


def _formatter(correlation_id: Optional[str]) -> logging.Formatter:
    tag = f' - [{correlation_id}]' if correlation_id else ''
    return logging.Formatter(
        f'%(asctime)s - %(name)s - %(levelname)s{tag} - %(message)s',
        datefmt=LOG_DATE_FORMAT
    )


def setup_logging(
    component_name: str,
    log_level: Optional[str] = None,
    correlation_id: Optional[str] = None
) -> logging.Logger:
    """
    Set up logging configuration for a component.

    A logger that already has handlers only gets its level updated.

    Args:
        component_name: Top-level package whose loggers to configure ('worker', 'coordinator', 'common')
        log_level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to LOG_LEVEL env var or INFO
        correlation_id: Optional tag added to every line, e.g. the worker's socket name

    Returns:
        Configured logger instance
    """
    if log_level is None:
        log_level = os.getenv('LOG_LEVEL', 'INFO')

    level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(component_name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(_formatter(correlation_id))
    handler.addFilter(SensitiveDataFilter())

    logger.addHandler(handler)
    logger.propagate = False

    return logger


def setup_component_logging(
    components: Sequence[str],
    log_level: Optional[str] = None,
    correlation_id: Optional[str] = None
) -> logging.Logger:
    """
    Configure several top-level packages at once.

    Returns:
        Logger of the first component
    """
    loggers = [setup_logging(name, log_level, correlation_id) for name in components]
    return loggers[0]


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name (typically __name__).

    Loggers under 'worker', 'coordinator' and 'common' inherit the handlers
    installed by setup_logging().
    """
    return logging.getLogger(name)

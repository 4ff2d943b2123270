#!/usr/bin/env python3
"""Shared logging helpers for the position worker."""

from __future__ import annotations

import logging
from typing import Any, MutableMapping, Optional, Tuple

from env_utils import env_str

_DEFAULT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"
_OWN_LOGGERS = ("position_worker", "worker_", "notifier", "executor", "signers", "config_env", "cli")


def _env_level(default: int) -> int:
    raw = env_str("POSWORKER_LOG_LEVEL")
    if not raw:
        return default
    val = str(raw).strip().upper()
    if val.isdigit():
        return int(val)
    return getattr(logging, val, default)


def _formatter() -> logging.Formatter:
    return logging.Formatter(_DEFAULT_FORMAT, datefmt=_DEFAULT_DATEFMT)


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Get or create a logger with standard formatting."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_formatter())
        logger.addHandler(handler)
    logger.setLevel(_env_level(logging.INFO) if level is None else level)
    return logger


def setup_cli_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Route every worker logger through the root logger (console + optional file).

    Used by the foreground CLI so that adapter/signer libraries log in the
    same format as the worker itself.
    """
    root = logging.getLogger()
    root.handlers = []
    root.setLevel(_env_level(logging.DEBUG if verbose else logging.INFO))

    console = logging.StreamHandler()
    console.setFormatter(_formatter())
    root.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_formatter())
        root.addHandler(file_handler)

    # Module loggers created via get_logger() carry their own handler; drop it
    # so records are not printed twice.
    for name in list(logging.root.manager.loggerDict):
        logger = logging.getLogger(name)
        if logger.handlers and name.startswith(_OWN_LOGGERS):
            logger.handlers = []
            logger.propagate = True


class WorkerLogAdapter(logging.LoggerAdapter):
    """Prefix every record with the worker id it belongs to."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        worker_id = (self.extra or {}).get("worker_id", "?")
        return f"[{worker_id}] {msg}", kwargs


def worker_logger(base: logging.Logger, worker_id: str) -> WorkerLogAdapter:
    return WorkerLogAdapter(base, {"worker_id": worker_id})

"""Logging configuration for the Criticality CLI."""

from __future__ import annotations

import logging
import os


def setup_logging(
    logger_name: str,
    log_file: str | None = None,
    verbose: bool = False,
    child_loggers: list[str] | None = None,
) -> logging.Logger:
    """
    Configure dual-handler logging (console + file).

    Args:
        logger_name: Name for the logger (e.g., "criticality")
        log_file: Path to log file (None for no file logging)
        verbose: Enable DEBUG level on console (default INFO)
        child_loggers: Additional loggers to configure with same handlers

    Returns:
        Configured logger instance
    """
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(
        logging.Formatter("%(levelname)-8s | %(name)s | %(message)s")
    )

    file_handler = None
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    names = [logger_name, *(child_loggers or [])]
    for name in names:
        configured = logging.getLogger(name)
        configured.setLevel(logging.DEBUG)
        # Re-running setup must not stack duplicate handlers
        for handler in list(configured.handlers):
            configured.removeHandler(handler)
        configured.addHandler(console_handler)
        if file_handler:
            configured.addHandler(file_handler)

    # Suppress noisy 3rd party loggers
    for noisy in ["httpx", "httpcore"]:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logging.getLogger(logger_name)

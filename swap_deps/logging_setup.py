"""Logging configuration for swap-deps.

Diagnostics are emitted through the standard :mod:`logging` tree under the
``swap_deps`` logger and rendered by Rich on stderr, so they never interleave
with the progress output printed on stdout.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "swap_deps"


def configure_logging(verbose: bool = False) -> logging.Logger:
    """Install a Rich handler on the package logger.

    Args:
        verbose: Emit DEBUG diagnostics (git commands, skipped files). When
            ``False`` only warnings and errors are shown.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=True,
        show_time=verbose,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    return logger

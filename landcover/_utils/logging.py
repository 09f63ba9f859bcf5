# ==============================================================================
# Logging Utilities
# ==============================================================================
#
# Rich-based logging shared by every module of the service.
#
# Features:
#   - RichHandler with markup enabled ([cyan]...[/cyan] in messages)
#   - Custom SUCCESS level between INFO and WARNING (logger.success(...))
#   - log_section() banner for major lifecycle steps
#
# Usage:
#   from landcover._utils.logging import get_logger, log_section
#   logger = get_logger(__name__)
#   logger.success("✅ Model loaded")
#
# ==============================================================================

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

_console = Console(stderr=True)
_configured = False


class ServingLogger(logging.Logger):
    """Logger with an extra SUCCESS level."""

    def success(self, msg, *args, **kwargs):
        if self.isEnabledFor(SUCCESS):
            self._log(SUCCESS, msg, args, **kwargs)


logging.setLoggerClass(ServingLogger)


def setup_logging(level: int | str | None = None) -> None:
    """Configure the package logger once.

    The level defaults to the LOG_LEVEL environment variable (INFO if unset).
    """
    global _configured
    if _configured:
        return

    level = level or os.getenv("LOG_LEVEL", "INFO")
    handler = RichHandler(
        console=_console,
        markup=True,
        rich_tracebacks=True,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s - %(message)s"))

    package_logger = logging.getLogger("landcover")
    package_logger.setLevel(level)
    package_logger.addHandler(handler)
    # Ray installs its own handlers on the root logger
    package_logger.propagate = False

    # Ray Serve is chatty at INFO
    logging.getLogger("ray.serve").setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> ServingLogger:
    setup_logging()
    return logging.getLogger(name)  # type: ignore[return-value]


def log_section(title: str, emoji: str = "🔹") -> None:
    """Print a visual separator for a major step."""
    _console.rule(f"{emoji} [bold]{title}[/bold]")

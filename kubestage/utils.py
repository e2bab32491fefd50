"""
Utility functions for kubestage.

Logging setup, console output and secret masking.
"""

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape


# Global console for pretty output
console = Console()

SECRET_KEY_PATTERN = re.compile(r"(_PASSWORD|_TOKEN|_SECRET)$|^K8S_JOIN_COMMAND$")


def setup_logging(
    log_file: Optional[Path],
    log_level: str = "INFO",
    log_format: str = "structured",
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for a kubestage invocation.

    Args:
        log_file: Path to log file, or None to skip file logging
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured logger
    """
    logger = logging.getLogger("kubestage")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        log_file.parent.chmod(0o700)

        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=console, rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        # Phase chatter goes to the file; the console gets warnings and up
        console_handler.setLevel(logging.WARNING)
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for attr in ("phase", "event", "target", "metadata"):
            if hasattr(record, attr):
                log_data[attr] = getattr(record, attr)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def is_secret_key(key: str) -> bool:
    """True for store keys whose values must not be printed by default."""
    return bool(SECRET_KEY_PATTERN.search(key))


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """
    Mask a secret, keeping at most ``visible`` leading characters.

    Short values are masked entirely so nothing useful leaks.
    """
    if not value:
        return ""
    if len(value) <= visible * 2:
        return "*" * 8
    return value[:visible] + "*" * 8


def masked(snapshot: Mapping[str, str], show_secrets: bool = False) -> dict[str, str]:
    """Return a copy of a store snapshot with secret values masked."""
    if show_secrets:
        return dict(snapshot)
    return {
        key: mask_secret(value) if is_secret_key(key) else value
        for key, value in snapshot.items()
    }


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Returns:
        Formatted string (e.g., "1m 23s", "45s")
    """
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"

    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m {secs}s"


def print_banner(title: str) -> None:
    console.rule(f"[bold blue]{escape(title)}[/bold blue]")


def print_success(message: str) -> None:
    console.print(f"[bold green]✓[/bold green] {escape(message)}")


def print_error(message: str) -> None:
    console.print(f"[bold red]✗[/bold red] {escape(message)}")


def print_warning(message: str) -> None:
    console.print(f"[bold yellow]⚠[/bold yellow] {escape(message)}")


def print_info(message: str) -> None:
    console.print(f"[bold cyan]ℹ[/bold cyan] {escape(message)}")


def print_skipped(message: str) -> None:
    console.print(f"[dim]↷[/dim] {escape(message)}")

"""Logging setup for restack."""

from __future__ import annotations

import logging
from pathlib import Path

from rich.logging import RichHandler


def setup_logging(is_verbose: bool = False, log_file_path: Path | str | None = None) -> None:
    """Configure the root logger.

    Console output goes through Rich at WARNING, or DEBUG when verbose. A log
    file, if given, always receives DEBUG and above.
    """
    log_level = logging.DEBUG if is_verbose else logging.WARNING

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_file_path else log_level)

    # Clear existing handlers to avoid duplicate logs if called multiple times
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = RichHandler(
        level=log_level,
        rich_tracebacks=True,
        show_time=is_verbose,
        show_path=is_verbose,
    )
    root_logger.addHandler(console_handler)

    if log_file_path:
        path = Path(log_file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s")
        )
        root_logger.addHandler(file_handler)

    # GitPython logs every command at DEBUG
    logging.getLogger("git").setLevel(logging.INFO)

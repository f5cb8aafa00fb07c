"""Logging setup shared by the CLI and the wrapper script."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def parse_level(level: Union[str, int, None]) -> int:
    """Accept ``"debug"``, ``"INFO"``, ``20`` ... and return a logging level."""
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def setup_logging(level: Union[str, int, None] = "INFO", log_file: Optional[Union[str, Path]] = None) -> None:
    """Configure the root logger with a stream handler and an optional file handler.

    An existing configuration (e.g. when embedded in another tool or under pytest's
    log capture) is left untouched apart from the level of this package's logger.
    """
    lvl = parse_level(level)
    logging.getLogger("onnx_paged_attention_tool").setLevel(lvl)

    # Don't clobber an existing logging configuration.
    root = logging.getLogger()
    if root.handlers:
        return

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(path), mode="a", encoding="utf-8"))
    logging.basicConfig(level=lvl, format=LOG_FORMAT, handlers=handlers)

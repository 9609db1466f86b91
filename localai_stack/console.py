"""Operator-facing output helpers.

Progress goes to stdout, warnings and errors to stderr, each line tagged so it
reads the same in a terminal and in a captured log.
"""

from __future__ import annotations

import os
import sys
from typing import TextIO

_COLORS = {
    "INFO": "\033[0;34m",
    "OK": "\033[0;32m",
    "WARN": "\033[1;33m",
    "ERROR": "\033[0;31m",
    "STEP": "\033[0;35m",
}
_RESET = "\033[0m"


def _use_color(stream: TextIO) -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def _emit(tag: str, message: str, stream: TextIO) -> None:
    if _use_color(stream):
        label = f"{_COLORS[tag]}[{tag}]{_RESET}"
    else:
        label = f"[{tag}]"
    print(f"{label} {message}", file=stream)


def info(message: str) -> None:
    _emit("INFO", message, sys.stdout)


def success(message: str) -> None:
    _emit("OK", message, sys.stdout)


def step(message: str) -> None:
    _emit("STEP", message, sys.stdout)


def warn(message: str) -> None:
    _emit("WARN", message, sys.stderr)


def error(message: str) -> None:
    _emit("ERROR", message, sys.stderr)


def detail(message: str) -> None:
    """Print an indented continuation line (remediation commands, hints)."""
    print(f"   {message}")

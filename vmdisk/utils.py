"""Utility functions for vmdisk."""

from __future__ import annotations

import os
import stat
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

from vmdisk.constants import (
    _LOG_VERBOSE,
    EXTENSION_FORMATS,
    FORMAT_EXTENSIONS,
    GiB,
    MiB,
    TRUTHY,
)
from vmdisk.exceptions import ConfigError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with colour-coded levels.

    Goes to stderr; stdout carries only the launcher arguments.
    """
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "CRITICAL": "\033[1;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", file=sys.stderr, flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in TRUTHY


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def get_available_disk_space(path: Path) -> int:
    """Return free bytes available to unprivileged users on the filesystem holding *path*."""
    try:
        st = os.statvfs(path)
    except OSError:
        return 0
    return st.f_bavail * st.f_frsize


def get_used_disk_space(path: Path) -> int:
    """Bytes actually allocated for *path* on the host (``du`` semantics)."""
    try:
        return path.stat().st_blocks * 512
    except OSError:
        return 0


def format_bytes(size: int) -> str:
    if size >= GiB:
        value = size / GiB
        unit = "GB"
    else:
        value = size / MiB
        unit = "MB"
    text = f"{value:.1f}".rstrip("0").rstrip(".")
    return f"{text} {unit}"


def fmt_to_ext(fmt: str) -> str:
    try:
        return FORMAT_EXTENSIONS[fmt.lower()]
    except KeyError:
        raise ConfigError(f"Unrecognized disk format: {fmt}")


def ext_to_fmt(ext: str) -> str:
    try:
        return EXTENSION_FORMATS[ext.lower().lstrip(".")]
    except KeyError:
        raise ConfigError(f"Unrecognized file extension: .{ext.lstrip('.')}")


def is_block_device(path: Path) -> bool:
    try:
        return stat.S_ISBLK(path.stat().st_mode)
    except OSError:
        return False


def is_nonempty_file(path: Path) -> bool:
    """Equivalent of shell ``[ -f p ] && [ -s p ]``."""
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result

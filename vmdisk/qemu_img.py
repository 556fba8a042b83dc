"""Thin wrappers around the ``qemu-img`` command line tool.

Each call blocks until the tool exits. The exit status is the only signal
consumed; callers decide which error to raise.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from vmdisk.utils import log, run

QEMU_IMG = "qemu-img"


def _invoke(cmd: List[str], **kwargs) -> bool:
    try:
        result = run(cmd, check=False, **kwargs)
    except OSError as exc:
        log("ERROR", f"Could not execute {cmd[0]}: {exc}")
        return False
    if result.returncode != 0:
        log("DEBUG", f"{' '.join(cmd[:2])} exited with status {result.returncode}")
        return False
    return True


def create(
    path: Path,
    fmt: str,
    size: Optional[int] = None,
    options: Optional[str] = None,
    backing: Optional[Path] = None,
    backing_fmt: Optional[str] = None,
) -> bool:
    cmd = [QEMU_IMG, "create", "-f", fmt]
    if backing is not None:
        cmd.extend(["-b", str(backing)])
        if backing_fmt:
            cmd.extend(["-F", backing_fmt])
    if options:
        cmd.extend(["-o", options])
    cmd.extend(["--", str(path)])
    if size is not None:
        cmd.append(str(size))
    return _invoke(cmd)


def resize(path: Path, fmt: str, size: int, preallocation: str = "off") -> bool:
    return _invoke([QEMU_IMG, "resize", "-f", fmt, f"--preallocation={preallocation}", str(path), str(size)])


def convert(
    source: Path,
    source_fmt: str,
    dest: Path,
    dest_fmt: str,
    options: Optional[str] = None,
    compress: bool = False,
    progress: bool = True,
) -> bool:
    cmd = [QEMU_IMG, "convert", "-f", source_fmt]
    if progress:
        cmd.append("-p")
    if compress:
        cmd.append("-c")
    if options:
        cmd.extend(["-o", options])
    cmd.extend(["-O", dest_fmt, "--", str(source), str(dest)])
    return _invoke(cmd)


def commit(overlay: Path) -> bool:
    return _invoke([QEMU_IMG, "commit", str(overlay)])


def info(path: Path, fmt: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Return ``qemu-img info`` output as a dict, or None if it cannot be read."""
    cmd = [QEMU_IMG, "info", "--output=json"]
    if fmt:
        cmd.extend(["-f", fmt])
    cmd.append(str(path))
    try:
        result = run(cmd, check=False, capture_output=True)
    except OSError as exc:
        log("ERROR", f"Could not execute {QEMU_IMG}: {exc}")
        return None
    if result.returncode != 0:
        return None
    try:
        data = json.loads(result.stdout)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def detect_format(path: Path) -> Optional[str]:
    data = info(path)
    if not data:
        return None
    fmt = data.get("format")
    return str(fmt) if fmt else None

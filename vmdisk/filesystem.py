"""Host filesystem capability probing for image directories."""

from __future__ import annotations

from pathlib import Path
from typing import Tuple

from vmdisk.constants import (
    BUFFERED_CACHE_MODE,
    BUFFERED_IO_MODE,
    COW_FILESYSTEMS,
    LAYERED_FS_PREFIXES,
    NO_DIRECT_IO_FILESYSTEMS,
)
from vmdisk.models import FsTraits
from vmdisk.utils import log, run


def detect_filesystem(path: Path) -> str:
    """Return the filesystem type name of *path* as reported by ``stat -f``."""
    try:
        result = run(["stat", "-f", "-c", "%T", str(path)], check=False, capture_output=True)
    except OSError:
        return "unknown"
    if result.returncode != 0:
        return "unknown"
    return result.stdout.strip() or "unknown"


def traits_for(fs_type: str) -> FsTraits:
    name = fs_type.lower()
    return FsTraits(
        fs_type=fs_type,
        supports_cow=name in COW_FILESYSTEMS,
        supports_direct_io=name not in NO_DIRECT_IO_FILESYSTEMS,
        is_layered=name.startswith(LAYERED_FS_PREFIXES),
    )


def probe(path: Path) -> FsTraits:
    return traits_for(detect_filesystem(path))


def effective_io_policy(traits: FsTraits, io: str, cache: str) -> Tuple[str, str]:
    """Substitute buffered I/O when the filesystem rejects O_DIRECT."""
    if traits.supports_direct_io:
        return io, cache
    return BUFFERED_IO_MODE, BUFFERED_CACHE_MODE


def disable_cow(path: Path) -> bool:
    """Set the No_COW attribute on *path*. Best effort."""
    try:
        result = run(["chattr", "+C", str(path)], check=False, capture_output=True)
    except OSError as exc:
        log("DEBUG", f"chattr unavailable: {exc}")
        return False
    return result.returncode == 0


def cow_disabled(path: Path) -> bool:
    try:
        result = run(["lsattr", str(path)], check=False, capture_output=True)
    except OSError:
        return False
    if result.returncode != 0:
        return False
    attrs = result.stdout.split(" ", 1)[0] if result.stdout else ""
    return "C" in attrs


def verify_cow_disabled(traits: FsTraits, path: Path, description: str) -> bool:
    """Warn when the No_COW attribute did not stick on a COW filesystem."""
    if not traits.supports_cow:
        return True
    if cow_disabled(path):
        return True
    log(
        "WARN",
        f"Failed to disable COW for {description} image {path} on {traits.fs_type.upper()} filesystem",
    )
    return False


def check_filesystem(traits: FsTraits, disk_file: Path, description: str) -> None:
    """Log advisories about the filesystem that will hold *disk_file*. Never fatal."""
    directory = disk_file.parent
    name = traits.fs_type.lower()

    if name.startswith("overlay"):
        log(
            "WARN",
            f"The filesystem of {directory} is OverlayFS, this usually means it was bound to an invalid path!",
        )
    if name.startswith("fuse"):
        log(
            "WARN",
            f"The filesystem of {directory} is FUSE, this extra layer will negatively affect performance!",
        )
    if not traits.supports_direct_io:
        log(
            "WARN",
            f"The filesystem of {directory} is {traits.fs_type}, which does not support O_DIRECT mode, "
            "adjusting settings...",
        )
    if traits.supports_cow and disk_file.is_file() and not cow_disabled(disk_file):
        log(
            "WARN",
            f"COW (copy on write) is not disabled for {description} image file {disk_file}, "
            f"this is recommended on {traits.fs_type.upper()} filesystems!",
        )

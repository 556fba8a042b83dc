"""Size token parsing and free-space planning."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from vmdisk.constants import (
    AUTO_SIZE_MARGIN,
    AUTO_SIZE_TOKENS,
    DEFAULT_DISK_SIZE,
    DISK_SIZE_RE,
    GiB,
    MIN_DISK_SIZE,
    SIZE_EXPONENTS,
)
from vmdisk.exceptions import InsufficientSpace, InvalidSize
from vmdisk.utils import format_bytes, get_available_disk_space, log


def is_auto_size(token: Optional[str]) -> bool:
    return (token or "").strip().lower() in AUTO_SIZE_TOKENS


def parse_size(token: str) -> int:
    """Convert a size token such as ``20G``, ``512MiB`` or ``1.5TB`` to bytes.

    Single-letter and ``xiB`` units are binary, ``xB`` units are decimal, a bare
    number is taken as GiB. Anything outside that grammar is rejected.
    """
    match = DISK_SIZE_RE.match(token.strip())
    if not match:
        raise InvalidSize(
            f"Invalid disk size '{token}'. Use a number with optional unit, e.g. '64G', '512M', '1.5T' or '100GB'"
        )
    number, unit = match.group(1), (match.group(2) or "g").lower()
    if unit == "b":
        multiplier = 1
    else:
        exponent = SIZE_EXPONENTS[unit[0]]
        base = 1000 if unit.endswith("b") and not unit.endswith("ib") else 1024
        multiplier = base**exponent
    if "." in number:
        whole, frac = number.split(".", 1)
        # Exact integer arithmetic; floats lose precision at TiB scale.
        return (int(whole + frac) * multiplier) // (10 ** len(frac))
    return int(number) * multiplier


def auto_size(token: str, available: int) -> int:
    """Resolve ``max``/``half`` against *available* bytes, in whole GiB."""
    if token == "max":
        free = available - AUTO_SIZE_MARGIN
    else:
        free = available // 2
    if free < AUTO_SIZE_MARGIN:
        free = AUTO_SIZE_MARGIN
    return (free // GiB) * GiB


def resolve_size(token: Optional[str], available_bytes_fn: Callable[[], int]) -> int:
    """Return the byte size requested by *token*.

    ``available_bytes_fn`` is only consulted for the ``max``/``half`` tokens.
    """
    raw = (token or "").strip()
    if not raw:
        raw = DEFAULT_DISK_SIZE
    lowered = raw.lower()
    if lowered in AUTO_SIZE_TOKENS:
        size = auto_size(lowered, available_bytes_fn())
    else:
        size = parse_size(raw)
    if size < MIN_DISK_SIZE:
        raise InvalidSize(f"Disk size '{raw}' is too small, it must be at least 100 MB")
    return size


def validate_size_token(token: Optional[str], label: str) -> str:
    """Check *token* at configuration time without touching the filesystem."""
    raw = (token or "").strip()
    if not raw or raw.lower() in AUTO_SIZE_TOKENS:
        return raw
    try:
        size = parse_size(raw)
    except InvalidSize:
        raise InvalidSize(f"Invalid value for {label}: '{token}'")
    if size < MIN_DISK_SIZE:
        raise InvalidSize(f"Please increase {label} to at least 100 MB (got '{token}')")
    return raw


def check_free_space(
    required: int,
    target_dir: Path,
    allocate: bool = True,
    action: str = "allocate",
    exit_code: Optional[int] = None,
) -> None:
    """Raise InsufficientSpace if *required* bytes do not fit in *target_dir*.

    Sparse allocation never reserves space up front, so nothing is checked
    when *allocate* is off.
    """
    if not allocate:
        return
    available = get_available_disk_space(target_dir)
    if required > available:
        log("DEBUG", f"Space check failed: need {required} bytes, {available} available in {target_dir}")
        raise InsufficientSpace(
            f"Not enough free space to {action} {format_bytes(required)} in {target_dir}, "
            f"it has only {format_bytes(available)} available. "
            "Specify a smaller size or disable preallocation by setting ALLOCATE=N.",
            exit_code=exit_code,
        )

"""Environment variable parsing for vmdisk.

Everything is read once here; the components only ever see the resulting
StorageConfig.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from vmdisk.capacity import validate_size_token
from vmdisk.constants import (
    DEFAULT_DISK_NAME,
    DEFAULT_DISK_TYPE,
    DEFAULT_STORAGE_DIR,
    DEVICE_CANDIDATES,
    DISK_CACHE_MODES,
    DISK_IO_MODES,
    FORMAT_EXTENSIONS,
    MAX_DISK_SLOTS,
    SLOT_ADDRESS_BASE,
    SLOT_BOOT_INDEX_BASE,
    SUPPORTED_FORMATS,
)
from vmdisk.devices import normalize_bus
from vmdisk.exceptions import ConfigError
from vmdisk.models import SlotConfig, StorageConfig
from vmdisk.utils import get_env, get_env_bool, is_block_device


def _env(name: str, default: str = "") -> str:
    return (get_env(name) or default).strip()


def slot_directory(index: int, storage_dir: Path) -> Path:
    if index == 1:
        return storage_dir
    return Path(f"/storage{index}")


def slot_env(name: str, index: int) -> str:
    """DISK_SIZE -> DISK_SIZE / DISK2_SIZE ..., DEVICE -> DEVICE / DEVICE2 ..."""
    if index == 1:
        return name
    if "_" in name:
        prefix, rest = name.split("_", 1)
        return f"{prefix}{index}_{rest}"
    return f"{name}{index}"


def resolve_device(index: int) -> Optional[Path]:
    explicit = _env(slot_env("DEVICE", index))
    if explicit:
        return Path(explicit)
    for candidate in DEVICE_CANDIDATES.get(index, ()):
        if is_block_device(candidate):
            return candidate
    return None


def resolve_format(storage_dir: Path, disk_name: str) -> str:
    raw = _env("DISK_FMT").lower()
    if not raw:
        if (storage_dir / f"{disk_name}.{FORMAT_EXTENSIONS['qcow2']}").exists():
            return "qcow2"
        return "raw"
    if raw not in SUPPORTED_FORMATS:
        raise ConfigError(f"Unrecognized disk format: {raw}")
    return raw


def parse_env() -> StorageConfig:
    storage_dir = Path(_env("STORAGE", str(DEFAULT_STORAGE_DIR)))
    disk_name = _env("DISK_NAME", DEFAULT_DISK_NAME)

    disk_type = normalize_bus(_env("DISK_TYPE", DEFAULT_DISK_TYPE))
    disk_fmt = resolve_format(storage_dir, disk_name)

    disk_io = _env("DISK_IO", "native").lower()
    if disk_io not in DISK_IO_MODES:
        supported = ", ".join(sorted(DISK_IO_MODES))
        raise ConfigError(f"Unsupported DISK_IO '{disk_io}'. Supported: {supported}")
    disk_cache = _env("DISK_CACHE", "none").lower()
    if disk_cache not in DISK_CACHE_MODES:
        supported = ", ".join(sorted(DISK_CACHE_MODES))
        raise ConfigError(f"Unsupported DISK_CACHE '{disk_cache}'. Supported: {supported}")

    disk_discard = _env("DISK_DISCARD", "on").lower()
    if disk_discard not in {"on", "off", "unmap", "ignore"}:
        raise ConfigError(f"Unsupported DISK_DISCARD '{disk_discard}'. Supported: on, off")
    disk_rotation = _env("DISK_ROTATION", "1")
    if not disk_rotation.isdigit():
        raise ConfigError(f"DISK_ROTATION must be an integer (got '{disk_rotation}')")

    slots: List[SlotConfig] = []
    for index in range(1, MAX_DISK_SLOTS + 1):
        size_var = slot_env("DISK_SIZE", index)
        size = validate_size_token(get_env(size_var), size_var)
        name = disk_name if index == 1 else f"{disk_name}{index}"
        slots.append(
            SlotConfig(
                index=index,
                base=slot_directory(index, storage_dir) / name,
                size=size,
                description="disk" if index == 1 else f"disk{index}",
                boot_index=SLOT_BOOT_INDEX_BASE + index,
                address=hex(SLOT_ADDRESS_BASE + index),
                device=resolve_device(index),
            )
        )

    return StorageConfig(
        storage_dir=storage_dir,
        disk_name=disk_name,
        disk_fmt=disk_fmt,
        disk_type=disk_type,
        disk_io=disk_io,
        disk_cache=disk_cache,
        disk_discard=disk_discard,
        disk_rotation=disk_rotation,
        disk_flags=_env("DISK_FLAGS"),
        # Sparse by default; ALLOCATE=Y reserves the full size up front.
        allocate=get_env_bool("ALLOCATE", False),
        use_overlay=get_env_bool("USE_OVERLAY", False),
        slots=tuple(slots),
    )

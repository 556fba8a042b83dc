"""Global constants and path configuration for vmdisk."""

from __future__ import annotations

import os
import re
from pathlib import Path

# Fixed mount point of the primary storage volume inside the container.
# Overlay recovery falls back to this absolute path even when STORAGE differs.
DEFAULT_STORAGE_DIR = Path("/storage")
FALLBACK_STORAGE_DIR = Path("/storage")
DEFAULT_DISK_NAME = "data"
OVERLAY_SUFFIX = "-overlay.qcow2"

STATUS_FILE = Path(os.environ.get("STATUS_FILE", "/run/shm/status.txt"))

TRUTHY = {"1", "true", "yes", "y", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

KiB = 1024
MiB = 1024 * KiB
GiB = 1024 * MiB

DEFAULT_DISK_SIZE = "64G"
MIN_DISK_SIZE = 100 * MiB
AUTO_SIZE_MARGIN = GiB
AUTO_SIZE_TOKENS = {"max", "half"}

# <number>[<whitespace>]<unit>; unit absent means GiB.
DISK_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([kmgtp](?:i?b)?|b)?$", re.IGNORECASE)

SIZE_EXPONENTS = {"k": 1, "m": 2, "g": 3, "t": 4, "p": 5}

# Image format <-> file extension
FORMAT_EXTENSIONS = {"qcow2": "qcow2", "raw": "img"}
EXTENSION_FORMATS = {"qcow2": "qcow2", "img": "raw", "raw": "raw"}
SUPPORTED_FORMATS = set(FORMAT_EXTENSIONS)

# Base images probed for overlay mode, in precedence order.
BASE_DISK_EXTENSIONS = ("img", "qcow2")

DISK_BUS_TYPES = {"ide", "sata", "nvme", "usb", "scsi", "blk", "auto", "none"}
DISK_BUS_ALIASES = {"virtio-blk": "blk", "virtio-scsi": "scsi"}
DEFAULT_DISK_TYPE = "scsi"

DISK_IO_MODES = {"native", "threads", "io_uring"}
DISK_CACHE_MODES = {"none", "writeback", "writethrough", "directsync", "unsafe"}

# Substituted when the host filesystem rejects O_DIRECT.
BUFFERED_IO_MODE = "threads"
BUFFERED_CACHE_MODE = "writeback"

COW_FILESYSTEMS = {"btrfs"}
NO_DIRECT_IO_FILESYSTEMS = {"ecryptfs", "tmpfs"}
LAYERED_FS_PREFIXES = ("overlay", "fuse")

IOTHREAD_ID = "io2"
NVME_SERIAL_PREFIX = "deadbeaf"
DEFAULT_SECTOR_SIZE = 512

MAX_DISK_SLOTS = 6
# Slot n gets boot index SLOT_BOOT_INDEX_BASE + n and PCI address 0x9 + n.
SLOT_BOOT_INDEX_BASE = 2
SLOT_ADDRESS_BASE = 0x9

# Block devices auto-detected per slot when DEVICE<n> is unset.
DEVICE_CANDIDATES = {
    1: (Path("/disk"), Path("/disk1"), Path("/dev/disk1")),
    2: (Path("/disk2"), Path("/dev/disk2")),
    3: (Path("/disk3"), Path("/dev/disk3")),
    4: (Path("/disk4"), Path("/dev/disk4")),
    5: (Path("/disk5"), Path("/dev/disk5")),
    6: (Path("/disk6"), Path("/dev/disk6")),
}

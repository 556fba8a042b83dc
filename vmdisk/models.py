"""Data models for vmdisk."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from vmdisk.constants import FORMAT_EXTENSIONS


class SectorGeometry(NamedTuple):
    logical: int
    physical: int


class BackingRef(NamedTuple):
    path: Path
    fmt: str


@dataclass(frozen=True)
class DiskSpec:
    base: Path  # without extension
    size: str
    description: str
    fmt: str = "raw"
    io: str = "native"
    cache: str = "none"

    @property
    def path(self) -> Path:
        return self.base.with_name(f"{self.base.name}.{FORMAT_EXTENSIONS[self.fmt]}")


@dataclass
class DiskImage:
    path: Path
    fmt: str
    virtual_size: int
    allocated: int = 0
    backing: Optional[BackingRef] = None


@dataclass(frozen=True)
class FsTraits:
    fs_type: str
    supports_cow: bool
    supports_direct_io: bool
    is_layered: bool


class OverlayState(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    ACTIVE = "active"
    MERGING = "merging"
    MERGED = "merged"
    ERROR = "error"


@dataclass
class OverlayChain:
    state: OverlayState
    base: Optional[Path] = None
    base_fmt: Optional[str] = None
    overlay: Optional[Path] = None
    # Set when recovery gave up on the overlay and attached the base directly.
    degraded: bool = False

    @property
    def target(self) -> Optional[Path]:
        """Image the machine should be wired to."""
        return self.base if self.degraded else self.overlay

    @property
    def target_fmt(self) -> Optional[str]:
        return self.base_fmt if self.degraded else "qcow2"


@dataclass(frozen=True)
class DeviceSlot:
    index: Optional[int]  # boot priority ordinal
    address: str
    bus: str
    serial: Optional[str] = None
    geometry: Optional[SectorGeometry] = None


@dataclass(frozen=True)
class AttachmentDescriptor:
    drive_id: str
    source: str
    fmt: str
    bus: str
    cache: str
    aio: str
    discard: str = "on"
    boot_index: Optional[int] = None
    devices: Tuple[str, ...] = ()

    @property
    def drive(self) -> str:
        opts = (
            f"file={self.source},id={self.drive_id},format={self.fmt},cache={self.cache},"
            f"aio={self.aio},discard={self.discard},detect-zeroes=on"
        )
        if self.bus != "auto":
            opts += ",if=none"
        return opts

    def to_args(self) -> List[str]:
        args = ["-drive", self.drive]
        for device in self.devices:
            args.extend(["-device", device])
        return args


@dataclass(frozen=True)
class SlotConfig:
    index: int  # 1-6
    base: Path  # image path without extension
    size: str
    description: str
    boot_index: int
    address: str
    device: Optional[Path] = None

    @property
    def directory(self) -> Path:
        return self.base.parent


@dataclass(frozen=True)
class StorageConfig:
    storage_dir: Path
    disk_name: str
    disk_fmt: str
    disk_type: str
    disk_io: str
    disk_cache: str
    disk_discard: str
    disk_rotation: str
    disk_flags: str
    allocate: bool
    use_overlay: bool
    slots: Tuple[SlotConfig, ...] = ()

    @property
    def primary(self) -> Optional[SlotConfig]:
        for slot in self.slots:
            if slot.index == 1:
                return slot
        return None


@dataclass
class ProvisionResult:
    descriptors: List[AttachmentDescriptor] = field(default_factory=list)
    images: Dict[int, Path] = field(default_factory=dict)
    overlay: Optional[OverlayChain] = None
    degraded: bool = False
    trailing_args: List[str] = field(default_factory=list)

    def to_args(self) -> List[str]:
        args: List[str] = []
        for descriptor in self.descriptors:
            args.extend(descriptor.to_args())
        args.extend(self.trailing_args)
        return args

    def to_manifest(self) -> Dict[str, Any]:
        slots = []
        for descriptor in self.descriptors:
            slots.append(
                {
                    "id": descriptor.drive_id,
                    "file": descriptor.source,
                    "format": descriptor.fmt,
                    "bus": descriptor.bus,
                    "bootindex": descriptor.boot_index,
                    "args": descriptor.to_args(),
                }
            )
        manifest: Dict[str, Any] = {"disks": slots, "degraded": self.degraded}
        if self.overlay is not None:
            manifest["overlay"] = {
                "state": self.overlay.state.value,
                "path": str(self.overlay.overlay) if self.overlay.overlay else None,
                "base": str(self.overlay.base) if self.overlay.base else None,
                "base_format": self.overlay.base_fmt,
            }
        return manifest

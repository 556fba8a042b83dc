"""Drive and device argument generation for the machine launcher."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from vmdisk.constants import (
    DEFAULT_SECTOR_SIZE,
    DISK_BUS_ALIASES,
    DISK_BUS_TYPES,
    IOTHREAD_ID,
    NVME_SERIAL_PREFIX,
)
from vmdisk.exceptions import DeviceNotFound, InvalidBusType
from vmdisk.models import AttachmentDescriptor, DeviceSlot, SectorGeometry
from vmdisk.utils import is_block_device, log, run


def normalize_bus(bus: str) -> str:
    key = (bus or "").strip().lower()
    key = DISK_BUS_ALIASES.get(key, key)
    if key not in DISK_BUS_TYPES:
        raise InvalidBusType(f"Invalid disk type specified, value \"{bus}\" is not recognized!")
    return key


def attach(
    source: Path,
    bus: str,
    index: Optional[int],
    address: str,
    fmt: str,
    io: str,
    cache: str,
    serial: Optional[str] = None,
    geometry: Optional[SectorGeometry] = None,
    discard: str = "on",
    rotation: str = "1",
) -> Optional[AttachmentDescriptor]:
    """Describe how *source* is attached on *bus*; None when the bus is ``none``."""
    bus = normalize_bus(bus)
    if bus == "none":
        return None

    drive_id = f"data{index if index is not None else ''}"
    boot = f",bootindex={index}" if index is not None else ""
    extra = f",serial={serial}" if serial and bus != "nvme" else ""
    if geometry is not None:
        extra += f",logical_block_size={geometry.logical},physical_block_size={geometry.physical}"

    devices: List[str] = []
    if bus == "usb":
        devices.append(f"usb-storage,drive={drive_id}{boot}{extra}")
    elif bus == "nvme":
        nvme_serial = serial or f"{NVME_SERIAL_PREFIX}{index if index is not None else ''}"
        devices.append(f"nvme,drive={drive_id}{boot},serial={nvme_serial}{extra}")
    elif bus in ("ide", "sata"):
        devices.append(f"ich9-ahci,id=ahci{index},addr={address}")
        devices.append(f"ide-hd,drive={drive_id},bus=ahci{index}.0,rotation_rate={rotation}{boot}{extra}")
    elif bus == "blk":
        devices.append(
            f"virtio-blk-pci,drive={drive_id},bus=pcie.0,addr={address},iothread={IOTHREAD_ID}{boot}{extra}"
        )
    elif bus == "scsi":
        devices.append(f"virtio-scsi-pci,id={drive_id}b,bus=pcie.0,addr={address},iothread={IOTHREAD_ID}")
        devices.append(
            f"scsi-hd,drive={drive_id},bus={drive_id}b.0,channel=0,scsi-id=0,lun=0,"
            f"rotation_rate={rotation}{boot}{extra}"
        )

    return AttachmentDescriptor(
        drive_id=drive_id,
        source=str(source),
        fmt=fmt,
        bus=bus,
        cache=cache,
        aio=io,
        discard=discard,
        boot_index=index,
        devices=tuple(devices),
    )


def attach_slot(
    source: Path,
    slot: DeviceSlot,
    fmt: str,
    io: str,
    cache: str,
    discard: str = "on",
    rotation: str = "1",
) -> Optional[AttachmentDescriptor]:
    return attach(
        source,
        slot.bus,
        slot.index,
        slot.address,
        fmt,
        io,
        cache,
        serial=slot.serial,
        geometry=slot.geometry,
        discard=discard,
        rotation=rotation,
    )


def _blockdev_query(flag: str, device: Path) -> Optional[int]:
    try:
        result = run(["blockdev", flag, str(device)], check=True, capture_output=True)
        return int(result.stdout.strip())
    except (subprocess.CalledProcessError, OSError, ValueError):
        return None


def probe_sector_size(device: Path) -> Optional[SectorGeometry]:
    """Return logical/physical sector sizes of a block device, or None if unknown."""
    logical = _blockdev_query("--getss", device)
    physical = _blockdev_query("--getpbsz", device)
    if logical is None or physical is None:
        return None
    return SectorGeometry(logical=logical, physical=physical)


def attach_block_device(
    device: Path,
    bus: str,
    index: Optional[int],
    address: str,
    io: str,
    cache: str,
    discard: str = "on",
    rotation: str = "1",
) -> Optional[AttachmentDescriptor]:
    """Pass a host block device through to the guest as a raw disk."""
    if not is_block_device(device):
        raise DeviceNotFound(
            f"Device {device} cannot be found! Please add it to the 'devices' section of your compose file."
        )

    geometry = probe_sector_size(device)
    if geometry is None:
        log("WARN", f"Failed to determine the sector size for {device}")
    elif geometry.physical == DEFAULT_SECTOR_SIZE:
        geometry = None

    slot = DeviceSlot(index=index, address=address, bus=bus, geometry=geometry)
    return attach_slot(device, slot, "raw", io, cache, discard=discard, rotation=rotation)


def iothread_args() -> List[str]:
    return ["-object", f"iothread,id={IOTHREAD_ID}"]

"""Per-boot storage provisioning.

Walks the configured slots in order (primary first), makes sure each one has
a ready image or block device and collects the launcher arguments for it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from vmdisk.devices import attach_block_device, attach_slot, iothread_args
from vmdisk.exceptions import NoBaseDisk, OverlayCreationFailed
from vmdisk.filesystem import check_filesystem, effective_io_policy, probe
from vmdisk.lifecycle import DiskLifecycle
from vmdisk.models import (
    AttachmentDescriptor,
    DeviceSlot,
    DiskSpec,
    OverlayChain,
    ProvisionResult,
    SlotConfig,
    StorageConfig,
)
from vmdisk.overlay import OverlayManager
from vmdisk.status import StatusBroadcaster
from vmdisk.utils import log


class StorageProvisioner:
    def __init__(self, cfg: StorageConfig, status: Optional[StatusBroadcaster] = None) -> None:
        self.cfg = cfg
        self.status = status
        self.lifecycle = DiskLifecycle(allocate=cfg.allocate, disk_flags=cfg.disk_flags, status=status)
        self.overlay = OverlayManager(
            cfg.storage_dir,
            disk_name=cfg.disk_name,
            force=cfg.use_overlay,
            status=status,
        )

    def _spec(self, slot: SlotConfig) -> DiskSpec:
        return DiskSpec(
            base=slot.base,
            size=slot.size,
            description=slot.description,
            fmt=self.cfg.disk_fmt,
            io=self.cfg.disk_io,
            cache=self.cfg.disk_cache,
        )

    def _device_slot(self, slot: SlotConfig) -> DeviceSlot:
        return DeviceSlot(index=slot.boot_index, address=slot.address, bus=self.cfg.disk_type)

    def _attach(self, source: Path, slot: SlotConfig, fmt: str) -> Optional[AttachmentDescriptor]:
        io, cache = effective_io_policy(probe(source.parent), self.cfg.disk_io, self.cfg.disk_cache)
        return attach_slot(
            source,
            self._device_slot(slot),
            fmt,
            io,
            cache,
            discard=self.cfg.disk_discard,
            rotation=self.cfg.disk_rotation,
        )

    def _provision_device(self, slot: SlotConfig) -> Optional[AttachmentDescriptor]:
        device = slot.device
        log("INFO", f"Using block device {device} for {slot.description}")
        return attach_block_device(
            device,
            self.cfg.disk_type,
            slot.boot_index,
            slot.address,
            self.cfg.disk_io,
            self.cfg.disk_cache,
            discard=self.cfg.disk_discard,
            rotation=self.cfg.disk_rotation,
        )

    def _provision_overlay(self) -> Optional[OverlayChain]:
        """Bring up the overlay chain for the primary slot, or None to fall back to a plain image."""
        try:
            chain = self.overlay.init_overlay()
        except (NoBaseDisk, OverlayCreationFailed) as exc:
            log("ERROR", str(exc))
            log("INFO", "Falling back to normal disk creation...")
            return None

        if chain.overlay is None or not chain.overlay.is_file():
            chain = self.overlay.recover_overlay()

        check_filesystem(probe(self.cfg.storage_dir), chain.target, "overlay disk")
        return chain

    def _provision_image(self, slot: SlotConfig, result: ProvisionResult) -> Optional[AttachmentDescriptor]:
        spec = self._spec(slot)
        image = self.lifecycle.ensure(spec)
        if image is None:
            return None
        result.images[slot.index] = image.path
        return self._attach(image.path, slot, image.fmt)

    def provision_slot(self, slot: SlotConfig, result: ProvisionResult) -> Optional[AttachmentDescriptor]:
        if slot.device is not None:
            return self._provision_device(slot)

        if slot.index == 1 and self.overlay.should_use_overlay():
            chain = self._provision_overlay()
            if chain is not None:
                result.overlay = chain
                result.degraded = chain.degraded
                result.images[slot.index] = chain.target
                return self._attach(chain.target, slot, chain.target_fmt)

        return self._provision_image(slot, result)

    def provision(self) -> ProvisionResult:
        result = ProvisionResult()
        if self.status is not None:
            self.status.update("Initializing disks...")

        for slot in self.cfg.slots:
            descriptor = self.provision_slot(slot, result)
            if descriptor is not None:
                result.descriptors.append(descriptor)

        result.trailing_args = iothread_args()

        if result.degraded:
            log("CRITICAL", "Storage is running in degraded mode: the base disk is attached without an overlay")
        if self.status is not None:
            self.status.done()
        log("SUCCESS", f"Initialized {len(result.descriptors)} disk(s) successfully")
        return result

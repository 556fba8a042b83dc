"""Copy-on-write overlay on top of an existing base disk.

A base disk baked into a read-only layer (or simply meant to stay pristine)
gets a qcow2 overlay; all guest writes land in the overlay. There is no state
file: whether the overlay exists on disk *is* the state, so every query looks
at the files again.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional

from vmdisk import qemu_img
from vmdisk.constants import (
    BASE_DISK_EXTENSIONS,
    DEFAULT_DISK_NAME,
    EXTENSION_FORMATS,
    FALLBACK_STORAGE_DIR,
    OVERLAY_SUFFIX,
)
from vmdisk.exceptions import MergeFailed, NoBaseDisk, OverlayCreationFailed, OverlayError, OverlayUnrecoverable
from vmdisk.models import OverlayChain, OverlayState
from vmdisk.status import StatusBroadcaster
from vmdisk.utils import is_nonempty_file, log

RecoveryStrategy = Callable[[], Optional[OverlayChain]]


class OverlayManager:
    def __init__(
        self,
        storage_dir: Path,
        disk_name: str = DEFAULT_DISK_NAME,
        force: bool = False,
        fallback_dir: Path = FALLBACK_STORAGE_DIR,
        status: Optional[StatusBroadcaster] = None,
    ) -> None:
        self.storage_dir = storage_dir
        self.disk_name = disk_name
        self.force = force
        self.fallback_dir = fallback_dir
        self.status = status

    @property
    def overlay_path(self) -> Path:
        return self.storage_dir / f"{self.disk_name}{OVERLAY_SUFFIX}"

    @property
    def fallback_path(self) -> Path:
        return self.fallback_dir / f"{self.disk_name}{OVERLAY_SUFFIX}"

    def _notify(self, msg: str) -> None:
        if self.status is not None:
            self.status.update(msg)

    def base_candidates(self) -> List[Path]:
        return [self.storage_dir / f"{self.disk_name}.{ext}" for ext in BASE_DISK_EXTENSIONS]

    def find_base(self) -> Optional[Path]:
        for candidate in self.base_candidates():
            if is_nonempty_file(candidate):
                return candidate
        return None

    def _existing_overlay(self) -> Optional[Path]:
        for candidate in (self.overlay_path, self.fallback_path):
            if candidate.is_file():
                return candidate
        return None

    def should_use_overlay(self) -> bool:
        if self.force:
            log("INFO", "USE_OVERLAY is set, enabling overlay mode")
            return True
        base = self.find_base()
        if base is not None:
            log("INFO", f"Found existing {base.name} file, enabling overlay mode")
            return True
        log("INFO", "No existing data disk found, using normal disk creation")
        return False

    def detect_base_format(self, base: Path) -> str:
        ext = base.suffix.lstrip(".").lower()
        if ext in EXTENSION_FORMATS:
            return EXTENSION_FORMATS[ext]
        log("INFO", "Unable to determine base disk format from extension, trying auto-detection...")
        fmt = qemu_img.detect_format(base)
        if not fmt:
            log("INFO", "Auto-detection failed, defaulting to raw format")
            return "raw"
        log("INFO", f"Detected base disk format: {fmt}")
        return fmt

    def validate_overlay(self, overlay: Path, base: Path, base_fmt: str) -> bool:
        """True if *overlay* is a qcow2 image backed by *base* in *base_fmt*."""
        data = qemu_img.info(overlay, "qcow2")
        if not data:
            return False
        backing = data.get("full-backing-filename") or data.get("backing-filename")
        if not backing:
            return False
        backing_path = Path(backing)
        if not backing_path.is_absolute():
            backing_path = overlay.parent / backing_path
        if backing_path.resolve() != base.resolve():
            return False
        return (data.get("backing-filename-format") or base_fmt) == base_fmt

    def _create_overlay(self, base: Path, base_fmt: str, overlay: Path) -> bool:
        return qemu_img.create(overlay, "qcow2", backing=base, backing_fmt=base_fmt)

    def init_overlay(self) -> OverlayChain:
        log("INFO", "Initializing overlay disk...")
        base = self.find_base()
        if base is None:
            raise NoBaseDisk(f"No base disk found in {self.storage_dir}")
        overlay = self.overlay_path
        log("INFO", f"Base disk path: {base}")
        log("INFO", f"Overlay disk path: {overlay}")

        base_fmt = self.detect_base_format(base)

        existing = self._existing_overlay()
        if existing is not None:
            log("INFO", f"Overlay disk already exists: {existing}")
            if not self.validate_overlay(existing, base, base_fmt):
                log("WARN", f"Overlay disk {existing} does not reference {base} ({base_fmt}) as its backing file")
            return OverlayChain(OverlayState.ACTIVE, base=base, base_fmt=base_fmt, overlay=existing)

        chain = OverlayChain(OverlayState.CREATING, base=base, base_fmt=base_fmt, overlay=overlay)
        msg = "Creating overlay disk..."
        log("INFO", msg)
        self._notify(msg)

        if not self._create_overlay(base, base_fmt, overlay):
            chain.state = OverlayState.ERROR
            raise OverlayCreationFailed(f"Failed to create overlay disk: {overlay}")

        if not overlay.is_file():
            log("ERROR", f"Overlay disk file was not found after creation: {overlay}")
            overlay = self.fallback_path
            log("INFO", f"Attempting to create overlay disk at {overlay}...")
            if not self._create_overlay(base, base_fmt, overlay) or not overlay.is_file():
                chain.state = OverlayState.ERROR
                raise OverlayCreationFailed(f"Failed to create overlay disk at {overlay}")
            chain.overlay = overlay

        chain.state = OverlayState.ACTIVE
        log("SUCCESS", f"Overlay disk created successfully: {overlay}")
        return chain

    def state(self) -> OverlayState:
        overlay = self._existing_overlay()
        if overlay is None:
            return OverlayState.ABSENT
        base = self.find_base()
        if base is None:
            return OverlayState.ERROR
        if self.validate_overlay(overlay, base, self.detect_base_format(base)):
            return OverlayState.ACTIVE
        return OverlayState.ERROR

    # Recovery strategies, tried in order by recover_overlay().

    def _use_fallback_path(self) -> Optional[OverlayChain]:
        overlay = self.fallback_path
        if not overlay.is_file():
            return None
        log("INFO", f"Using overlay disk at {overlay}")
        base = self.find_base()
        return OverlayChain(
            OverlayState.ACTIVE,
            base=base,
            base_fmt=self.detect_base_format(base) if base else None,
            overlay=overlay,
        )

    def _recreate(self) -> Optional[OverlayChain]:
        if self.find_base() is None:
            return None
        log("INFO", "Attempting to recreate overlay disk...")
        try:
            chain = self.init_overlay()
        except OverlayError as exc:
            log("ERROR", f"Failed to recreate overlay disk: {exc}")
            return None
        if chain.overlay is None or not chain.overlay.is_file():
            return None
        log("INFO", "Overlay disk recreated successfully")
        return chain

    def _attach_base(self) -> Optional[OverlayChain]:
        base = self.find_base()
        if base is None:
            return None
        log(
            "CRITICAL",
            f"Overlay disk could not be recovered; attaching base disk {base} directly in read-write mode. "
            "Guest writes will modify the base disk!",
        )
        return OverlayChain(
            OverlayState.ERROR,
            base=base,
            base_fmt=self.detect_base_format(base),
            overlay=None,
            degraded=True,
        )

    def recovery_strategies(self) -> List[RecoveryStrategy]:
        return [self._use_fallback_path, self._recreate, self._attach_base]

    def recover_overlay(self) -> OverlayChain:
        """Find something to wire after the overlay vanished from an active chain."""
        log("ERROR", f"Overlay disk file not found at: {self.overlay_path}")
        for strategy in self.recovery_strategies():
            chain = strategy()
            if chain is not None:
                return chain
        raise OverlayUnrecoverable(f"Overlay disk is missing and no base disk was found in {self.storage_dir}")

    def clean_overlay(self) -> bool:
        removed = False
        for candidate in (self.overlay_path, self.fallback_path):
            if candidate.is_file():
                msg = "Cleaning overlay disk..."
                log("INFO", msg)
                self._notify(msg)
                candidate.unlink()
                log("INFO", f"Overlay disk cleaned: {candidate}")
                removed = True
        return removed

    def merge_overlay(self) -> OverlayChain:
        """Commit overlay writes into the base disk and drop the overlay.

        Only safe while no machine has the overlay open.
        """
        base = self.find_base()
        overlay = self._existing_overlay()
        if overlay is None:
            return OverlayChain(OverlayState.MERGED, base=base)

        chain = OverlayChain(OverlayState.MERGING, base=base, overlay=overlay)
        msg = "Merging overlay disk to base disk..."
        log("INFO", msg)
        self._notify(msg)

        if not qemu_img.commit(overlay):
            chain.state = OverlayState.ERROR
            raise MergeFailed(f"Failed to merge overlay disk {overlay} into its base disk")

        overlay.unlink(missing_ok=True)
        chain.state = OverlayState.MERGED
        chain.overlay = None
        log("SUCCESS", "Overlay disk merged successfully to base disk")
        return chain

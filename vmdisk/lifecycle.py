"""Create, resize and convert disk image files.

Each transition works on a single image file and leaves either the old
file or the finished new one under its final name. Conversions write to a
temp file beside the destination and rename it into place.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from vmdisk import qemu_img
from vmdisk.capacity import check_free_space, is_auto_size, resolve_size
from vmdisk.exceptions import (
    ConfigError,
    ConversionFailed,
    CreationFailed,
    DestExists,
    DiskError,
    ResizeFailed,
    ShrinkUnsupported,
    SourceMissing,
)
from vmdisk.filesystem import check_filesystem, disable_cow, probe, verify_cow_disabled
from vmdisk.models import BackingRef, DiskImage, DiskSpec, FsTraits
from vmdisk.status import StatusBroadcaster
from vmdisk.utils import (
    ext_to_fmt,
    fmt_to_ext,
    format_bytes,
    get_available_disk_space,
    get_used_disk_space,
    is_nonempty_file,
    log,
    run,
)

AllocateFn = Callable[[Path, int], bool]


def fallocate(path: Path, size: int) -> bool:
    try:
        result = run(["fallocate", "-l", str(size), str(path)], check=False, capture_output=True)
    except OSError:
        return False
    return result.returncode == 0


def fallocate_posix(path: Path, size: int) -> bool:
    """``fallocate -x``: posix_fallocate(3), which writes zeros where the filesystem can't reserve."""
    try:
        result = run(["fallocate", "-x", "-l", str(size), str(path)], check=False, capture_output=True)
    except OSError:
        return False
    return result.returncode == 0


def truncate(path: Path, size: int) -> bool:
    try:
        with open(path, "ab") as f:
            f.truncate(size)
    except OSError as exc:
        log("DEBUG", f"truncate {path} to {size} failed: {exc}")
        return False
    return True


class DiskLifecycle:
    def __init__(
        self,
        allocate: bool = False,
        disk_flags: str = "",
        status: Optional[StatusBroadcaster] = None,
    ) -> None:
        self.allocate = allocate
        self.disk_flags = disk_flags.strip().strip(",")
        self.status = status

    @property
    def preallocation(self) -> str:
        return "falloc" if self.allocate else "off"

    @property
    def style(self) -> str:
        return "preallocated" if self.allocate else "growable"

    def _notify(self, msg: str) -> None:
        if self.status is not None:
            self.status.update(msg)

    def allocation_strategies(self) -> List[Tuple[str, AllocateFn]]:
        """Raw allocation strategies, strongest first. Sparse is always last."""
        if not self.allocate:
            return [("truncate", truncate)]
        return [
            ("fallocate", fallocate),
            ("fallocate -x", fallocate_posix),
            ("truncate", truncate),
        ]

    def _allocate_raw(self, path: Path, size: int) -> bool:
        for name, strategy in self.allocation_strategies():
            if strategy(path, size):
                log("DEBUG", f"Allocated {size} bytes for {path} using {name}")
                return True
            log("DEBUG", f"Allocation of {path} using {name} failed")
        return False

    def _image_options(self, traits: FsTraits, with_flags: bool) -> str:
        options = f"preallocation={self.preallocation}"
        if traits.supports_cow:
            options += ",nocow=on"
        if with_flags and self.disk_flags:
            options += f",{self.disk_flags}"
        return options

    def get_size(self, path: Path, fmt: Optional[str] = None) -> int:
        """Return the virtual size of the image at *path* in bytes."""
        fmt = fmt or ext_to_fmt(path.suffix)
        if fmt == "raw":
            return path.stat().st_size
        if fmt == "qcow2":
            data = qemu_img.info(path, fmt)
            if not data or "virtual-size" not in data:
                raise DiskError(f"Could not determine the virtual size of {path}")
            return int(data["virtual-size"])
        raise ConfigError(f"Unrecognized disk format: {fmt}")

    def inspect(self, path: Path, fmt: Optional[str] = None) -> DiskImage:
        fmt = fmt or ext_to_fmt(path.suffix)
        if fmt == "raw":
            return DiskImage(path=path, fmt=fmt, virtual_size=path.stat().st_size, allocated=get_used_disk_space(path))
        data = qemu_img.info(path, fmt)
        if not data:
            raise DiskError(f"Could not inspect {fmt} image {path}")
        backing = None
        backing_file = data.get("full-backing-filename") or data.get("backing-filename")
        if backing_file:
            backing = BackingRef(Path(backing_file), data.get("backing-filename-format") or "raw")
        return DiskImage(
            path=path,
            fmt=fmt,
            virtual_size=int(data.get("virtual-size", 0)),
            allocated=int(data.get("actual-size", get_used_disk_space(path))),
            backing=backing,
        )

    def create(self, spec: DiskSpec, size: Optional[int] = None, traits: Optional[FsTraits] = None) -> DiskImage:
        path = spec.path
        directory = path.parent
        if size is None:
            size = resolve_size(spec.size, lambda: get_available_disk_space(directory))
        if traits is None:
            traits = probe(directory)

        path.unlink(missing_ok=True)

        check_free_space(size, directory, self.allocate, action=f"create a {spec.description} of")

        self._notify(f"Creating a {spec.description} image...")
        log(
            "INFO",
            f"Creating a {format_bytes(size)} {self.style} {spec.description} image in {spec.fmt} format...",
        )
        fail = f"Could not create a {self.style} {spec.fmt} {spec.description} image of {format_bytes(size)} ({path})"

        if spec.fmt == "raw":
            if traits.supports_cow:
                try:
                    path.touch()
                except OSError as exc:
                    raise CreationFailed(f"{fail}: {exc}")
                disable_cow(path)
            if not self._allocate_raw(path, size):
                path.unlink(missing_ok=True)
                raise CreationFailed(fail)
        elif spec.fmt == "qcow2":
            options = self._image_options(traits, with_flags=True)
            if not qemu_img.create(path, spec.fmt, size, options):
                path.unlink(missing_ok=True)
                raise CreationFailed(fail, exit_code=70)
        else:
            raise ConfigError(f"Unrecognized disk format: {spec.fmt}")

        verify_cow_disabled(traits, path, spec.description)
        return self.inspect(path, spec.fmt)

    def resize(
        self,
        image: DiskImage,
        new_size: int,
        description: str = "disk",
        traits: Optional[FsTraits] = None,
    ) -> DiskImage:
        path = image.path
        current = self.get_size(path, image.fmt)
        delta = new_size - current
        if delta < 1:
            raise ShrinkUnsupported(
                f"Shrinking disks is not supported ({description} is {format_bytes(current)}, "
                f"requested {format_bytes(new_size)}), please increase {description.upper()}_SIZE."
            )

        check_free_space(
            delta,
            path.parent,
            self.allocate,
            action=f"resize {description} by",
            exit_code=74,
        )

        msg = f"Resizing {description} from {format_bytes(current)} to {format_bytes(new_size)}..."
        log("INFO", msg)
        self._notify(msg)
        fail = (
            f"Could not resize the {self.style} {image.fmt} {description} image from "
            f"{format_bytes(current)} to {format_bytes(new_size)} ({path})"
        )

        if image.fmt == "raw":
            if not self._allocate_raw(path, new_size):
                raise ResizeFailed(fail)
        elif image.fmt == "qcow2":
            if not qemu_img.resize(path, image.fmt, new_size, self.preallocation):
                raise ResizeFailed(fail, exit_code=72)
        else:
            raise ConfigError(f"Unrecognized disk format: {image.fmt}")

        return self.inspect(path, image.fmt)

    def convert(
        self,
        source: Path,
        source_fmt: str,
        dest: Path,
        dest_fmt: str,
        description: str = "disk",
        traits: Optional[FsTraits] = None,
    ) -> DiskImage:
        if dest.exists():
            raise DestExists(f"Conversion failed, destination file {dest} already exists")
        if not source.is_file():
            raise SourceMissing(f"Conversion failed, source file {source} does not exist")

        # Same directory as the destination so the space check holds and the rename is atomic.
        tmp = dest.with_suffix(".tmp")
        tmp.unlink(missing_ok=True)
        if traits is None:
            traits = probe(dest.parent)

        if self.allocate:
            check_free_space(
                self.get_size(source, source_fmt),
                tmp.parent,
                self.allocate,
                action=f"convert {description} to {dest_fmt}, which needs",
            )

        msg = f"Converting {description} to {dest_fmt}"
        self._notify(f"{msg}...")
        log("INFO", f"{msg}, please wait until completed...")

        try:
            ok = qemu_img.convert(
                source,
                source_fmt,
                tmp,
                dest_fmt,
                options=self._image_options(traits, with_flags=dest_fmt != "raw"),
                compress=dest_fmt != "raw" and not self.allocate,
            )
            if not ok:
                raise ConversionFailed(
                    f"Failed to convert {self.style} {description} image to {dest_fmt} format in "
                    f"{dest.parent}, is there enough space available?"
                )
            if dest_fmt == "raw" and self.allocate:
                # qemu-img convert leaves raw output partially sparse even with preallocation
                size = tmp.stat().st_size
                if not (fallocate(tmp, size) or fallocate_posix(tmp, size)):
                    log("WARN", f"Failed to allocate {size} bytes for {description} image {tmp}")
            os.replace(tmp, dest)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        source.unlink(missing_ok=True)
        verify_cow_disabled(traits, dest, description)

        self._notify(f"Conversion of {description} completed...")
        log("SUCCESS", f"Conversion of {description} to {dest_fmt} completed successfully!")
        return self.inspect(dest, dest_fmt)

    def ensure(self, spec: DiskSpec, traits: Optional[FsTraits] = None) -> Optional[DiskImage]:
        """Bring the image described by *spec* into existence at the requested size.

        Returns None when the slot's directory is not mounted. An image left
        in the other format by an earlier boot is converted first; an image
        larger than requested is kept as is.
        """
        path = spec.path
        directory = path.parent
        if not directory.is_dir():
            log("DEBUG", f"Skipping {spec.description}: {directory} does not exist")
            return None

        size = resolve_size(spec.size, lambda: get_available_disk_space(directory))
        if traits is None:
            traits = probe(directory)
        check_filesystem(traits, path, spec.description)

        if not is_nonempty_file(path):
            prev_fmt = "raw" if spec.fmt != "raw" else "qcow2"
            prev = spec.base.with_name(f"{spec.base.name}.{fmt_to_ext(prev_fmt)}")
            if is_nonempty_file(prev):
                if path.exists():
                    log("DEBUG", f"Removing empty {path} before conversion")
                    path.unlink()
                self.convert(prev, prev_fmt, path, spec.fmt, spec.description, traits)

        if is_nonempty_file(path):
            current = self.get_size(path, spec.fmt)
            if size > current:
                image = self.resize(
                    DiskImage(path=path, fmt=spec.fmt, virtual_size=current),
                    size,
                    spec.description,
                    traits,
                )
            else:
                if size < current and not is_auto_size(spec.size):
                    log(
                        "INFO",
                        f"You decreased {spec.description.upper()}_SIZE to {format_bytes(size)} but shrinking "
                        "disks is not supported, will be ignored...",
                    )
                image = self.inspect(path, spec.fmt)
        else:
            image = self.create(spec, size, traits)

        if not self.allocate:
            self._warn_low_space(image, spec.description)
        return image

    def _warn_low_space(self, image: DiskImage, description: str) -> None:
        used = get_used_disk_space(image.path)
        free = get_available_disk_space(image.path.parent)
        left = image.virtual_size - used - free
        if left <= 0:
            return
        msg = f"the virtual size of the {description.lower()} is {format_bytes(image.virtual_size)}"
        if used == 0:
            msg += ","
        else:
            msg += f" (of which {format_bytes(used)} is used),"
        log(
            "WARN",
            f"{msg} but there is only {format_bytes(free)} of free space left in {image.path.parent}, "
            f"make at least {format_bytes(left)} more room available!",
        )

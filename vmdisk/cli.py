"""CLI entry points for vmdisk."""

from __future__ import annotations

import argparse
import dataclasses
import shlex
from pathlib import Path
from typing import List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmdisk.capacity import resolve_size
from vmdisk.config import parse_env
from vmdisk.exceptions import DiskError
from vmdisk.filesystem import probe
from vmdisk.models import ProvisionResult, StorageConfig
from vmdisk.overlay import OverlayManager
from vmdisk.provision import StorageProvisioner
from vmdisk.status import StatusBroadcaster
from vmdisk.utils import (
    ensure_directory,
    fmt_to_ext,
    format_bytes,
    get_available_disk_space,
    is_block_device,
    is_nonempty_file,
    log,
)


def show_config(cfg: StorageConfig) -> None:
    """Print the resolved storage configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name == "slots":
            print(f"  {field.name}:")
            for slot in value:
                print(f"    [{slot.index}]:")
                for sub_field in dataclasses.fields(slot):
                    print(f"      {sub_field.name}: {getattr(slot, sub_field.name)}")
        else:
            print(f"  {field.name}: {value}")


def dry_run(cfg: StorageConfig) -> None:
    """Report what provisioning would do for each slot without touching any image."""
    log("INFO", "=== Configuration ===")
    show_config(cfg)
    log("INFO", "=== Slots ===")
    for slot in cfg.slots:
        label = f"{slot.description.capitalize():<6}"
        if slot.device is not None:
            if is_block_device(slot.device):
                log("SUCCESS", f"{label} device {slot.device} (found)")
            else:
                log("ERROR", f"{label} device {slot.device} (NOT FOUND)")
            continue
        directory = slot.directory
        if not directory.is_dir():
            log("INFO", f"{label} skipped ({directory} does not exist)")
            continue
        traits = probe(directory)
        available = get_available_disk_space(directory)
        size = resolve_size(slot.size, lambda: available)
        image = slot.base.with_name(f"{slot.base.name}.{fmt_to_ext(cfg.disk_fmt)}")
        state = "exists" if is_nonempty_file(image) else "will be created"
        log(
            "INFO",
            f"{label} {image} ({state}), size {format_bytes(size)}, {traits.fs_type} filesystem, "
            f"{format_bytes(available)} free",
        )
    overlay = OverlayManager(cfg.storage_dir, disk_name=cfg.disk_name, force=cfg.use_overlay)
    log("INFO", f"Overlay: {overlay.state().value} ({overlay.overlay_path})")
    log("INFO", "=== Dry-run complete (no disks changed) ===")


def write_manifest(result: ProvisionResult, path: Path) -> None:
    ensure_directory(path.parent)
    path.write_text(yaml.safe_dump(result.to_manifest(), sort_keys=False))
    log("DEBUG", f"Wrote disk manifest to {path}")


def render_args(result: ProvisionResult) -> str:
    return shlex.join(result.to_args())


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Provision VM disk images and print the launcher arguments")
    parser.add_argument("--show-config", action="store_true", help="Show resolved storage configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate config and storage, then exit")
    parser.add_argument(
        "--merge-overlay",
        action="store_true",
        help="Commit the overlay into the base disk and remove it (machine must be stopped)",
    )
    parser.add_argument("--clean-overlay", action="store_true", help="Discard the overlay disk and exit")
    parser.add_argument("--manifest", type=Path, metavar="FILE", help="Write a YAML manifest of the attached disks")
    parser.add_argument("--output", type=Path, metavar="FILE", help="Write launcher arguments to FILE instead of stdout")
    args = parser.parse_args(argv)

    try:
        cfg = parse_env()
    except DiskError as exc:
        log("ERROR", str(exc))
        return exc.exit_code

    if args.show_config:
        show_config(cfg)
        return 0

    try:
        if args.dry_run:
            dry_run(cfg)
            return 0

        if args.merge_overlay or args.clean_overlay:
            overlay = OverlayManager(cfg.storage_dir, disk_name=cfg.disk_name, force=cfg.use_overlay)
            if args.merge_overlay:
                overlay.merge_overlay()
            else:
                if not overlay.clean_overlay():
                    log("INFO", "No overlay disk to clean")
            return 0

        result = StorageProvisioner(cfg, StatusBroadcaster()).provision()
        if args.manifest:
            write_manifest(result, args.manifest)
        rendered = render_args(result)
        if args.output:
            args.output.write_text(rendered + "\n")
        else:
            print(rendered, flush=True)
        return 0
    except DiskError as exc:
        log("ERROR", str(exc))
        return exc.exit_code
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1

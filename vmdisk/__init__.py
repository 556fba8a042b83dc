"""vmdisk package."""

__all__ = [
    "capacity",
    "cli",
    "config",
    "constants",
    "devices",
    "exceptions",
    "filesystem",
    "lifecycle",
    "models",
    "overlay",
    "provision",
    "qemu_img",
    "status",
    "utils",
]

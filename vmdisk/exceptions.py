"""Custom exceptions for vmdisk.

Every error carries the process exit status the CLI reports for it.
"""

from __future__ import annotations

from typing import Optional


class DiskError(RuntimeError):
    """Raised on unrecoverable configuration or provisioning errors."""

    exit_code = 1

    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(DiskError):
    exit_code = 78


class InvalidSize(ConfigError):
    exit_code = 73


class InvalidBusType(ConfigError):
    exit_code = 80


class DeviceNotFound(ConfigError):
    exit_code = 55


class InsufficientSpace(DiskError):
    exit_code = 76


class CreationFailed(DiskError):
    exit_code = 77


class ShrinkUnsupported(DiskError):
    """Permanent: the operator has to raise the configured size."""

    exit_code = 71


class ResizeFailed(DiskError):
    exit_code = 75


class ConversionFailed(DiskError):
    exit_code = 79


class DestExists(ConversionFailed):
    pass


class SourceMissing(ConversionFailed):
    pass


class OverlayError(DiskError):
    exit_code = 1


class NoBaseDisk(OverlayError):
    pass


class OverlayCreationFailed(OverlayError):
    pass


class OverlayUnrecoverable(OverlayError):
    pass


class MergeFailed(OverlayError):
    pass

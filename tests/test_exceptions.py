"""Tests for vmdisk.exceptions module."""

from __future__ import annotations

import pytest

from vmdisk import exceptions as exc


@pytest.mark.parametrize(
    "error,code",
    [
        (exc.ConfigError, 78),
        (exc.InvalidSize, 73),
        (exc.InvalidBusType, 80),
        (exc.DeviceNotFound, 55),
        (exc.InsufficientSpace, 76),
        (exc.CreationFailed, 77),
        (exc.ShrinkUnsupported, 71),
        (exc.ResizeFailed, 75),
        (exc.ConversionFailed, 79),
        (exc.DestExists, 79),
        (exc.SourceMissing, 79),
        (exc.NoBaseDisk, 1),
        (exc.MergeFailed, 1),
    ],
)
def test_exit_codes(error, code):
    assert error("x").exit_code == code


def test_override_exit_code():
    err = exc.CreationFailed("qcow2 create failed", exit_code=70)
    assert err.exit_code == 70
    assert exc.CreationFailed("again").exit_code == 77


def test_hierarchy():
    assert issubclass(exc.InvalidSize, exc.ConfigError)
    assert issubclass(exc.OverlayUnrecoverable, exc.OverlayError)
    assert issubclass(exc.DiskError, RuntimeError)

"""Shared test fixtures."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from vmdisk.models import FsTraits, SlotConfig, StorageConfig


def completed(cmd=None, returncode=0, stdout="", stderr=""):
    """Build a CompletedProcess as returned by subprocess.run(text=True)."""
    return subprocess.CompletedProcess(cmd or [], returncode, stdout=stdout, stderr=stderr)


def make_sparse(path: Path, size: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.truncate(size)
    return path


@pytest.fixture
def ext4_traits() -> FsTraits:
    return FsTraits(fs_type="ext2/ext3", supports_cow=False, supports_direct_io=True, is_layered=False)


@pytest.fixture
def btrfs_traits() -> FsTraits:
    return FsTraits(fs_type="btrfs", supports_cow=True, supports_direct_io=True, is_layered=False)


@pytest.fixture
def storage_dir(tmp_path) -> Path:
    path = tmp_path / "storage"
    path.mkdir()
    return path


@pytest.fixture
def storage_config(storage_dir, tmp_path) -> StorageConfig:
    """Return a StorageConfig with a primary slot in tmp storage and one unmounted secondary slot."""
    return StorageConfig(
        storage_dir=storage_dir,
        disk_name="data",
        disk_fmt="raw",
        disk_type="scsi",
        disk_io="native",
        disk_cache="none",
        disk_discard="on",
        disk_rotation="1",
        disk_flags="",
        allocate=False,
        use_overlay=False,
        slots=(
            SlotConfig(
                index=1,
                base=storage_dir / "data",
                size="200M",
                description="disk",
                boot_index=3,
                address="0xa",
            ),
            SlotConfig(
                index=2,
                base=tmp_path / "storage2" / "data2",
                size="1G",
                description="disk2",
                boot_index=4,
                address="0xb",
            ),
        ),
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_env() reads, used to ensure a clean slate.
_PARSE_ENV_VARS = [
    "STORAGE",
    "DISK_NAME",
    "DISK_SIZE",
    "DISK2_SIZE",
    "DISK3_SIZE",
    "DISK4_SIZE",
    "DISK5_SIZE",
    "DISK6_SIZE",
    "DISK_FMT",
    "DISK_TYPE",
    "DISK_IO",
    "DISK_CACHE",
    "DISK_DISCARD",
    "DISK_ROTATION",
    "DISK_FLAGS",
    "ALLOCATE",
    "USE_OVERLAY",
    "DEVICE",
    "DEVICE2",
    "DEVICE3",
    "DEVICE4",
    "DEVICE5",
    "DEVICE6",
]


@pytest.fixture
def clean_env(monkeypatch, storage_dir):
    """Clear all environment variables that parse_env() reads and point STORAGE at tmp storage."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("STORAGE", str(storage_dir))
    # Host block devices such as /disk1 must not leak into tests.
    monkeypatch.setattr("vmdisk.config.is_block_device", lambda path: False)

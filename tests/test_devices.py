"""Tests for vmdisk.devices module."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import completed

from vmdisk import devices
from vmdisk.exceptions import DeviceNotFound, InvalidBusType
from vmdisk.models import DeviceSlot, SectorGeometry

SOURCE = Path("/storage/data.img")


def _attach(bus, **kwargs):
    return devices.attach(SOURCE, bus, 3, "0xa", "raw", "native", "none", **kwargs)


class TestNormalizeBus:
    def test_aliases(self):
        assert devices.normalize_bus("virtio-blk") == "blk"
        assert devices.normalize_bus("VIRTIO-SCSI") == "scsi"
        assert devices.normalize_bus(" nvme ") == "nvme"

    def test_unknown(self):
        with pytest.raises(InvalidBusType) as exc:
            devices.normalize_bus("floppy")
        assert exc.value.exit_code == 80


class TestAttach:
    def test_none_bus(self):
        assert _attach("none") is None

    def test_drive_options(self):
        desc = _attach("scsi")
        assert desc.drive_id == "data3"
        assert desc.drive == (
            "file=/storage/data.img,id=data3,format=raw,cache=none,aio=native,discard=on,detect-zeroes=on,if=none"
        )

    def test_auto_has_no_device(self):
        desc = _attach("auto")
        assert desc.devices == ()
        assert "if=none" not in desc.drive
        assert desc.to_args() == ["-drive", desc.drive]

    def test_scsi(self):
        desc = _attach("virtio-scsi", rotation="0")
        assert desc.bus == "scsi"
        assert desc.devices == (
            "virtio-scsi-pci,id=data3b,bus=pcie.0,addr=0xa,iothread=io2",
            "scsi-hd,drive=data3,bus=data3b.0,channel=0,scsi-id=0,lun=0,rotation_rate=0,bootindex=3",
        )

    def test_blk(self):
        desc = _attach("blk")
        assert desc.devices == ("virtio-blk-pci,drive=data3,bus=pcie.0,addr=0xa,iothread=io2,bootindex=3",)

    def test_nvme_default_serial(self):
        desc = _attach("nvme")
        assert desc.devices == ("nvme,drive=data3,bootindex=3,serial=deadbeaf3",)

    def test_nvme_custom_serial(self):
        desc = _attach("nvme", serial="abc123")
        assert desc.devices == ("nvme,drive=data3,bootindex=3,serial=abc123",)

    @pytest.mark.parametrize("bus", ["ide", "sata"])
    def test_ahci(self, bus):
        desc = _attach(bus)
        assert desc.devices == (
            "ich9-ahci,id=ahci3,addr=0xa",
            "ide-hd,drive=data3,bus=ahci3.0,rotation_rate=1,bootindex=3",
        )

    def test_usb_with_serial_and_geometry(self):
        desc = _attach("usb", serial="USB1", geometry=SectorGeometry(512, 4096))
        assert desc.devices == (
            "usb-storage,drive=data3,bootindex=3,serial=USB1,logical_block_size=512,physical_block_size=4096",
        )

    def test_to_args(self):
        desc = _attach("scsi")
        args = desc.to_args()
        assert args[0] == "-drive"
        assert args[2::2] == ["-device", "-device"]

    def test_attach_slot(self):
        slot = DeviceSlot(index=4, address="0xb", bus="blk")
        desc = devices.attach_slot(SOURCE, slot, "qcow2", "threads", "writeback", discard="off")
        assert desc.drive_id == "data4"
        assert "format=qcow2" in desc.drive
        assert "aio=threads" in desc.drive
        assert "cache=writeback" in desc.drive
        assert "discard=off" in desc.drive
        assert "addr=0xb" in desc.devices[0]


class TestSectorProbe:
    def test_probe(self):
        outputs = {"--getss": "512\n", "--getpbsz": "4096\n"}

        def fake_run(cmd, **kwargs):
            return completed(cmd, stdout=outputs[cmd[1]])

        with patch("vmdisk.devices.run", side_effect=fake_run):
            assert devices.probe_sector_size(Path("/dev/sdb")) == SectorGeometry(512, 4096)

    def test_queries_run_checked(self):
        with patch("vmdisk.devices.run", return_value=completed(stdout="512\n")) as mock_run:
            devices.probe_sector_size(Path("/dev/sdb"))
        assert mock_run.call_args_list[0][0][0] == ["blockdev", "--getss", "/dev/sdb"]
        assert mock_run.call_args_list[0][1] == {"check": True, "capture_output": True}

    def test_probe_failure(self):
        err = subprocess.CalledProcessError(1, ["blockdev"])
        with patch("vmdisk.devices.run", side_effect=err):
            assert devices.probe_sector_size(Path("/dev/sdb")) is None


class TestAttachBlockDevice:
    def test_missing_device(self):
        with patch("vmdisk.devices.is_block_device", return_value=False):
            with pytest.raises(DeviceNotFound) as exc:
                devices.attach_block_device(Path("/dev/disk1"), "scsi", 3, "0xa", "native", "none")
        assert exc.value.exit_code == 55

    def test_standard_sectors_omit_geometry(self):
        with patch("vmdisk.devices.is_block_device", return_value=True), patch(
            "vmdisk.devices.probe_sector_size", return_value=SectorGeometry(512, 512)
        ):
            desc = devices.attach_block_device(Path("/dev/disk1"), "scsi", 3, "0xa", "native", "none")
        assert desc.fmt == "raw"
        assert desc.source == "/dev/disk1"
        assert not any("block_size" in d for d in desc.devices)

    def test_advanced_format_adds_geometry(self):
        with patch("vmdisk.devices.is_block_device", return_value=True), patch(
            "vmdisk.devices.probe_sector_size", return_value=SectorGeometry(512, 4096)
        ):
            desc = devices.attach_block_device(Path("/dev/disk1"), "scsi", 3, "0xa", "native", "none")
        assert "logical_block_size=512,physical_block_size=4096" in desc.devices[-1]

    def test_probe_failure_warns(self):
        with patch("vmdisk.devices.is_block_device", return_value=True), patch(
            "vmdisk.devices.probe_sector_size", return_value=None
        ), patch("vmdisk.devices.log") as mock_log:
            desc = devices.attach_block_device(Path("/dev/disk1"), "blk", 3, "0xa", "native", "none")
        mock_log.assert_called_once_with("WARN", "Failed to determine the sector size for /dev/disk1")
        assert desc is not None


def test_iothread_args():
    assert devices.iothread_args() == ["-object", "iothread,id=io2"]

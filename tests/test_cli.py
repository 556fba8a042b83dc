"""Tests for vmdisk.cli module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import yaml

from vmdisk import cli
from vmdisk.devices import attach, iothread_args
from vmdisk.exceptions import InvalidSize, MergeFailed, ShrinkUnsupported
from vmdisk.models import ProvisionResult


def _result(storage_dir):
    descriptor = attach(storage_dir / "data.img", "scsi", 3, "0xa", "raw", "native", "none")
    return ProvisionResult(
        descriptors=[descriptor],
        images={1: storage_dir / "data.img"},
        trailing_args=iothread_args(),
    )


def _provisioner(result):
    instance = MagicMock()
    instance.provision.return_value = result
    return MagicMock(return_value=instance)


class TestShowConfig:
    def test_prints_fields_and_slots(self, storage_config, capsys):
        cli.show_config(storage_config)
        out = capsys.readouterr().out
        assert "disk_type: scsi" in out
        assert "slots:" in out
        assert "address: 0xb" in out

    def test_flag(self, clean_env, capsys):
        assert cli.main(["--show-config"]) == 0
        assert "disk_name: data" in capsys.readouterr().out


class TestMain:
    def test_config_error_exit_code(self):
        with patch("vmdisk.cli.parse_env", side_effect=InvalidSize("bad")), patch("vmdisk.cli.log") as mock_log:
            assert cli.main([]) == 73
        mock_log.assert_called_once_with("ERROR", "bad")

    def test_prints_launcher_args(self, clean_env, storage_dir, capsys):
        with patch("vmdisk.cli.StorageProvisioner", _provisioner(_result(storage_dir))):
            assert cli.main([]) == 0
        out = capsys.readouterr().out.strip()
        assert "\n" not in out
        assert out.startswith("-drive file=")
        assert out.endswith("-object iothread,id=io2")

    def test_stdout_is_only_launcher_args(self, clean_env, mock_env, storage_dir, tmp_path, ext4_traits, capsys):
        mock_env(DISK_SIZE="200M")
        with patch("vmdisk.status.STATUS_FILE", tmp_path / "status.txt"), patch(
            "vmdisk.provision.probe", return_value=ext4_traits
        ), patch("vmdisk.lifecycle.probe", return_value=ext4_traits):
            assert cli.main([]) == 0
        captured = capsys.readouterr()
        lines = [line for line in captured.out.splitlines() if line.strip()]
        assert len(lines) == 1
        assert lines[0].startswith("-drive file=")
        assert "\033[" not in lines[0]
        assert "[INFO]" in captured.err
        assert (storage_dir / "data.img").stat().st_size == 200 * 1024 * 1024

    def test_output_and_manifest(self, clean_env, storage_dir, tmp_path, capsys):
        output = tmp_path / "args.txt"
        manifest = tmp_path / "out" / "disks.yaml"
        with patch("vmdisk.cli.StorageProvisioner", _provisioner(_result(storage_dir))):
            assert cli.main(["--output", str(output), "--manifest", str(manifest)]) == 0
        assert "-drive" not in capsys.readouterr().out
        assert output.read_text().startswith("-drive ")
        data = yaml.safe_load(manifest.read_text())
        assert data["degraded"] is False
        assert data["disks"][0]["id"] == "data3"
        assert data["disks"][0]["file"] == str(storage_dir / "data.img")
        assert data["disks"][0]["bootindex"] == 3

    def test_provision_error_exit_code(self, clean_env):
        provisioner = MagicMock()
        provisioner.return_value.provision.side_effect = ShrinkUnsupported("no")
        with patch("vmdisk.cli.StorageProvisioner", provisioner):
            assert cli.main([]) == 71

    def test_unexpected_error(self, clean_env):
        provisioner = MagicMock()
        provisioner.return_value.provision.side_effect = ValueError("boom")
        with patch("vmdisk.cli.StorageProvisioner", provisioner), patch("vmdisk.cli.log") as mock_log:
            assert cli.main([]) == 1
        assert "Unexpected error: boom" in mock_log.call_args_list[0][0][1]


class TestMaintenance:
    def test_merge_overlay(self, clean_env):
        with patch("vmdisk.cli.OverlayManager") as mock_mgr, patch("vmdisk.cli.StorageProvisioner") as mock_prov:
            assert cli.main(["--merge-overlay"]) == 0
        mock_mgr.return_value.merge_overlay.assert_called_once_with()
        mock_prov.assert_not_called()

    def test_merge_failure(self, clean_env):
        with patch("vmdisk.cli.OverlayManager") as mock_mgr:
            mock_mgr.return_value.merge_overlay.side_effect = MergeFailed("commit failed")
            assert cli.main(["--merge-overlay"]) == 1

    def test_clean_overlay(self, clean_env, storage_dir):
        overlay = storage_dir / "data-overlay.qcow2"
        overlay.write_bytes(b"QFI\xfb")
        assert cli.main(["--clean-overlay"]) == 0
        assert not overlay.exists()


class TestDryRun:
    def test_reports_without_creating(self, clean_env, storage_dir, ext4_traits):
        with patch("vmdisk.cli.probe", return_value=ext4_traits), patch("vmdisk.cli.log") as mock_log:
            assert cli.main(["--dry-run"]) == 0
        messages = [c[0][1] for c in mock_log.call_args_list]
        assert any("will be created" in m for m in messages)
        assert any("Overlay: absent" in m for m in messages)
        assert not (storage_dir / "data.img").exists()

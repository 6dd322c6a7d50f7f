"""
Tests for configuration, logging setup and the command-line interface
"""
import logging
import pytest
from datetime import datetime
from unittest.mock import patch

from kvm_backup.config import BackupSettings, FileBackupSettings
from kvm_backup.logging_config import LogOperation, daily_log_file, format_duration, get_logger, setup_logging
from kvm_backup.models import BackupRunResult, FileBackupResult, VMBackupResult, VMBackupStatus


class TestConfigurationLoading:
    """Test configuration loading and validation"""

    def test_default_config_values(self, monkeypatch):
        """Test default configuration values"""
        for name in ("KVM_BACKUP_RETENTION_COUNT", "KVM_BACKUP_SNAPSHOT_PREFIX",
                     "KVM_BACKUP_ENCRYPTION_PASSPHRASE", "KVM_BACKUP_DOMAINS"):
            monkeypatch.delenv(name, raising=False)

        settings = BackupSettings()

        assert settings.retention_count == 3
        assert settings.snapshot_prefix == "snaptemp-"
        assert settings.domains == []
        assert settings.encryption_enabled is False
        assert settings.log_dir.endswith("logs")

    def test_config_environment_override(self, monkeypatch):
        """Test configuration override from environment"""
        monkeypatch.setenv("KVM_BACKUP_RETENTION_COUNT", "5")
        monkeypatch.setenv("KVM_BACKUP_DOMAINS", "web, db ,")
        monkeypatch.setenv("KVM_BACKUP_ENCRYPTION_PASSPHRASE", "secret")
        monkeypatch.setenv("KVM_BACKUP_BLOCKJOB_POLL_INTERVAL", "0.5")

        settings = BackupSettings()

        assert settings.retention_count == 5
        assert settings.domains == ["web", "db"]
        assert settings.encryption_enabled is True
        assert settings.blockjob_poll_interval == 0.5

    def test_file_backup_environment_override(self, monkeypatch):
        monkeypatch.setenv("FS_BACKUP_EXCLUDE", ".cache,Downloads")
        monkeypatch.setenv("FS_BACKUP_BACKUP_DIR", "/mnt/nfs/backup")

        settings = FileBackupSettings()

        assert settings.exclude == [".cache", "Downloads"]
        assert settings.backup_dir == "/mnt/nfs/backup"


class TestLogging:

    def test_daily_log_file_name(self, tmp_path):
        path = daily_log_file(str(tmp_path), "qemu-backup", datetime(2024, 2, 29))

        assert path == tmp_path / "qemu-backup.2024-02-29.log"

    def test_log_file_is_appended(self, tmp_path):
        log_file = setup_logging(log_dir=str(tmp_path), log_name="qemu-backup")
        get_logger("kvm_backup.test").info("first run", vm_name="web")

        setup_logging(log_dir=str(tmp_path), log_name="qemu-backup")
        get_logger("kvm_backup.test").info("second run")

        for handler in logging.getLogger().handlers:
            handler.flush()
        content = log_file.read_text()
        assert "first run" in content and "vm_name=web" in content
        assert "second run" in content

        logging.getLogger().handlers.clear()

    def test_format_duration(self):
        assert format_duration(3725.4) == "1h:2m:5s"
        assert format_duration(0.2) == "0h:0m:0s"

    def test_log_operation_records_duration(self):
        with LogOperation(get_logger("kvm_backup.test"), "noop") as operation:
            pass

        assert operation.duration_seconds >= 0


class TestModels:

    def test_error_count_counts_failed_vms(self):
        result = BackupRunResult(start_time=datetime.now(), vm_results=[
            VMBackupResult("a"),
            VMBackupResult("b", status=VMBackupStatus.SKIPPED),
            VMBackupResult("c", status=VMBackupStatus.FAILED),
        ])

        assert result.error_count == 1

    def test_fail_accumulates_messages(self):
        vm_result = VMBackupResult("a")
        vm_result.fail("copy of vda failed")
        vm_result.fail("copy of vdb failed")

        assert vm_result.failed
        assert vm_result.error == "copy of vda failed; copy of vdb failed"


class TestCLI:

    @pytest.fixture
    def runner(self):
        pytest.importorskip("libvirt")
        from typer.testing import CliRunner
        return CliRunner()

    def test_config_command(self, runner):
        from kvm_backup.cli import app

        result = runner.invoke(app, ["config"])

        assert result.exit_code == 0
        assert "Retention Count" in result.output

    def test_config_command_masks_passphrase(self, runner):
        from kvm_backup.cli import app

        with patch("kvm_backup.cli.settings", BackupSettings(encryption_passphrase="hunter2")):
            result = runner.invoke(app, ["config"])

        assert result.exit_code == 0
        assert "hunter2" not in result.output
        assert "********" in result.output

    def test_backup_vms_exit_code_is_error_count(self, runner, tmp_path):
        from kvm_backup.cli import app

        run_result = BackupRunResult(start_time=datetime.now(), end_time=datetime.now(), vm_results=[
            VMBackupResult("a", status=VMBackupStatus.FAILED, error="boom"),
            VMBackupResult("b", status=VMBackupStatus.FAILED, error="boom"),
            VMBackupResult("c"),
        ])

        with patch("kvm_backup.cli.VMBackupManager") as mock_manager:
            mock_manager.return_value.run.return_value = run_result
            result = runner.invoke(app, ["backup-vms", "--root", str(tmp_path), "--keep", "4"])

        assert result.exit_code == 2
        config = mock_manager.call_args[0][0]
        assert config.backup_root == str(tmp_path)
        assert config.retention_count == 4
        logging.getLogger().handlers.clear()

    def test_backup_files_exit_code_is_rsync_status(self, runner, tmp_path):
        from kvm_backup.cli import app

        with patch("kvm_backup.cli.IncrementalFileBackup") as mock_backup:
            mock_backup.return_value.run.return_value = FileBackupResult(
                destination=str(tmp_path / "20240101_000000"), link_dest=None, exit_code=23)
            result = runner.invoke(app, ["backup-files", "--dest", str(tmp_path), "--exclude", "tmp"])

        assert result.exit_code == 23
        config = mock_backup.call_args[0][0]
        assert config.exclude == ["tmp"]
        logging.getLogger().handlers.clear()

    def test_prune_command(self, runner, tmp_path):
        from kvm_backup.cli import app

        folder = tmp_path / "web"
        folder.mkdir()
        for date in ["2024-01-01", "2024-01-02"]:
            (folder / f"web.qcow2-{date}.000000.gz").write_bytes(b"x")
            (folder / f"web-{date}.000000.xml").write_text("<domain/>")

        result = runner.invoke(app, ["prune", "web", "--root", str(tmp_path), "--keep", "1"])

        assert result.exit_code == 0
        assert sorted(p.name for p in folder.iterdir()) == [
            "web-2024-01-02.000000.xml",
            "web.qcow2-2024-01-02.000000.gz",
        ]
        logging.getLogger().handlers.clear()

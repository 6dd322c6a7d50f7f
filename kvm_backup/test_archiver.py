"""
Tests for disk image archiving
"""
import gzip
import shutil
import pytest
from unittest.mock import MagicMock, Mock, patch

from kvm_backup.archiver import ArchiveError, DiskArchiver
from kvm_backup.models import ArchiveStats


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "vm.qcow2"
    path.write_bytes(b"qcow2 data " * 4096)
    return path


class TestArchivePath:

    def test_plain_archive_name(self):
        archiver = DiskArchiver()
        path = archiver.archive_path("/images/vm.qcow2", "/backup/vm", "2024-01-02.030405")

        assert str(path) == "/backup/vm/vm.qcow2-2024-01-02.030405.gz"

    def test_encrypted_archive_name(self):
        archiver = DiskArchiver(passphrase="secret")
        path = archiver.archive_path("/images/vm.qcow2", "/backup/vm", "2024-01-02.030405")

        assert str(path) == "/backup/vm/vm.qcow2-2024-01-02.030405.gz.gpg"

    def test_description_hides_passphrase(self):
        archiver = DiskArchiver(passphrase="secret")
        command = archiver.describe("/images/vm.qcow2", archiver.archive_path("/images/vm.qcow2", "/b", "s"), 7)

        assert "secret" not in command
        assert "--passphrase-fd 7" in command
        assert "| gpg" in command


class TestArchive:

    @pytest.mark.skipif(shutil.which("gzip") is None, reason="gzip not installed")
    def test_gzip_archive(self, image, tmp_path):
        """A real gzip run produces a readable archive and statistics"""
        folder = tmp_path / "backup"
        folder.mkdir()

        stats = DiskArchiver().archive(str(image), str(folder), "2024-01-02.030405")

        with gzip.open(stats.archive_path, "rb") as f:
            assert f.read() == image.read_bytes()
        assert stats.source_bytes == image.stat().st_size
        assert 0 < stats.archive_bytes < stats.source_bytes
        assert stats.compression_percent > 0
        assert not stats.encrypted

    def test_gzip_failure_raises_and_removes_partial_file(self, image, tmp_path):
        with patch("kvm_backup.archiver.subprocess.run") as mock_run:
            mock_run.return_value = Mock(returncode=1, stderr=b"gzip: stdout: No space left on device")
            with pytest.raises(ArchiveError) as excinfo:
                DiskArchiver().archive(str(image), str(tmp_path), "2024-01-02.030405")

        assert excinfo.value.exit_code == 1
        assert "No space left" in str(excinfo.value)
        assert not (tmp_path / "vm.qcow2-2024-01-02.030405.gz").exists()

    def test_encrypted_pipeline_passes_passphrase_through_fd(self, image, tmp_path):
        """gpg reads the passphrase from an inherited pipe, never from argv"""
        output = tmp_path / "vm.qcow2-2024-01-02.030405.gz.gpg"
        gzip_proc = MagicMock()
        gzip_proc.stderr.read.return_value = b""
        gzip_proc.wait.return_value = 0
        gpg_proc = MagicMock(returncode=0)

        def popen(args, **kwargs):
            if args[0] == "gpg":
                output.write_bytes(b"encrypted")
                gpg_proc.communicate.return_value = (None, b"")
                return gpg_proc
            return gzip_proc

        with patch("kvm_backup.archiver.subprocess.Popen", side_effect=popen) as mock_popen:
            stats = DiskArchiver(passphrase="secret").archive(str(image), str(tmp_path), "2024-01-02.030405")

        gpg_args, gpg_kwargs = mock_popen.call_args_list[1]
        argv = gpg_args[0]
        assert "secret" not in argv
        fd = int(argv[argv.index("--passphrase-fd") + 1])
        assert gpg_kwargs["pass_fds"] == (fd,)
        assert gpg_kwargs["stdin"] is gzip_proc.stdout
        assert stats.encrypted
        assert stats.archive_path == str(output)

    def test_gpg_failure_raises(self, image, tmp_path):
        gzip_proc = MagicMock()
        gzip_proc.stderr.read.return_value = b""
        gzip_proc.wait.return_value = 0
        gpg_proc = MagicMock(returncode=2)
        gpg_proc.communicate.return_value = (None, b"gpg: encryption failed")

        with patch("kvm_backup.archiver.subprocess.Popen", side_effect=[gzip_proc, gpg_proc]):
            with pytest.raises(ArchiveError) as excinfo:
                DiskArchiver(passphrase="secret").archive(str(image), str(tmp_path), "2024-01-02.030405")

        assert excinfo.value.exit_code == 2
        assert "secret" not in excinfo.value.command

    def test_missing_gpg_reaps_gzip(self, image, tmp_path):
        """gzip is killed and waited when gpg cannot be started"""
        gzip_proc = MagicMock()

        with patch("kvm_backup.archiver.subprocess.Popen",
                   side_effect=[gzip_proc, FileNotFoundError("gpg")]):
            with pytest.raises(FileNotFoundError):
                DiskArchiver(passphrase="secret").archive(str(image), str(tmp_path), "2024-01-02.030405")

        gzip_proc.kill.assert_called_once()
        gzip_proc.wait.assert_called_once()
        gzip_proc.stdout.close.assert_called_once()
        assert not (tmp_path / "vm.qcow2-2024-01-02.030405.gz.gpg").exists()


class TestArchiveStats:

    def test_rates_and_ratio(self):
        stats = ArchiveStats("/i", "/o", source_bytes=100 * 1024 * 1024,
                             archive_bytes=25 * 1024 * 1024, seconds=10.2)

        assert stats.source_mb == 100
        assert stats.archive_mb == 25
        assert stats.kb_per_second == 10240
        assert stats.compression_percent == 75

    def test_sub_second_copy_does_not_divide_by_zero(self):
        stats = ArchiveStats("/i", "/o", source_bytes=2048, archive_bytes=0, seconds=0.1)

        assert stats.kb_per_second == 2

    def test_empty_source(self):
        assert ArchiveStats("/i", "/o", 0, 20, 1.0).compression_percent == 0

"""
Disk image archiving: gzip, optionally piped through gpg symmetric encryption
"""
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import List, Optional

from .models import ArchiveStats
from .logging_config import get_logger, format_duration


class ArchiveError(Exception):
    """A stage of the compression pipeline exited with a non-zero status"""

    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"'{command}' exited with status {exit_code}: {stderr.strip()}")


class DiskArchiver:
    """Copies a disk image into a compressed (and optionally encrypted) archive"""

    def __init__(self, passphrase: str = "", gzip_command: str = "gzip", gpg_command: str = "gpg"):
        self.passphrase = passphrase
        self.gzip_command = gzip_command
        self.gpg_command = gpg_command
        self.logger = get_logger("kvm_backup.archiver")

    @property
    def encrypt(self) -> bool:
        return bool(self.passphrase)

    def archive_path(self, image: str, folder: str, stamp: str) -> Path:
        """<folder>/<image basename>-<stamp>.gz[.gpg]"""
        path = Path(folder) / f"{Path(image).name}-{stamp}.gz"
        if self.encrypt:
            path = path.with_name(path.name + ".gpg")
        return path

    def _gzip_args(self) -> List[str]:
        return [self.gzip_command, "--to-stdout"]

    def _gpg_args(self, output: Path, passphrase_fd) -> List[str]:
        return [self.gpg_command, "--batch", "--yes", "--pinentry-mode", "loopback",
                "-o", str(output), "--passphrase-fd", str(passphrase_fd), "-c"]

    def describe(self, image: str, output: Path, passphrase_fd: Optional[int] = None) -> str:
        """Shell form of the pipeline, without the passphrase"""
        gzip_cmd = f"{shlex.join(self._gzip_args())} < {shlex.quote(image)}"
        if not self.encrypt:
            return f"{gzip_cmd} > {shlex.quote(str(output))}"
        fd = "N" if passphrase_fd is None else passphrase_fd
        return f"{gzip_cmd} | {shlex.join(self._gpg_args(output, fd))}"

    def archive(self, image: str, folder: str, stamp: str) -> ArchiveStats:
        """Compress one disk image into folder and return its statistics"""
        output = self.archive_path(image, folder, stamp)
        self.logger.info(f"Copying {image} to {folder}")

        start = time.monotonic()
        try:
            if self.encrypt:
                self._gzip_gpg(image, output)
            else:
                self._gzip(image, output)
        except (ArchiveError, OSError):
            output.unlink(missing_ok=True)
            raise
        seconds = time.monotonic() - start

        stats = ArchiveStats(
            source_path=image,
            archive_path=str(output),
            source_bytes=os.stat(image).st_size,
            archive_bytes=os.stat(output).st_size,
            seconds=seconds,
            encrypted=self.encrypt
        )

        self.logger.info(f"Duration: {format_duration(seconds)}")
        self.logger.info(f"Source MB: {stats.source_mb:,}")
        self.logger.info(f"kB/Second: {stats.kb_per_second:,}")
        self.logger.info(f"Destination MB: {stats.archive_mb:,}")
        self.logger.info(f"Compression: {stats.compression_percent}%")
        return stats

    def _gzip(self, image: str, output: Path) -> None:
        command = self.describe(image, output)
        self.logger.info(f"Command: {command}")

        with open(image, 'rb') as src, open(output, 'wb') as dst:
            result = subprocess.run(self._gzip_args(), stdin=src, stdout=dst, stderr=subprocess.PIPE)

        if result.returncode != 0:
            raise ArchiveError(command, result.returncode, result.stderr.decode(errors='replace'))

    def _gzip_gpg(self, image: str, output: Path) -> None:
        # The passphrase travels through an anonymous pipe so it never touches disk or argv
        read_fd, write_fd = os.pipe()
        try:
            os.write(write_fd, (self.passphrase + "\n").encode())
            os.close(write_fd)
            write_fd = None

            command = self.describe(image, output, read_fd)
            self.logger.info(f"Command: {command}")

            with open(image, 'rb') as src:
                gzip_proc = subprocess.Popen(self._gzip_args(), stdin=src,
                                             stdout=subprocess.PIPE, stderr=subprocess.PIPE)
                try:
                    gpg_proc = subprocess.Popen(self._gpg_args(output, read_fd), stdin=gzip_proc.stdout,
                                                stdout=subprocess.DEVNULL, stderr=subprocess.PIPE,
                                                pass_fds=(read_fd,))
                except OSError:
                    # Nothing will drain gzip's output, so do not leave it blocked on the pipe
                    gzip_proc.kill()
                    gzip_proc.stdout.close()
                    gzip_proc.stderr.close()
                    gzip_proc.wait()
                    raise
                # gpg owns the read end of the pipe now
                gzip_proc.stdout.close()
                _, gpg_err = gpg_proc.communicate()
                gzip_err = gzip_proc.stderr.read()
                gzip_proc.stderr.close()
                gzip_code = gzip_proc.wait()
        finally:
            if write_fd is not None:
                os.close(write_fd)
            os.close(read_fd)

        if gzip_code != 0:
            raise ArchiveError(command, gzip_code, gzip_err.decode(errors='replace'))
        if gpg_proc.returncode != 0:
            raise ArchiveError(command, gpg_proc.returncode, gpg_err.decode(errors='replace'))

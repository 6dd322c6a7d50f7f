"""
Incremental filesystem backup: rsync with hard links against the previous snapshot
"""
import os
import shlex
import subprocess
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .config import FileBackupSettings
from .models import FileBackupResult
from .logging_config import get_logger, LogOperation

# Name of each snapshot directory
SNAPSHOT_FORMAT = "%Y%m%d_%H%M%S"


class IncrementalFileBackup:
    """Time-machine style backups: <backup_dir>/<timestamp>/ plus a `latest` symlink"""

    def __init__(self, config: FileBackupSettings):
        self.config = config
        self.logger = get_logger("kvm_backup.fs_backup")

    @property
    def backup_dir(self) -> Path:
        # Absolute so `latest` never holds a target relative to the working directory
        return Path(os.path.abspath(self.config.backup_dir))

    @property
    def latest_link(self) -> Path:
        return self.backup_dir / self.config.latest_name

    def destination(self, now: Optional[datetime] = None) -> Path:
        return self.backup_dir / (now or datetime.now()).strftime(SNAPSHOT_FORMAT)

    def previous_snapshot(self) -> Optional[Path]:
        """Target of `latest`, when it still points at a directory"""
        link = self.latest_link
        if not link.is_dir():
            return None
        if link.is_symlink():
            return link.parent / os.readlink(link)
        return link

    def build_command(self, destination: Path, link_dest: Optional[Path]) -> List[str]:
        source = str(self.config.source_dir).rstrip("/") + "/"
        command = [self.config.rsync_command] + list(self.config.rsync_options) + [source]
        if link_dest is not None:
            command.extend(["--link-dest", str(link_dest)])
        command.extend(f"--exclude={pattern}" for pattern in self.config.exclude)
        command.append(str(destination))
        return command

    def run(self, now: Optional[datetime] = None) -> FileBackupResult:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        destination = self.destination(now)
        link_dest = self.previous_snapshot()
        if link_dest is None:
            self.logger.info("No previous backup - creating a full copy", backup_dir=str(self.backup_dir))

        command = self.build_command(destination, link_dest)
        self.logger.info(f"Command: {shlex.join(command)}")

        with LogOperation(self.logger, "rsync_transfer", source=self.config.source_dir,
                          destination=str(destination)):
            process = subprocess.run(command, capture_output=True, text=True)
        if process.stdout:
            self.logger.debug(process.stdout)

        result = FileBackupResult(
            destination=str(destination),
            link_dest=str(link_dest) if link_dest else None,
            exit_code=process.returncode
        )

        if not result.success:
            self.logger.error("Rsync transfer failed, latest link left unchanged",
                              exit_code=process.returncode, stderr=process.stderr)
            return result

        self.update_latest(destination)
        result.latest_updated = True
        return result

    def update_latest(self, destination: Path) -> None:
        """Repoint `latest` at the new snapshot"""
        link = self.latest_link
        if link.is_symlink() or link.is_file():
            link.unlink()
        link.symlink_to(destination)
        self.logger.info(f"Linked {link} -> {destination}")

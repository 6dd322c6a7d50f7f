"""
Configuration settings for KVM Backup tools
"""
from typing import List
from pathlib import Path
import os
from dataclasses import dataclass, field

# Load .env file if it exists
def load_env_file():
    env_file = Path(__file__).parent / '.env'
    if env_file.exists():
        with open(env_file, 'r') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    os.environ[key.strip()] = value.strip()

load_env_file()


def _apply_env_overrides(instance, prefix: str) -> None:
    """Override dataclass fields from <PREFIX><FIELD> environment variables"""
    for field_name, field_def in instance.__dataclass_fields__.items():
        env_value = os.getenv(f"{prefix}{field_name.upper()}")
        if env_value is None:
            continue

        field_type = field_def.type
        if field_type in (int, 'int'):
            setattr(instance, field_name, int(env_value))
        elif field_type in (float, 'float'):
            setattr(instance, field_name, float(env_value))
        elif field_type in (bool, 'bool'):
            setattr(instance, field_name, env_value.lower() in ('true', '1', 'yes'))
        elif field_type in (List[str], 'List[str]'):
            setattr(instance, field_name,
                    [item.strip() for item in env_value.split(',') if item.strip()])
        else:
            setattr(instance, field_name, env_value)


@dataclass
class BackupSettings:
    """Configuration for the VM backup driver"""

    # Directories
    backup_root: str = "/var/backups/kvm"

    # Retention: number of distinct backup dates kept per disk image
    retention_count: int = 3

    # Symmetric gpg passphrase, blank disables encryption
    encryption_passphrase: str = ""

    # Operator alerts
    mail_recipient: str = "root@localhost"
    mail_command: str = "mail"

    # Libvirt
    libvirt_uri: str = "qemu:///system"
    domains: List[str] = field(default_factory=list)
    snapshot_prefix: str = "snaptemp-"
    blockjob_poll_interval: float = 1.0

    # External tools
    gzip_command: str = "gzip"
    gpg_command: str = "gpg"

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"
    log_name: str = "qemu-backup"

    def __post_init__(self):
        """Load configuration from environment variables"""
        _apply_env_overrides(self, "KVM_BACKUP_")

    @property
    def log_dir(self) -> str:
        return str(Path(self.backup_root) / "logs")

    @property
    def encryption_enabled(self) -> bool:
        return bool(self.encryption_passphrase)


@dataclass
class FileBackupSettings:
    """Configuration for the incremental filesystem backup driver"""

    source_dir: str = str(Path.home())
    backup_dir: str = "/var/backups/files"
    exclude: List[str] = field(default_factory=lambda: [".cache"])
    latest_name: str = "latest"

    rsync_command: str = "rsync"
    rsync_options: List[str] = field(default_factory=lambda: ["-av", "--delete"])

    log_level: str = "INFO"
    log_format: str = "text"
    log_name: str = "file-backup"

    def __post_init__(self):
        """Load from environment variables"""
        _apply_env_overrides(self, "FS_BACKUP_")

    @property
    def log_dir(self) -> str:
        return str(Path(self.backup_dir) / "logs")


# Global settings instances
settings = BackupSettings()
fs_settings = FileBackupSettings()

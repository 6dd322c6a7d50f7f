"""
KVM Backup - snapshot backups of libvirt VMs and incremental file backups

- External disk-only snapshots, so VMs keep running during the copy
- gzip compression with optional gpg symmetric encryption
- Blockcommit/pivot back to the primary images
- Retention of the most recent backup dates per disk image
- rsync --link-dest filesystem snapshots with a `latest` symlink
"""

__version__ = "1.0.0"

from .models import VMState, VMBackupStatus
from .config import settings, fs_settings
from .archiver import DiskArchiver, ArchiveError
from .retention import RetentionPruner
from .fs_backup import IncrementalFileBackup

__all__ = [
    'VMState',
    'VMBackupStatus',
    'settings',
    'fs_settings',
    'DiskArchiver',
    'ArchiveError',
    'RetentionPruner',
    'IncrementalFileBackup',
]

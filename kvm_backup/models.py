"""
Core models for KVM backup tools
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pathlib import Path


class VMState(Enum):
    """Virtual Machine state enumeration"""
    RUNNING = "running"
    BLOCKED = "blocked"
    PAUSED = "paused"
    SHUTDOWN = "shutdown"
    SHUTOFF = "shut off"
    CRASHED = "crashed"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"

    @classmethod
    def from_libvirt(cls, code: int) -> 'VMState':
        state_map = {
            0: cls.UNKNOWN,
            1: cls.RUNNING,
            2: cls.BLOCKED,
            3: cls.PAUSED,
            4: cls.SHUTDOWN,
            5: cls.SHUTOFF,
            6: cls.CRASHED,
            7: cls.SUSPENDED
        }
        return state_map.get(code, cls.UNKNOWN)


class VMBackupStatus(Enum):
    """Outcome of one VM in a backup run"""
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class DiskInfo:
    """A file-backed block device of a domain"""
    target: str
    source: str
    device: str = "disk"

    @property
    def basename(self) -> str:
        return Path(self.source).name

    def is_snapshot(self, prefix: str) -> bool:
        """True when the domain is writing to a snapshot overlay instead of its image"""
        return prefix in self.basename


@dataclass
class VMInfo:
    """Virtual Machine information"""
    name: str
    state: VMState
    disks: List[DiskInfo] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        return self.state == VMState.RUNNING


@dataclass
class ArchiveStats:
    """Size and throughput figures for one compressed disk image"""
    source_path: str
    archive_path: str
    source_bytes: int
    archive_bytes: int
    seconds: float
    encrypted: bool = False

    @property
    def source_mb(self) -> int:
        return self.source_bytes // 1024 // 1024

    @property
    def archive_mb(self) -> int:
        return self.archive_bytes // 1024 // 1024

    @property
    def kb_per_second(self) -> int:
        return int(self.source_bytes / max(round(self.seconds), 1) / 1024)

    @property
    def compression_percent(self) -> int:
        if self.source_bytes == 0:
            return 0
        return (self.source_bytes - self.archive_bytes) * 100 // self.source_bytes


@dataclass
class VMBackupResult:
    """Result of backing up a single VM"""
    domain: str
    status: VMBackupStatus = VMBackupStatus.SUCCESS
    archives: List[ArchiveStats] = field(default_factory=list)
    snapshot_files_removed: List[str] = field(default_factory=list)
    definition_path: Optional[str] = None
    pruned_dates: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == VMBackupStatus.FAILED

    def fail(self, message: str) -> None:
        self.status = VMBackupStatus.FAILED
        if self.error:
            self.error = f"{self.error}; {message}"
        else:
            self.error = message


@dataclass
class BackupRunResult:
    """Backup run result across all VMs"""
    start_time: datetime
    end_time: Optional[datetime] = None
    vm_results: List[VMBackupResult] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        """Number of VMs that hit an error, used as the process exit code"""
        return sum(1 for result in self.vm_results if result.failed)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.end_time and self.start_time:
            return (self.end_time - self.start_time).total_seconds()
        return None


@dataclass
class FileBackupResult:
    """Result of one incremental filesystem backup"""
    destination: str
    link_dest: Optional[str]
    exit_code: int
    latest_updated: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0

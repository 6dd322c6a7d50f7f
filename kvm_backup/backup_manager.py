"""
VM backup driver: snapshot, archive, blockcommit, export and prune each VM in turn
"""
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from .archiver import ArchiveError, DiskArchiver
from .config import BackupSettings
from .models import BackupRunResult, DiskInfo, VMBackupResult, VMBackupStatus, VMInfo
from .notifier import MailNotifier
from .retention import RetentionPruner
from .logging_config import get_logger

if TYPE_CHECKING:
    from .vm_manager import LibvirtManager

# Timestamp embedded in snapshot, archive and definition names
STAMP_FORMAT = "%Y-%m-%d.%H%M%S"


class VMBackupManager:
    """Sequential backup of every configured VM"""

    def __init__(self, config: BackupSettings,
                 vm_manager: Optional["LibvirtManager"] = None,
                 archiver: Optional[DiskArchiver] = None,
                 notifier: Optional[MailNotifier] = None,
                 pruner: Optional[RetentionPruner] = None):
        self.config = config
        self.logger = get_logger("kvm_backup.backup_manager")
        if vm_manager is None:
            # libvirt is only needed when talking to a real hypervisor
            from .vm_manager import LibvirtManager
            vm_manager = LibvirtManager(config.libvirt_uri, config.blockjob_poll_interval)
        self.vm_manager = vm_manager
        self.archiver = archiver or DiskArchiver(config.encryption_passphrase,
                                                 config.gzip_command, config.gpg_command)
        self.notifier = notifier or MailNotifier(config.mail_recipient, config.mail_command)
        self.pruner = pruner or RetentionPruner(config.retention_count)
        self.stamp = datetime.now().strftime(STAMP_FORMAT)

    @property
    def backup_root(self) -> Path:
        return Path(self.config.backup_root)

    def select_vms(self) -> List[VMInfo]:
        """Configured domains, or every domain libvirt knows about"""
        if not self.config.domains:
            return self.vm_manager.list_all_vms()

        vms = []
        for name in self.config.domains:
            vm = self.vm_manager.get_vm_by_name(name)
            if vm is None:
                self.logger.warning(f"Domain {name} not found, skipping", vm_name=name)
                continue
            vms.append(vm)
        return vms

    def run(self) -> BackupRunResult:
        """Back up each VM; the result's error_count is the process exit code"""
        result = BackupRunResult(start_time=datetime.now())
        self.logger.info(f"Starting backups on {result.start_time.strftime('%d-%m-%Y %H:%M:%S')}")

        with self.vm_manager:
            for vm in self.select_vms():
                self.logger.info(f"---- VM Backup start {vm.name} ---- "
                                 f"{datetime.now().strftime('%d-%m-%Y %H:%M:%S')}")
                vm_result = self.backup_vm(vm)
                result.vm_results.append(vm_result)
                self.logger.info(f"---- Backup done {vm.name} ({vm_result.status.value}) ---- "
                                 f"{datetime.now().strftime('%d-%m-%Y %H:%M:%S')} ----")

        result.end_time = datetime.now()
        self.logger.info(f"Finished backups at {result.end_time.strftime('%d-%m-%Y %H:%M:%S')}",
                         vm_count=len(result.vm_results), error_count=result.error_count)
        return result

    def _fail(self, vm_result: VMBackupResult, kind: str, error: str, command: str,
              disk_image: Optional[str] = None) -> VMBackupResult:
        self.logger.error(error, vm_name=vm_result.domain)
        self.notifier.alert(kind, error, vm_result.domain, command, disk_image)
        vm_result.fail(error)
        return vm_result

    def backup_vm(self, vm: VMInfo) -> VMBackupResult:
        vm_result = VMBackupResult(domain=vm.name)

        if not vm.is_running:
            self.logger.info(f"Skipping {vm.name}, because it is not running.", state=vm.state.value)
            vm_result.status = VMBackupStatus.SKIPPED
            return vm_result

        folder = self.backup_root / vm.name
        folder.mkdir(parents=True, exist_ok=True)

        disks = vm.disks or self.vm_manager.get_vm_disks(vm.name)
        if not disks:
            return self._fail(vm_result, "snapshot", f"No disk images found for {vm.name}",
                              f"virsh domblklist {vm.name} --details")

        # A domain left on an overlay by an earlier failed run needs manual repair
        for disk in disks:
            if disk.is_snapshot(self.config.snapshot_prefix):
                return self._fail(vm_result, "snapshot",
                                  f"Error VM {vm.name} is running on a snapshot disk image: {disk.source}",
                                  f"virsh domblklist {vm.name} --details", disk.source)

        snapshot_name = f"{self.config.snapshot_prefix}{vm.name}-{self.stamp}"
        command = self.vm_manager.snapshot_command(vm.name, snapshot_name, disks)
        self.logger.info(f"Command: {command}")
        if not self.vm_manager.create_external_snapshot(vm.name, snapshot_name, disks):
            return self._fail(vm_result, "snapshot", f"Failed to create snapshot for {vm.name}",
                              f"{command}\n{self.vm_manager.last_error or ''}".rstrip())

        self._archive_disks(vm_result, disks, folder)

        # The domain now writes to the overlays; remember them for cleanup after the pivot
        overlays = self.vm_manager.get_vm_disks(vm.name)

        for disk in disks:
            command = self.vm_manager.blockcommit_command(vm.name, disk.target)
            self.logger.info(f"Command: {command}")
            if not self.vm_manager.blockcommit_pivot(vm.name, disk.target):
                return self._fail(vm_result, "blockcommit",
                                  f"Could not merge changes for disk of {disk.target} of {vm.name}. "
                                  f"VM may be in an invalid state.",
                                  f"{command}\n{self.vm_manager.last_error or ''}".rstrip())

        self._remove_overlays(vm_result, overlays)
        self._export_definition(vm_result, folder)

        if vm_result.failed:
            self.logger.warning("Skipping retention pruning after a failed backup", vm_name=vm.name)
        else:
            vm_result.pruned_dates = self.pruner.prune_vm(
                str(folder), vm.name, [disk.basename for disk in disks])

        return vm_result

    def _archive_disks(self, vm_result: VMBackupResult, disks: List[DiskInfo], folder: Path) -> None:
        for disk in disks:
            try:
                vm_result.archives.append(self.archiver.archive(disk.source, str(folder), self.stamp))
            except (ArchiveError, OSError) as e:
                command = getattr(e, 'command', None) or self.archiver.describe(
                    disk.source, self.archiver.archive_path(disk.source, str(folder), self.stamp))
                self._fail(vm_result, "copy", f"Failed to copy {disk.source} of {vm_result.domain}: {e}",
                           command, disk.source)

    def _remove_overlays(self, vm_result: VMBackupResult, overlays: List[DiskInfo]) -> None:
        for overlay in overlays:
            if not overlay.is_snapshot(self.config.snapshot_prefix):
                continue
            self.logger.info(f"Deleting temporary image {overlay.source}")
            try:
                Path(overlay.source).unlink(missing_ok=True)
                vm_result.snapshot_files_removed.append(overlay.source)
            except OSError as e:
                self.logger.warning("Failed to delete temporary image",
                                    vm_name=vm_result.domain, path=overlay.source, error=str(e))

    def _export_definition(self, vm_result: VMBackupResult, folder: Path) -> None:
        output_path = folder / f"{vm_result.domain}-{self.stamp}.xml"
        self.logger.info(f"Command: virsh dumpxml {vm_result.domain} > {output_path}")
        if self.vm_manager.export_vm_definition(vm_result.domain, str(output_path)):
            vm_result.definition_path = str(output_path)
        else:
            self._fail(vm_result, "dumpxml", f"Failed to export definition of {vm_result.domain}",
                       f"virsh dumpxml {vm_result.domain}")

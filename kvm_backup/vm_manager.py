"""
Libvirt VM Manager with external snapshot and blockcommit support
"""
import libvirt
import xml.etree.ElementTree as ET
from typing import List, Optional
import time
from pathlib import Path

from .models import DiskInfo, VMInfo, VMState
from .logging_config import get_logger, LogOperation


class LibvirtManager:
    """Manager for the libvirt operations a snapshot backup needs"""

    def __init__(self, uri: str = "qemu:///system", poll_interval: float = 1.0):
        self.uri = uri
        self.poll_interval = poll_interval
        self.conn: Optional[libvirt.virConnect] = None
        self.last_error: Optional[str] = None
        self.logger = get_logger("kvm_backup.vm_manager")

    def connect(self) -> bool:
        """Connect to libvirt daemon"""
        try:
            if self.conn is None or not self.conn.isAlive():
                self.conn = libvirt.open(self.uri)
                self.logger.info("Connected to libvirt", uri=self.uri)
            return True
        except libvirt.libvirtError as e:
            self.last_error = str(e)
            self.logger.error("Failed to connect to libvirt", uri=self.uri, error=str(e))
            return False

    def disconnect(self) -> None:
        """Disconnect from libvirt daemon"""
        if self.conn and self.conn.isAlive():
            self.conn.close()
            self.logger.info("Disconnected from libvirt")
        self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

    def list_all_vms(self) -> List[VMInfo]:
        """List all VMs (running and stopped)"""
        if not self.connect():
            return []

        try:
            vms = [self._vm_info(domain) for domain in self.conn.listAllDomains()]
            self.logger.info(f"Found {len(vms)} VMs", vm_count=len(vms))
            return vms

        except libvirt.libvirtError as e:
            self.last_error = str(e)
            self.logger.error("Failed to list VMs", error=str(e))
            return []

    def get_vm_by_name(self, name: str) -> Optional[VMInfo]:
        """Get VM information by name"""
        if not self.connect():
            return None

        try:
            return self._vm_info(self.conn.lookupByName(name))
        except libvirt.libvirtError as e:
            self.last_error = str(e)
            self.logger.error("VM not found", vm_name=name, error=str(e))
            return None

    def get_vm_disks(self, vm_name: str) -> List[DiskInfo]:
        """Current block devices of a VM, as `virsh domblklist --details` reports them"""
        if not self.connect():
            return []

        try:
            return self._disks_from_xml(self.conn.lookupByName(vm_name).XMLDesc(0))
        except libvirt.libvirtError as e:
            self.last_error = str(e)
            self.logger.error("Failed to read VM disks", vm_name=vm_name, error=str(e))
            return []

    def _vm_info(self, domain) -> VMInfo:
        return VMInfo(
            name=domain.name(),
            state=VMState.from_libvirt(domain.state()[0]),
            disks=self._disks_from_xml(domain.XMLDesc(0))
        )

    @staticmethod
    def _disks_from_xml(xml_desc: str) -> List[DiskInfo]:
        """Extract disk devices backed by a file or block device"""
        root = ET.fromstring(xml_desc)

        disks = []
        for disk in root.findall("./devices/disk"):
            if disk.get("device", "disk") != "disk":
                continue
            target = disk.find("target")
            source = disk.find("source")
            if target is None or source is None:
                continue
            path = source.get("file") or source.get("dev")
            if path:
                disks.append(DiskInfo(target=target.get("dev"), source=path))

        return disks

    @staticmethod
    def overlay_path(disk: DiskInfo, snapshot_name: str) -> str:
        """Overlay file libvirt writes to while the snapshot is active"""
        source = Path(disk.source)
        return str(source.parent / f"{source.stem}.{snapshot_name}")

    @classmethod
    def snapshot_command(cls, vm_name: str, snapshot_name: str, disks: List[DiskInfo]) -> str:
        """Equivalent virsh command line, for logs and operator mails"""
        diskspec = " ".join(
            f"--diskspec {disk.target},snapshot=external,file={cls.overlay_path(disk, snapshot_name)}"
            for disk in disks
        )
        return (f"virsh snapshot-create-as --domain {vm_name} --name {snapshot_name} "
                f"--no-metadata --atomic --disk-only {diskspec}")

    @staticmethod
    def blockcommit_command(vm_name: str, target: str) -> str:
        return f"virsh blockcommit {vm_name} {target} --active --pivot"

    @classmethod
    def _snapshot_xml(cls, snapshot_name: str, disks: List[DiskInfo]) -> str:
        root = ET.Element("domainsnapshot")
        ET.SubElement(root, "name").text = snapshot_name
        disks_elem = ET.SubElement(root, "disks")
        for disk in disks:
            disk_elem = ET.SubElement(disks_elem, "disk", name=disk.target, snapshot="external")
            ET.SubElement(disk_elem, "source", file=cls.overlay_path(disk, snapshot_name))
        return ET.tostring(root, encoding="unicode")

    def create_external_snapshot(self, vm_name: str, snapshot_name: str,
                                 disks: List[DiskInfo]) -> bool:
        """Redirect writes of every disk to overlay files in one atomic, disk-only step"""
        if not self.connect():
            return False

        try:
            domain = self.conn.lookupByName(vm_name)

            with LogOperation(self.logger, "create_snapshot", vm_name=vm_name, snapshot_name=snapshot_name):
                domain.snapshotCreateXML(
                    self._snapshot_xml(snapshot_name, disks),
                    libvirt.VIR_DOMAIN_SNAPSHOT_CREATE_DISK_ONLY |
                    libvirt.VIR_DOMAIN_SNAPSHOT_CREATE_ATOMIC |
                    libvirt.VIR_DOMAIN_SNAPSHOT_CREATE_NO_METADATA
                )

            return True

        except libvirt.libvirtError as e:
            self.last_error = str(e)
            self.logger.error("Failed to create snapshot",
                              vm_name=vm_name, snapshot_name=snapshot_name, error=str(e))
            return False

    def blockcommit_pivot(self, vm_name: str, target: str) -> bool:
        """Merge the active overlay of a disk back into its base image and pivot to it"""
        if not self.connect():
            return False

        try:
            domain = self.conn.lookupByName(vm_name)

            with LogOperation(self.logger, "blockcommit", vm_name=vm_name, target=target):
                domain.blockCommit(target, None, None, 0, libvirt.VIR_DOMAIN_BLOCK_COMMIT_ACTIVE)

                # An active commit never finishes by itself: wait until it is ready to pivot
                while True:
                    info = domain.blockJobInfo(target, 0)
                    if not info:
                        raise libvirt.libvirtError(f"block job on {target} vanished before pivot")
                    if info['end'] > 0 and info['cur'] == info['end']:
                        break
                    time.sleep(self.poll_interval)

                domain.blockJobAbort(target, libvirt.VIR_DOMAIN_BLOCK_JOB_ABORT_PIVOT)

            return True

        except libvirt.libvirtError as e:
            self.last_error = str(e)
            self.logger.error("Failed to commit snapshot", vm_name=vm_name, target=target, error=str(e))
            return False

    def dump_xml(self, vm_name: str) -> Optional[str]:
        """VM XML definition"""
        if not self.connect():
            return None

        try:
            return self.conn.lookupByName(vm_name).XMLDesc(0)
        except libvirt.libvirtError as e:
            self.last_error = str(e)
            self.logger.error("Failed to dump VM definition", vm_name=vm_name, error=str(e))
            return None

    def export_vm_definition(self, vm_name: str, output_path: str) -> bool:
        """Export VM XML definition to file"""
        xml_desc = self.dump_xml(vm_name)
        if xml_desc is None:
            return False

        try:
            with open(output_path, 'w', encoding='utf-8') as f:
                f.write(xml_desc)

            self.logger.info("VM definition exported", vm_name=vm_name, output_path=output_path)
            return True

        except OSError as e:
            self.last_error = str(e)
            self.logger.error("Failed to export VM definition",
                              vm_name=vm_name, output_path=output_path, error=str(e))
            return False

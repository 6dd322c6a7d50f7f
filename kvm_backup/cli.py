"""
Command-line interface for KVM backup tools
"""
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table
from rich import print as rprint

from .config import BackupSettings, settings, fs_settings
from .models import VMBackupStatus, VMState
from .vm_manager import LibvirtManager
from .backup_manager import VMBackupManager
from .fs_backup import IncrementalFileBackup
from .retention import RetentionPruner, archived_images
from .logging_config import setup_logging, get_logger

app = typer.Typer(help="KVM Backup - snapshot backups of libvirt VMs and incremental file backups")
console = Console()


def init_logging(config):
    """Initialize logging system"""
    setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        log_dir=config.log_dir,
        log_name=config.log_name,
    )


def vm_settings(domains: Optional[List[str]] = None, root: Optional[Path] = None,
                keep: Optional[int] = None, no_encrypt: bool = False) -> BackupSettings:
    """Effective settings for one run: globals plus command-line overrides"""
    config = replace(settings)
    if domains:
        config.domains = list(domains)
    if root is not None:
        config.backup_root = str(root)
    if keep is not None:
        config.retention_count = keep
    if no_encrypt:
        config.encryption_passphrase = ""
    return config


@app.command("backup-vms")
def backup_vms(
    domains: Optional[List[str]] = typer.Option(None, "--domain", "-d", help="Domain to back up (repeatable, default: all)"),
    root: Optional[Path] = typer.Option(None, "--root", help="Backup root directory"),
    keep: Optional[int] = typer.Option(None, "--keep", "-k", min=1, help="Backup dates kept per disk image"),
    no_encrypt: bool = typer.Option(False, "--no-encrypt", help="Do not encrypt even if a passphrase is configured"),
):
    """Snapshot, archive and commit each VM; exit status is the number of VMs with errors"""
    config = vm_settings(domains, root, keep, no_encrypt)
    init_logging(config)
    logger = get_logger("kvm_backup.cli")

    result = VMBackupManager(config).run()

    table = Table(title="VM Backup Results")
    table.add_column("Domain", style="cyan")
    table.add_column("Status")
    table.add_column("Archives", justify="right")
    table.add_column("Size (MB)", justify="right")
    table.add_column("Pruned dates")
    table.add_column("Error", style="red")

    for vm_result in result.vm_results:
        status_color = {
            VMBackupStatus.SUCCESS: "green",
            VMBackupStatus.SKIPPED: "yellow",
            VMBackupStatus.FAILED: "red",
        }[vm_result.status]
        table.add_row(
            vm_result.domain,
            f"[{status_color}]{vm_result.status.value}[/{status_color}]",
            str(len(vm_result.archives)),
            str(sum(stats.archive_mb for stats in vm_result.archives)),
            ", ".join(vm_result.pruned_dates),
            vm_result.error or "",
        )

    console.print(table)
    logger.info("Backup run finished via CLI", error_count=result.error_count)
    raise typer.Exit(result.error_count)


@app.command("backup-files")
def backup_files(
    source: Optional[Path] = typer.Option(None, "--source", "-s", help="Directory to back up"),
    dest: Optional[Path] = typer.Option(None, "--dest", help="Directory holding the timestamped snapshots"),
    exclude: Optional[List[str]] = typer.Option(None, "--exclude", "-e", help="rsync exclude pattern (repeatable)"),
):
    """Incremental rsync backup hard-linked against the previous snapshot"""
    config = replace(fs_settings)
    if source is not None:
        config.source_dir = str(source)
    if dest is not None:
        config.backup_dir = str(dest)
    if exclude:
        config.exclude = list(exclude)

    init_logging(config)

    result = IncrementalFileBackup(config).run()
    if result.success:
        rprint(f"[green]✓ Backup written to {result.destination}[/green]")
    else:
        rprint(f"[red]✗ rsync exited with status {result.exit_code}[/red]")
    raise typer.Exit(result.exit_code)


@app.command("list-vms")
def list_vms():
    """List all virtual machines and their disk images"""
    with LibvirtManager(settings.libvirt_uri) as vm_manager:
        vms = vm_manager.list_all_vms()

    if not vms:
        rprint("[yellow]No VMs found[/yellow]")
        return

    table = Table(title="Virtual Machines")
    table.add_column("Name", style="cyan")
    table.add_column("State")
    table.add_column("Disks", style="blue")

    for vm in vms:
        state_color = "green" if vm.state == VMState.RUNNING else "dim"
        disks = "\n".join(f"{disk.target}: {disk.source}" for disk in vm.disks)
        table.add_row(vm.name, f"[{state_color}]{vm.state.value}[/{state_color}]", disks)

    console.print(table)


@app.command()
def prune(
    domain: str = typer.Argument(..., help="Domain whose backup folder is pruned"),
    keep: Optional[int] = typer.Option(None, "--keep", "-k", min=1, help="Backup dates kept per disk image"),
    root: Optional[Path] = typer.Option(None, "--root", help="Backup root directory"),
):
    """Apply the retention count to an existing backup folder without backing up"""
    config = vm_settings(root=root, keep=keep)
    init_logging(config)

    folder = Path(config.backup_root) / domain
    if not folder.is_dir():
        rprint(f"[red]No backup folder {folder}[/red]")
        raise typer.Exit(1)

    images = archived_images(folder)
    dropped = RetentionPruner(config.retention_count).prune_vm(str(folder), domain, images)

    if dropped:
        rprint(f"[green]Deleted backups dated {', '.join(dropped)}[/green]")
    else:
        rprint("[yellow]Nothing to prune[/yellow]")


@app.command()
def config():
    """Show current configuration"""
    table = Table(title="KVM Backup Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    items = [
        ("Backup Root", settings.backup_root),
        ("Retention Count", str(settings.retention_count)),
        ("Encryption", "enabled" if settings.encryption_enabled else "disabled"),
        ("Encryption Passphrase", "********" if settings.encryption_enabled else "(none)"),
        ("Mail Recipient", settings.mail_recipient),
        ("Libvirt URI", settings.libvirt_uri),
        ("Domains", ", ".join(settings.domains) or "all"),
        ("Snapshot Prefix", settings.snapshot_prefix),
        ("Log Dir", settings.log_dir),
        ("File Backup Source", fs_settings.source_dir),
        ("File Backup Dir", fs_settings.backup_dir),
        ("File Backup Excludes", ", ".join(fs_settings.exclude)),
    ]

    for setting, value in items:
        table.add_row(setting, value)

    console.print(table)


if __name__ == "__main__":
    app()

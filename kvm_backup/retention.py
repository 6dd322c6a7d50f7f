"""
Retention pruning for dated backup archives and VM definition exports
"""
import glob
import re
from pathlib import Path
from typing import List, Optional, Sequence, Set

from .logging_config import get_logger

# Dates embedded in backup names, YYYY-MM-DD
DATE_PATTERN = re.compile(r"2[0-1][0-9][0-9]-[0-1][0-9]-[0-3][0-9]")
# Backup stamp following an image or domain name: <date>.HHMMSS
STAMP_PATTERN = re.compile(DATE_PATTERN.pattern + r"\.[0-9]{6}\.")

logger = get_logger("kvm_backup.retention")


def _last_date(name: str) -> Optional[re.Match]:
    matches = list(DATE_PATTERN.finditer(name))
    return matches[-1] if matches else None


def _stamped(folder: Path, prefix: str, suffix: str) -> List[Path]:
    """Files named <prefix>-<stamp><suffix>, the stamp starting right after the prefix"""
    paths = []
    for path in Path(folder).glob(f"{glob.escape(prefix)}-*{suffix}"):
        if path.is_file() and STAMP_PATTERN.match(path.name, len(prefix) + 1):
            paths.append(path)
    return sorted(paths)


def extract_date(name: str) -> Optional[str]:
    """Last YYYY-MM-DD found in a name: the backup stamp, even when the image name holds a date"""
    match = _last_date(name)
    return match.group(0) if match else None


def image_archives(folder: Path, image_basename: str) -> List[Path]:
    """Archives of one image: <image basename>-<stamp>.gz*"""
    return _stamped(folder, image_basename, ".gz*")


def backup_dates(folder: Path, image_basename: str) -> List[str]:
    """Distinct backup dates of an image, newest first"""
    dates = {extract_date(p.name) for p in image_archives(folder, image_basename)}
    dates.discard(None)
    return sorted(dates, reverse=True)


def _delete_dated(paths: Sequence[Path], dates: Set[str]) -> List[Path]:
    removed = []
    for path in paths:
        if extract_date(path.name) in dates:
            path.unlink()
            logger.info(f"Deleted {path}")
            removed.append(path)
    return removed


def prune_image_backups(folder: Path, image_basename: str, keep: int) -> List[str]:
    """Delete the image's archives beyond the `keep` most recent dates; return the dropped dates"""
    dates = backup_dates(folder, image_basename)
    if len(dates) <= keep:
        return []

    logger.info(f"Count for {folder} for image ({image_basename}) too high ({len(dates)}), "
                f"deleting historical files over {keep}...")
    dropped = dates[keep:]
    _delete_dated(image_archives(folder, image_basename), set(dropped))
    return dropped


def prune_definitions(folder: Path, domain: str, dates: Sequence[str]) -> List[Path]:
    """Delete <domain>-<stamp>.xml exports bearing any of the given dates"""
    if not dates:
        return []
    exports = _stamped(folder, domain, ".xml")
    return _delete_dated(exports, set(dates))


class RetentionPruner:
    """Applies the retention count to every disk image of a VM"""

    def __init__(self, keep: int):
        if keep < 1:
            raise ValueError("retention count must be at least 1")
        self.keep = keep

    def prune_vm(self, folder: str, domain: str, image_basenames: Sequence[str]) -> List[str]:
        """Prune each image's archives; definition exports are pruned once per call"""
        folder = Path(folder)
        definitions_pruned = False
        all_dropped: List[str] = []

        for image_basename in image_basenames:
            dropped = prune_image_backups(folder, image_basename, self.keep)
            if not dropped:
                continue

            all_dropped.extend(d for d in dropped if d not in all_dropped)
            if not definitions_pruned:
                prune_definitions(folder, domain, dropped)
                definitions_pruned = True

        return all_dropped


def archived_images(folder: Path) -> List[str]:
    """Image basenames that have dated archives in a backup folder"""
    images = set()
    for path in Path(folder).glob("*.gz*"):
        match = _last_date(path.name)
        if path.is_file() and match and match.start() > 1:
            images.add(path.name[:match.start() - 1])
    return sorted(images)

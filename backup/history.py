"""
Archive directory listing and retention.
"""

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

ARCHIVE_PATTERN = re.compile(r"^backup_(\d+)\.sql$")


def format_size(num_bytes: int) -> str:
    """Size in mebibytes, two decimals"""
    return f"{num_bytes / 1024 / 1024:.2f} MB"


def format_timestamp(epoch_seconds: float) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. 2023-06-15T14:00:55.000Z"""
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class ArchiveRecord:
    """One archive file as reported by the history endpoint"""
    filename: str
    size_bytes: int
    modified: float
    status: str = "completed"

    @property
    def id(self) -> str:
        return self.filename

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "date": format_timestamp(self.modified),
            "size": format_size(self.size_bytes),
            "status": self.status,
        }


def list_archives(backup_dir: Path) -> List[ArchiveRecord]:
    """
    Describe every regular file in the archive directory.

    Entries come back in directory order. Every file is reported as
    completed; a dump that failed part way is indistinguishable here.

    Raises:
        OSError: the directory itself cannot be read
    """
    records = []
    with os.scandir(backup_dir) as entries:
        for entry in entries:
            try:
                if not entry.is_file():
                    continue
                stats = entry.stat()
            except FileNotFoundError:
                # Removed between listing and stat
                logger.warning(f"Archive {entry.name} disappeared while listing")
                continue
            records.append(ArchiveRecord(
                filename=entry.name,
                size_bytes=stats.st_size,
                modified=stats.st_mtime,
            ))
    return records


def prune_archives(backup_dir: Path, keep: int, protect: Optional[Iterable[Path]] = None) -> List[Path]:
    """
    Delete the oldest backup_<ms>.sql files so that only `keep` remain.

    Age comes from the timestamp in the name. Files that do not follow the
    naming scheme are never touched, nor are paths in `protect`
    (archives still being written). Returns the removed paths.
    """
    if keep <= 0:
        return []
    protected = set(protect or ())

    stamped = []
    for path in backup_dir.iterdir():
        match = ARCHIVE_PATTERN.match(path.name)
        if match and path.is_file():
            stamped.append((int(match.group(1)), path))
    stamped.sort()

    removed = []
    for _, old_backup in stamped[:-keep]:
        if old_backup in protected:
            continue
        try:
            old_backup.unlink()
        except FileNotFoundError:
            continue
        removed.append(old_backup)
        logger.info(f"Cleaned up old backup: {old_backup}")
    return removed

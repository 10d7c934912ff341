"""
File Backup Job

Archives a directory into a timestamped zip and prunes old archives.
"""

import shutil
from datetime import datetime
from pathlib import Path

from taskrunner.jobs.base import BaseJob, JobResult


class BackupJob(BaseJob):
    """
    Zip a source directory into a destination directory.

    Config:
        source: Directory to back up
        destination: Directory that receives the archives (created if missing)
        prefix: Archive name prefix (default: name of the source directory)
        keep: Number of most recent archives to keep (default: 7, 0 keeps all)

    Example config:
        {
            "source": "/srv/app/data",
            "destination": "/srv/backups/app",
            "keep": 14
        }
    """

    name = "backup"
    description = "Zip a directory into a timestamped archive"

    def validate_config(self) -> bool:
        if not self.require_config('source', 'destination'):
            return False

        source = Path(self.config['source'])
        if not source.is_dir():
            self.logger.error(f"Backup source is not a directory: {source}")
            return False

        keep = self.config.get('keep', 7)
        if not isinstance(keep, int) or keep < 0:
            self.logger.error(f"Invalid 'keep' value: {keep!r}")
            return False

        return True

    def run(self) -> JobResult:
        source = Path(self.config['source'])
        destination = Path(self.config['destination'])
        prefix = self.config.get('prefix') or source.name
        keep = self.config.get('keep', 7)

        destination.mkdir(parents=True, exist_ok=True)

        stamp = datetime.now().strftime('%Y%m%d-%H%M%S')
        base_name = destination / f"{prefix}-{stamp}"
        archive = shutil.make_archive(str(base_name), 'zip', root_dir=str(source))
        self.logger.info(f"Created backup archive {archive}")

        pruned = self._prune(destination, prefix, keep)

        return JobResult(
            success=True,
            result_data={
                'archive': archive,
                'pruned': [str(p) for p in pruned],
            }
        )

    def _prune(self, destination: Path, prefix: str, keep: int):
        """Delete the oldest archives beyond `keep`. Timestamps sort lexically."""
        if not keep:
            return []

        archives = sorted(destination.glob(f"{prefix}-*.zip"))
        stale = archives[:-keep]
        for path in stale:
            path.unlink()
            self.logger.info(f"Pruned old backup {path}")
        return stale

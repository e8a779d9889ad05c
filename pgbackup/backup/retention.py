"""
Retention policy enforcement for backup tiers.

Each tier directory is scanned on its own and archives older than that
tier's threshold are deleted. Age is counted in whole days from the file's
modification time, and only ages strictly greater than the threshold are
removed (a 7-day-old file survives a 7-day policy, an 8-day-old one does not).
"""

import os
import time
import logging
from typing import Iterable, List, Optional, Tuple

from pgbackup.models import ARCHIVE_NAME_RE


logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class RetentionDeleteError(Exception):
    """Raised when an expired archive cannot be deleted."""
    pass


class RetentionManager:
    """
    Deletes expired archives from tier directories.

    Deletion failures are logged per file and never stop the scan.
    """

    def __init__(self):
        """Initialize retention manager."""
        self.deleted: List[str] = []
        self.errors: List[str] = []

    def enforce(self, policy: Iterable[Tuple[str, int]], now: Optional[float] = None) -> int:
        """
        Enforce retention for every (directory, max_age_days) pair.

        Args:
            policy: Tier directories with their thresholds in days
            now: Reference time as a UNIX timestamp (default: current time)

        Returns:
            Number of archives deleted by this call
        """
        if now is None:
            now = time.time()

        deleted_count = 0
        for directory, max_age_days in policy:
            deleted_count += self._cleanup_directory(directory, max_age_days, now)

        logger.info(
            f"Retention enforcement complete. "
            f"Deleted: {deleted_count}, Errors: {len(self.errors)}"
        )
        return deleted_count

    def _cleanup_directory(self, directory: str, max_age_days: int, now: float) -> int:
        """
        Delete expired archives in one tier directory.

        Returns:
            Number of archives deleted
        """
        if not os.path.isdir(directory):
            logger.debug(f"Tier directory {directory} does not exist, skipping")
            return 0

        logger.debug(f"Retention for {directory}: {max_age_days} days")

        try:
            names = sorted(os.listdir(directory))
        except OSError as e:
            message = f"Failed to list {directory}: {e}"
            logger.error(message)
            self.errors.append(message)
            return 0

        deleted_count = 0
        for name in names:
            if not ARCHIVE_NAME_RE.match(name):
                continue

            path = os.path.join(directory, name)
            try:
                stat = os.stat(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                message = f"Failed to stat {path}: {e}"
                logger.warning(message)
                self.errors.append(message)
                continue

            if not os.path.isfile(path):
                continue

            if age_in_days(stat.st_mtime, now) <= max_age_days:
                continue

            try:
                self._delete(path)
                deleted_count += 1
                self.deleted.append(path)
                logger.info(f"Deleted expired archive: {path}")
            except RetentionDeleteError as e:
                logger.warning(str(e))
                self.errors.append(str(e))

        return deleted_count

    def _delete(self, path: str):
        try:
            os.remove(path)
        except OSError as e:
            raise RetentionDeleteError(f"Failed to delete {path}: {e}")


def age_in_days(mtime: float, now: float) -> int:
    """Whole days elapsed between mtime and now (rounded down)."""
    return int((now - mtime) // SECONDS_PER_DAY)

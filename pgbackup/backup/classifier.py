"""
Retention tier classification.

Every archive lands in the daily tier. Archives dated on a Wednesday are
also copied to the weekly tier, and archives dated on the 1st of a month to
the monthly tier.
"""

import os
import shutil
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Set

from pgbackup.models import ARCHIVE_NAME_RE, BackupJob, RetentionTier


logger = logging.getLogger(__name__)

WEEKLY_ISO_WEEKDAY = 3  # Wednesday
MONTHLY_DAY = 1


class ClassificationCopyError(Exception):
    """Raised when an archive cannot be copied into a weekly/monthly tier."""
    pass


@dataclass
class Classification:
    """Which tiers an archive qualifies for and which copies were made."""

    tiers: Set[RetentionTier] = field(default_factory=set)
    copied: Dict[RetentionTier, str] = field(default_factory=dict)
    errors: Dict[RetentionTier, str] = field(default_factory=dict)

    @property
    def landed(self) -> Set[RetentionTier]:
        """Tiers the archive is actually present in."""
        return {RetentionTier.DAILY} | set(self.copied)


def parse_archive_date(filename: str) -> date:
    """
    Extract the calendar date embedded in an archive name.

    Args:
        filename: Archive filename or path ({schema}_{YYYYMMDD}_{HHMMSS}.tar)

    Returns:
        The date portion as a date

    Raises:
        ValueError: If the name does not follow the archive naming pattern
    """
    match = ARCHIVE_NAME_RE.match(os.path.basename(filename))
    if not match:
        raise ValueError(f"Not an archive name: {filename}")
    return datetime.strptime(match.group('date'), '%Y%m%d').date()


def tiers_for(day: date) -> Set[RetentionTier]:
    """Retention tiers an archive dated `day` belongs to."""
    tiers = {RetentionTier.DAILY}
    if day.isoweekday() == WEEKLY_ISO_WEEKDAY:
        tiers.add(RetentionTier.WEEKLY)
    if day.day == MONTHLY_DAY:
        tiers.add(RetentionTier.MONTHLY)
    return tiers


class Classifier:
    """Stages weekly/monthly copies of an archive already in the daily tier."""

    def __init__(self, job: BackupJob):
        self.job = job

    def classify(self, archive_path: str) -> Classification:
        """
        Copy an archive into every extra tier it qualifies for.

        Copy failures are logged and recorded; they never raise.

        Args:
            archive_path: Path of the archive in the daily tier

        Returns:
            Classification with qualifying tiers, copies and copy errors
        """
        result = Classification(tiers=tiers_for(parse_archive_date(archive_path)))
        filename = os.path.basename(archive_path)

        for tier in (RetentionTier.WEEKLY, RetentionTier.MONTHLY):
            if tier not in result.tiers:
                continue

            dest_path = os.path.join(self.job.tier_dir(tier), filename)
            try:
                self._copy(archive_path, dest_path)
                result.copied[tier] = dest_path
                logger.info(f"Copied {filename} to {tier.value} tier")
            except ClassificationCopyError as e:
                result.errors[tier] = str(e)
                logger.warning(str(e))

        return result

    def _copy(self, source_path: str, dest_path: str):
        partial_path = f"{dest_path}.part"
        try:
            os.makedirs(os.path.dirname(dest_path), exist_ok=True)
            shutil.copy2(source_path, partial_path)
            os.replace(partial_path, dest_path)
        except OSError as e:
            if os.path.exists(partial_path):
                try:
                    os.remove(partial_path)
                except OSError:
                    pass
            raise ClassificationCopyError(
                f"Failed to copy {os.path.basename(source_path)} to "
                f"{os.path.dirname(dest_path)}: {e}"
            )

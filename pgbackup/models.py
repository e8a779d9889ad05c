"""
Data model for pgbackup runs.

- BackupJob: immutable configuration for one run
- Archive: one packaged schema backup
- RetentionTier: daily / weekly / monthly
- SchemaOutcome / RunResult: what happened during a run
"""

import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Set, Tuple


TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'
ARCHIVE_EXTENSION = 'tar'

# {schema}_{YYYYMMDD}_{HHMMSS}.tar
ARCHIVE_NAME_RE = re.compile(
    r'^(?P<schema>.+)_(?P<date>\d{8})_(?P<time>\d{6})\.' + ARCHIVE_EXTENSION + r'$'
)


class RetentionTier(Enum):
    """Retention categories, each with its own directory and max age."""

    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'


class RunStatus(Enum):
    """Orchestrator states."""

    INIT = 'init'
    CHECKING_PREREQUISITES = 'checking_prerequisites'
    PER_SCHEMA_LOOP = 'per_schema_loop'
    APPLYING_RETENTION = 'applying_retention'
    DONE = 'done'
    ABORTED = 'aborted'
    CANCELLED = 'cancelled'


@dataclass(frozen=True)
class BackupJob:
    """Configuration for one backup run. Never mutated once built."""

    db_host: str = 'localhost'
    db_port: int = 5432
    db_user: str = 'postgres'
    db_password: str = ''
    db_name: str = 'mydb'
    schemas: Tuple[str, ...] = ()
    backup_root: str = '/var/backups/postgres'
    gzip_threads: int = 4
    compression_level: int = 9
    compressor: str = 'pigz'
    log_file: Optional[str] = None
    log_level: str = 'INFO'
    remote_enable: bool = False
    remote_host: str = ''
    remote_user: str = ''
    remote_password: Optional[str] = None
    remote_key_file: Optional[str] = None
    remote_dir: str = ''
    remote_port: int = 22
    daily_retention_days: int = 7
    weekly_retention_days: int = 28
    monthly_retention_days: int = 365

    @property
    def staging_dir(self) -> str:
        """Where finished bundles wait before landing in the daily tier."""
        return os.path.join(self.backup_root, '.staging')

    def tier_dir(self, tier: RetentionTier) -> str:
        return os.path.join(self.backup_root, tier.value)

    def retention_days(self, tier: RetentionTier) -> int:
        return {
            RetentionTier.DAILY: self.daily_retention_days,
            RetentionTier.WEEKLY: self.weekly_retention_days,
            RetentionTier.MONTHLY: self.monthly_retention_days,
        }[tier]

    def retention_policy(self) -> List[Tuple[str, int]]:
        """(directory, max age in days) for every tier, daily first."""
        return [(self.tier_dir(tier), self.retention_days(tier)) for tier in RetentionTier]


@dataclass(frozen=True)
class Archive:
    """
    A finished backup bundle: compressed dump plus its checksum.

    Only created once both members are inside the bundle at `path`.
    """

    schema: str
    created_at: datetime
    path: str
    checksum: str

    @property
    def base_name(self) -> str:
        return make_base_name(self.schema, self.created_at)

    @property
    def filename(self) -> str:
        return f"{self.base_name}.{ARCHIVE_EXTENSION}"

    @property
    def payload_name(self) -> str:
        return f"{self.base_name}.sql.gz"

    @property
    def checksum_name(self) -> str:
        return f"{self.base_name}.sha1"


def make_base_name(schema: str, created_at: datetime) -> str:
    """Stable archive base name: {schema}_{YYYYMMDD_HHMMSS}."""
    return f"{schema}_{created_at.strftime(TIMESTAMP_FORMAT)}"


@dataclass
class SchemaOutcome:
    """Result of backing up one schema."""

    schema: str
    success: bool
    archive_path: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    tiers: Set[RetentionTier] = field(default_factory=set)
    transferred: Optional[bool] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class RunResult:
    """Accumulates per-schema outcomes and the final run status."""

    status: RunStatus = RunStatus.INIT
    outcomes: List[SchemaOutcome] = field(default_factory=list)
    deleted_count: int = 0
    retention_errors: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def record(self, outcome: SchemaOutcome):
        self.outcomes.append(outcome)

    def outcome_for(self, schema: str) -> Optional[SchemaOutcome]:
        for outcome in self.outcomes:
            if outcome.schema == schema:
                return outcome
        return None

    @property
    def succeeded(self) -> List[SchemaOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> List[SchemaOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def transferred(self) -> List[SchemaOutcome]:
        return [o for o in self.outcomes if o.transferred]

    @property
    def exit_code(self) -> int:
        """
        Process exit status for this run.

        0: every schema backed up
        1: aborted before any schema (missing prerequisites)
        2: completed, but at least one schema failed
        3: cancelled
        """
        if self.status == RunStatus.ABORTED:
            return 1
        if self.status == RunStatus.CANCELLED:
            return 3
        if self.failed:
            return 2
        return 0

    def summary(self) -> List[str]:
        """Human-readable summary lines for the run log."""
        lines = [
            f"Schemas succeeded: {len(self.succeeded)}, failed: {len(self.failed)}"
        ]
        for outcome in self.succeeded:
            tiers = ', '.join(sorted(t.value for t in outcome.tiers))
            lines.append(f"  OK   {outcome.schema}: {outcome.archive_path} [{tiers}]")
        for outcome in self.failed:
            lines.append(f"  FAIL {outcome.schema}: {outcome.error_kind}: {outcome.error}")
        for outcome in self.transferred:
            lines.append(f"  Transferred: {os.path.basename(outcome.archive_path)}")
        lines.append(
            f"Expired archives pruned: {self.deleted_count}, "
            f"retention errors: {self.retention_errors}"
        )
        return lines

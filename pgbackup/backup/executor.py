"""
Backup executor - orchestrates a complete backup run.

Workflow:
1. Check that every external tool is available (fatal if not)
2. For each schema, in configuration order:
   a. Build the archive (dump -> compress -> checksum -> package)
   b. Move it into the daily tier
   c. Copy it into the weekly/monthly tiers it qualifies for
   d. Copy it to the remote host (if enabled)
3. Apply retention to every tier
4. Log the run summary

A failure for one schema is recorded and the loop moves on; only missing
prerequisites abort the run.
"""

import os
import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

from pgbackup.models import BackupJob, RetentionTier, RunResult, RunStatus, SchemaOutcome
from .sources import DumpError, create_source
from .compression import PackagingError, Sha1Checksum, create_compressor, get_archive_size
from .builder import ArtifactBuilder, BackupCancelled
from .classifier import Classifier
from .transport import SSHTransporter, TransferError
from .retention import RetentionManager


logger = logging.getLogger(__name__)

# Package names per tool, for the prerequisite diagnostic
INSTALL_HINTS = {
    'pg_dump': ('postgresql-client', 'postgresql'),
    'pigz': ('pigz', 'pigz'),
}


class PrerequisiteMissing(Exception):
    """Raised when required external tools are not installed."""

    def __init__(self, missing: List[str]):
        self.missing = missing
        super().__init__(f"Required packages missing: {', '.join(missing)}")

    def install_hint(self) -> str:
        debian = sorted({INSTALL_HINTS.get(tool, (tool, tool))[0] for tool in self.missing})
        rhel = sorted({INSTALL_HINTS.get(tool, (tool, tool))[1] for tool in self.missing})
        return (
            f"For Debian/Ubuntu: sudo apt-get install {' '.join(debian)}; "
            f"For RHEL/CentOS: sudo yum install {' '.join(rhel)}"
        )


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a job.
    """

    def __init__(self, job: BackupJob, source=None, compressor=None, checksum=None,
                 transporter=None, retention: Optional[RetentionManager] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 cancel_event: Optional[threading.Event] = None,
                 temp_root: Optional[str] = None):
        """
        Initialize backup executor.

        Services default to the real implementations (pg_dump, the configured
        compressor, SHA-1, SSH when remote copies are enabled).

        Args:
            job: BackupJob to execute
            source: Dump source
            compressor: Stream compressor
            checksum: Checksum service
            transporter: Remote copy service (None disables remote copies)
            retention: RetentionManager
            clock: Returns the current local time
            cancel_event: Set from outside (e.g. a signal handler) to cancel
            temp_root: Parent directory for scratch workspaces
        """
        self.job = job
        self.clock = clock
        self.cancel_event = cancel_event or threading.Event()

        self.source = source or create_source()
        self.compressor = compressor or create_compressor(job)
        self.checksum = checksum or Sha1Checksum()
        if transporter is None and job.remote_enable:
            transporter = SSHTransporter(job)
        self.transporter = transporter if job.remote_enable else None
        self.retention = retention or RetentionManager()

        self.builder = ArtifactBuilder(
            self.source,
            self.compressor,
            self.checksum,
            clock=self._now,
            cancel_event=self.cancel_event,
            temp_root=temp_root
        )
        self.classifier = Classifier(job)

        self.result = RunResult()
        self.logs = []

    def execute(self) -> RunResult:
        """
        Execute the backup run.

        Returns:
            RunResult with one outcome per attempted schema and the final status
        """
        self.result.started_at = self._now()
        self._log(
            f"Starting backup run for database {self.job.db_name} "
            f"({len(self.job.schemas)} schemas)"
        )

        try:
            self._set_status(RunStatus.CHECKING_PREREQUISITES)
            self.check_prerequisites()
            self._prepare_directories()

            self._set_status(RunStatus.PER_SCHEMA_LOOP)
            for schema in self.job.schemas:
                self.builder.check_cancelled()
                self._backup_schema(schema)

            # Cancelled during the last schema's classify or transfer
            self.builder.check_cancelled()

            self._set_status(RunStatus.APPLYING_RETENTION)
            self._log("Applying retention policies")
            self.result.deleted_count = self.retention.enforce(self.job.retention_policy())
            self.result.retention_errors = len(self.retention.errors)

            self._set_status(RunStatus.DONE)

        except PrerequisiteMissing as e:
            self._set_status(RunStatus.ABORTED)
            self.result.error = str(e)
            self._log(f"ERROR: {e}. {e.install_hint()}", logging.CRITICAL)

        except BackupCancelled:
            self._set_status(RunStatus.CANCELLED)
            self.result.error = "Backup cancelled"
            self._log("Backup cancelled, skipping retention", logging.WARNING)

        finally:
            self.result.completed_at = self._now()
            self._log_summary()

        return self.result

    def check_prerequisites(self):
        """
        Verify the dump tool, compressor, checksum and transfer client.

        Raises:
            PrerequisiteMissing: If any tool is unavailable
        """
        services = [self.source, self.compressor, self.checksum]
        if self.transporter is not None:
            services.append(self.transporter)

        missing = []
        for service in services:
            for tool in service.missing_tools():
                if tool not in missing:
                    missing.append(tool)

        if missing:
            raise PrerequisiteMissing(missing)

        self._log("Prerequisites available")

    def _prepare_directories(self):
        """Create tier and staging directories; failures surface per schema later."""
        directories = [self.job.tier_dir(tier) for tier in RetentionTier]
        directories.append(self.job.staging_dir)

        for directory in directories:
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as e:
                self._log(f"Warning: Failed to create {directory}: {e}", logging.WARNING)

        self._sweep_staging()

    def _sweep_staging(self):
        """Remove bundles left in staging by an interrupted earlier run."""
        staging_dir = self.job.staging_dir
        if not os.path.isdir(staging_dir):
            return

        for name in sorted(os.listdir(staging_dir)):
            if not name.endswith(('.tar', '.part')):
                continue
            path = os.path.join(staging_dir, name)
            if os.path.isfile(path):
                self._log(f"Removing stale staged file: {name}", logging.WARNING)
                self._discard(path)

    def _backup_schema(self, schema: str):
        """Build, land, classify and transfer one schema; record the outcome."""
        outcome = SchemaOutcome(schema=schema, success=False)
        self._log(f"Starting backup for schema: {schema}")

        try:
            archive = self.builder.build(schema, self.job, self.job.staging_dir)
        except (DumpError, PackagingError) as e:
            self._record_failure(outcome, e)
            return
        except BackupCancelled as e:
            self._record_failure(outcome, e)
            raise

        # Land in the daily tier
        final_path = os.path.join(self.job.tier_dir(RetentionTier.DAILY), archive.filename)
        try:
            os.replace(archive.path, final_path)
        except OSError as e:
            self._discard(archive.path)
            self._record_failure(
                outcome,
                PackagingError(f"Failed to move {archive.filename} into daily tier: {e}")
            )
            return

        outcome.success = True
        outcome.archive_path = final_path
        try:
            size_mb = f"{get_archive_size(final_path) / 1024 / 1024:.2f} MB"
        except PackagingError:
            size_mb = "size unknown"
        self._log(f"Archive created: {archive.filename} ({size_mb}, sha1 {archive.checksum})")

        # Weekly / monthly copies
        classification = self.classifier.classify(final_path)
        outcome.tiers = classification.landed
        for tier, error in classification.errors.items():
            outcome.warnings.append(f"ClassificationCopyError: {error}")

        # Remote copy
        if self.transporter is not None:
            self._log(f"Transferring {archive.filename} to remote")
            try:
                remote_path = self.transporter.transfer(final_path)
                outcome.transferred = True
                self._log(f"Transferred to {self.job.remote_host}:{remote_path}")
            except TransferError as e:
                outcome.transferred = False
                outcome.warnings.append(f"TransferError: {e}")
                self._log(f"Remote transfer failed for {archive.filename}: {e}", logging.WARNING)

        self.result.record(outcome)
        self._log(f"Backup completed for schema: {schema}")

    def _record_failure(self, outcome: SchemaOutcome, error: Exception):
        outcome.success = False
        outcome.error_kind = type(error).__name__
        outcome.error = str(error)
        self.result.record(outcome)
        self._log(f"ERROR: Backup failed for schema {outcome.schema}: {error}", logging.ERROR)

    def _discard(self, path: str):
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            self._log(f"Warning: Failed to remove {path}: {e}", logging.WARNING)

    def _set_status(self, status: RunStatus):
        self.result.status = status
        logger.debug(f"Run state: {status.value}")

    def _log_summary(self):
        for line in self.result.summary():
            self._log(line)

        if self.result.status == RunStatus.DONE:
            if self.result.failed:
                self._log("Backup completed with failures", logging.WARNING)
            else:
                self._log("Backup completed successfully")

    def _now(self) -> datetime:
        return self.clock() if self.clock else datetime.now()

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: logging level for the module logger
        """
        timestamp = self._now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def run_backup(job: BackupJob, cancel_event: Optional[threading.Event] = None) -> RunResult:
    """
    Execute a backup run for a job with the default services.

    Args:
        job: BackupJob to execute
        cancel_event: Optional event that cancels the run when set

    Returns:
        RunResult for the run
    """
    executor = BackupExecutor(job, cancel_event=cancel_event)
    return executor.execute()

"""
Artifact builder - turns one schema into one archive.

Workflow:
1. Create a private scratch directory
2. Stream pg_dump through the compressor into {base}.sql.gz
3. Compute the SHA-1 of the compressed payload into {base}.sha1
4. Bundle both into {output_dir}/{base}.tar
5. Remove the scratch directory (always)
"""

import os
import shutil
import logging
import tempfile
import threading
from datetime import datetime
from typing import Callable, Optional

from pgbackup.models import Archive, BackupJob, make_base_name
from .sources import DumpError
from .compression import (
    CompressionError,
    PackagingError,
    create_bundle,
    generate_archive_filename,
    write_checksum_file,
)


logger = logging.getLogger(__name__)


class BackupCancelled(Exception):
    """Raised when a run is cancelled while a schema is being built."""
    pass


class ArtifactBuilder:
    """
    Builds a single schema archive.

    The dump source, compressor and checksum are injected so tests can swap
    in fakes without real binaries.
    """

    def __init__(self, source, compressor, checksum,
                 clock: Optional[Callable[[], datetime]] = None,
                 cancel_event: Optional[threading.Event] = None,
                 temp_root: Optional[str] = None):
        """
        Initialize artifact builder.

        Args:
            source: Dump source (start(schema, job, work_dir) -> DumpProcess)
            compressor: Compressor (compress(stream, output_path, cancellation_check))
            checksum: Checksum service (compute(path) -> hex digest)
            clock: Returns the current local time
            cancel_event: Set from outside to abort the build in flight
            temp_root: Parent directory for scratch workspaces (default: system temp)
        """
        self.source = source
        self.compressor = compressor
        self.checksum = checksum
        self.clock = clock
        self.cancel_event = cancel_event or threading.Event()
        self.temp_root = temp_root
        self.last_workspace = None

    def _now(self) -> datetime:
        return self.clock() if self.clock else datetime.now()

    def check_cancelled(self):
        """Raise BackupCancelled if cancellation was requested."""
        if self.cancel_event.is_set():
            raise BackupCancelled("Backup cancelled")

    def build(self, schema: str, job: BackupJob, output_dir: str) -> Archive:
        """
        Dump, compress, checksum and package one schema.

        Args:
            schema: Schema to back up
            job: Backup job configuration
            output_dir: Directory that receives the finished {base}.tar

        Returns:
            Archive describing the finished bundle

        Raises:
            DumpError: If the dump or compression fails
            PackagingError: If checksum or bundling fails
            BackupCancelled: If cancellation was requested mid-build
        """
        created_at = self._now().replace(microsecond=0)
        base_name = make_base_name(schema, created_at)

        work_dir = tempfile.mkdtemp(prefix=f"pgbackup_{schema}_", dir=self.temp_root)
        self.last_workspace = work_dir
        logger.debug(f"Scratch workspace for {schema}: {work_dir}")

        try:
            self.check_cancelled()

            # Step 1: dump and compress
            payload_path = os.path.join(work_dir, f"{base_name}.sql.gz")
            self._dump_and_compress(schema, job, work_dir, payload_path)

            # Step 2: checksum over the compressed payload
            self.check_cancelled()
            checksum_path = os.path.join(work_dir, f"{base_name}.sha1")
            try:
                checksum = self.checksum.compute(payload_path)
            except OSError as e:
                raise PackagingError(f"Failed to compute checksum for {schema}: {e}")
            write_checksum_file(checksum, checksum_path)

            # Step 3: bundle
            self.check_cancelled()
            archive_path = os.path.join(output_dir, generate_archive_filename(base_name))
            create_bundle([payload_path, checksum_path], archive_path)

            return Archive(
                schema=schema,
                created_at=created_at,
                path=archive_path,
                checksum=checksum
            )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
            logger.debug(f"Removed scratch workspace {work_dir}")

    def _dump_and_compress(self, schema: str, job: BackupJob, work_dir: str, payload_path: str):
        """Run the dump and compressor as one streaming pipeline."""
        dump = self.source.start(schema, job, work_dir)

        try:
            self.compressor.compress(dump.stdout, payload_path, self.check_cancelled)
            return_code = dump.wait()
        except CompressionError as e:
            dump.kill()
            # A signal to the process group kills the pipeline before the check runs
            self.check_cancelled()
            raise DumpError(schema, str(e))
        except BaseException:
            dump.kill()
            raise

        if return_code != 0:
            self.check_cancelled()
            detail = dump.error_output()
            reason = f"dump exited with status {return_code}"
            if detail:
                reason = f"{reason}: {detail}"
            raise DumpError(schema, reason)

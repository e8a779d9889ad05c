"""
Backup module for pgbackup.

This module handles the backup lifecycle:
- Schema dumps (pg_dump)
- Compression, checksum and packaging
- Retention tier classification
- Remote replication over SSH
- Retention policy enforcement
- Run orchestration
"""

from .executor import BackupExecutor, PrerequisiteMissing, run_backup
from .builder import ArtifactBuilder, BackupCancelled
from .sources import PgDumpSource, DumpError
from .compression import (
    GzipCompressor,
    PigzCompressor,
    Sha1Checksum,
    PackagingError,
    verify_archive,
)
from .classifier import Classifier, ClassificationCopyError
from .transport import SSHTransporter, TransferError
from .retention import RetentionManager, RetentionDeleteError

__all__ = [
    'BackupExecutor',
    'PrerequisiteMissing',
    'run_backup',
    'ArtifactBuilder',
    'BackupCancelled',
    'PgDumpSource',
    'DumpError',
    'GzipCompressor',
    'PigzCompressor',
    'Sha1Checksum',
    'PackagingError',
    'verify_archive',
    'Classifier',
    'ClassificationCopyError',
    'SSHTransporter',
    'TransferError',
    'RetentionManager',
    'RetentionDeleteError',
]

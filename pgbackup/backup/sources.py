"""
Dump sources for backup operations.

A source produces the plain-SQL byte stream for exactly one schema. The
stream is consumed by a compressor while the dump is still running, so the
uncompressed dump is never held in memory or on disk.

Supports:
- PgDumpSource: runs pg_dump as a child process
"""

import os
import shutil
import subprocess
from typing import List, Optional

from pgbackup.models import BackupJob


class DumpError(Exception):
    """Raised when the dump-and-compress pipeline fails for a schema."""

    def __init__(self, schema: str, reason: str):
        self.schema = schema
        self.reason = reason
        super().__init__(f"Failed to backup schema {schema}: {reason}")


class DumpProcess:
    """
    A running dump.

    `stdout` is the readable end of the dump stream. The process is reaped
    with wait(); stderr goes to a file so a chatty pg_dump cannot block on a
    full pipe.
    """

    def __init__(self, process: subprocess.Popen, stderr_path: Optional[str] = None):
        self.process = process
        self.stdout = process.stdout
        self.stderr_path = stderr_path

    def wait(self, timeout: Optional[float] = None) -> int:
        return self.process.wait(timeout=timeout)

    def kill(self):
        """Stop the dump if it is still running."""
        if self.process.poll() is None:
            try:
                self.process.kill()
            except OSError:
                pass
            self.process.wait()

    def error_output(self, limit: int = 2000) -> str:
        """Tail of whatever the dump wrote to stderr."""
        if not self.stderr_path or not os.path.exists(self.stderr_path):
            return ''
        with open(self.stderr_path, 'rb') as f:
            data = f.read()
        return data[-limit:].decode('utf-8', errors='replace').strip()


class PgDumpSource:
    """
    Handler for dumping one PostgreSQL schema with pg_dump.

    The dump is plain-text SQL (-Fp) restricted to a single schema (-n).
    """

    tool = 'pg_dump'

    def __init__(self, executable: str = 'pg_dump'):
        """
        Initialize pg_dump source.

        Args:
            executable: pg_dump binary name or path
        """
        self.executable = executable

    def missing_tools(self) -> List[str]:
        return [] if shutil.which(self.executable) else [self.tool]

    def build_command(self, schema: str, job: BackupJob) -> List[str]:
        return [
            self.executable,
            '-h', job.db_host,
            '-p', str(job.db_port),
            '-U', job.db_user,
            '-d', job.db_name,
            '-n', schema,
            '-Fp',
            '--no-password',
        ]

    def start(self, schema: str, job: BackupJob, work_dir: str) -> DumpProcess:
        """
        Start dumping a schema.

        Args:
            schema: Schema to dump
            job: Backup job (connection settings)
            work_dir: Scratch directory for the stderr log

        Returns:
            DumpProcess whose stdout streams the SQL dump

        Raises:
            DumpError: If pg_dump cannot be started
        """
        env = os.environ.copy()
        if job.db_password:
            env['PGPASSWORD'] = job.db_password

        stderr_path = os.path.join(work_dir, f"{self.tool}.stderr")

        try:
            with open(stderr_path, 'wb') as stderr_file:
                process = subprocess.Popen(
                    self.build_command(schema, job),
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                    env=env
                )
        except OSError as e:
            raise DumpError(schema, f"could not start {self.tool}: {e}")

        return DumpProcess(process, stderr_path)


def create_source(executable: Optional[str] = None) -> PgDumpSource:
    """Factory for the default dump source."""
    return PgDumpSource(executable or 'pg_dump')

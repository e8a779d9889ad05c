"""
Shared pytest fixtures for pgbackup tests.

This module provides fixtures for:
- Backup jobs rooted in a temporary directory
- Fake dump sources that stand in for pg_dump
- Scratch workspace roots that tests can inspect after a build
- Helpers for creating aged archive files
"""

import io
import os
import time
from dataclasses import replace

import pytest

from pgbackup.models import BackupJob
from pgbackup.backup.compression import GzipCompressor, Sha1Checksum


SAMPLE_SQL = (
    b"--\n-- PostgreSQL database dump\n--\n\n"
    b"CREATE SCHEMA orders;\n"
    b"CREATE TABLE orders.items (id integer PRIMARY KEY, sku text NOT NULL);\n"
    b"COPY orders.items (id, sku) FROM stdin;\n"
    + b"".join(f"{i}\tSKU-{i:06d}\n".encode() for i in range(2000))
    + b"\\.\n"
)


class FakeDumpProcess:
    """Finished dump with a canned byte stream and exit status."""

    def __init__(self, data: bytes, returncode: int = 0, stderr: str = ''):
        self.stdout = io.BytesIO(data)
        self.returncode = returncode
        self.stderr = stderr
        self.killed = False

    def wait(self, timeout=None):
        return self.returncode

    def kill(self):
        self.killed = True

    def error_output(self, limit: int = 2000) -> str:
        return self.stderr[-limit:]


class FakeDumpSource:
    """
    Stand-in for PgDumpSource.

    Schemas listed in `failures` behave like pg_dump failing to connect.
    """

    tool = 'pg_dump'

    def __init__(self, payloads=None, failures=None, missing=None):
        self.payloads = payloads or {}
        self.failures = failures or {}
        self.missing = missing or []
        self.started = []
        self.processes = []

    def missing_tools(self):
        return list(self.missing)

    def start(self, schema, job, work_dir):
        self.started.append(schema)
        if schema in self.failures:
            process = FakeDumpProcess(b'', returncode=1, stderr=self.failures[schema])
        else:
            process = FakeDumpProcess(self.payloads.get(schema, SAMPLE_SQL))
        self.processes.append(process)
        return process


@pytest.fixture
def sample_sql():
    return SAMPLE_SQL


@pytest.fixture
def backup_root(tmp_path):
    root = tmp_path / 'backups'
    root.mkdir()
    return root


@pytest.fixture
def scratch_root(tmp_path):
    """Parent directory for scratch workspaces, empty after every build."""
    scratch = tmp_path / 'scratch'
    scratch.mkdir()
    return scratch


@pytest.fixture
def job(backup_root):
    """Job backing up a single 'orders' schema with remote copies disabled."""
    return BackupJob(
        db_host='db.example.com',
        db_port=5432,
        db_user='backup',
        db_password='secret',
        db_name='shop',
        schemas=('orders',),
        backup_root=str(backup_root),
        gzip_threads=2,
        compression_level=9,
        compressor='gzip',
        remote_enable=False,
        daily_retention_days=7,
        weekly_retention_days=28,
        monthly_retention_days=365,
    )


@pytest.fixture
def remote_job(job):
    """Same job with remote copies enabled."""
    return replace(
        job,
        remote_enable=True,
        remote_host='backup.example.com',
        remote_user='archiver',
        remote_password='ssh-secret',
        remote_dir='/srv/backups/',
        remote_port=2222,
    )


@pytest.fixture
def fake_source():
    return FakeDumpSource()


@pytest.fixture
def make_source():
    """Factory for fake dump sources: make_source(failures={...}, missing=[...])."""
    return FakeDumpSource


@pytest.fixture
def compressor():
    return GzipCompressor(level=6, chunk_size=4096)


@pytest.fixture
def checksum():
    return Sha1Checksum()


@pytest.fixture
def make_aged_file():
    """
    Create an archive-named file whose mtime is `days` days plus
    `extra_seconds` (one minute by default) before `now`.

    Returns the path; the reference time is available as `make_aged_file.now`.
    """
    now = time.time()

    def _make(directory, name, days, extra_seconds=60):
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(str(directory), name)
        with open(path, 'wb') as f:
            f.write(b'archive')
        mtime = now - days * 86400 - extra_seconds
        os.utime(path, (mtime, mtime))
        return path

    _make.now = now
    return _make

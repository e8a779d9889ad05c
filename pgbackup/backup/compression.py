"""
Compression, checksum and packaging for backup archives.

A schema dump goes through three steps here:
- compress: stream the dump into {base}.sql.gz (pigz or in-process gzip)
- checksum: SHA-1 of the compressed payload into {base}.sha1
- package: plain tar holding both files, named {base}.tar
"""

import os
import gzip
import zlib
import shutil
import hashlib
import tarfile
import subprocess
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional

from pgbackup.models import ARCHIVE_EXTENSION, BackupJob


CHUNK_SIZE = 1024 * 1024  # 1MB


class CompressionError(Exception):
    """Raised when compressing a dump stream fails."""
    pass


class PackagingError(Exception):
    """Raised when computing the checksum or bundling the archive fails."""
    pass


class PigzCompressor:
    """
    Parallel gzip via the pigz binary.

    pigz reads the dump pipe directly, so the two processes run concurrently
    and backpressure is handled by the OS pipe.
    """

    tool = 'pigz'

    def __init__(self, threads: int = 4, level: int = 9, executable: str = 'pigz',
                 poll_interval: float = 0.5):
        self.threads = threads
        self.level = level
        self.executable = executable
        self.poll_interval = poll_interval

    def missing_tools(self) -> List[str]:
        return [] if shutil.which(self.executable) else [self.tool]

    def build_command(self) -> List[str]:
        return [self.executable, f'-{self.level}', '-p', str(self.threads), '-c']

    def compress(self, stream: BinaryIO, output_path: str,
                 cancellation_check: Optional[Callable[[], None]] = None):
        """
        Compress a dump stream into output_path.

        Takes ownership of `stream` and closes it.

        Args:
            stream: Readable pipe carrying the uncompressed dump
            output_path: Destination .sql.gz file
            cancellation_check: Called while waiting; raises to abort

        Raises:
            CompressionError: If pigz cannot run or exits non-zero
        """
        stderr_path = f"{output_path}.stderr"

        try:
            with open(output_path, 'wb') as out, open(stderr_path, 'wb') as err:
                try:
                    process = subprocess.Popen(
                        self.build_command(),
                        stdin=stream,
                        stdout=out,
                        stderr=err
                    )
                finally:
                    # pigz holds its own copy of the pipe
                    stream.close()

                try:
                    while process.poll() is None:
                        if cancellation_check:
                            cancellation_check()
                        try:
                            process.wait(timeout=self.poll_interval)
                        except subprocess.TimeoutExpired:
                            pass
                except BaseException:
                    process.kill()
                    process.wait()
                    raise
        except OSError as e:
            raise CompressionError(f"{self.tool} failed: {e}")

        if process.returncode != 0:
            message = Path(stderr_path).read_text(errors='replace').strip()
            raise CompressionError(
                f"{self.tool} exited with status {process.returncode}: {message}"
            )


class GzipCompressor:
    """
    In-process gzip for hosts without pigz.

    Reads the dump in fixed-size chunks; `threads` is accepted for interface
    parity and ignored.
    """

    tool = 'gzip'

    def __init__(self, threads: int = 1, level: int = 9, chunk_size: int = CHUNK_SIZE):
        self.threads = threads
        self.level = level
        self.chunk_size = chunk_size

    def missing_tools(self) -> List[str]:
        return []

    def compress(self, stream: BinaryIO, output_path: str,
                 cancellation_check: Optional[Callable[[], None]] = None):
        """Same contract as PigzCompressor.compress."""
        try:
            with open(output_path, 'wb') as raw:
                with gzip.GzipFile(fileobj=raw, mode='wb', compresslevel=self.level) as gz:
                    while True:
                        if cancellation_check:
                            cancellation_check()
                        chunk = stream.read(self.chunk_size)
                        if not chunk:
                            break
                        gz.write(chunk)
        except OSError as e:
            raise CompressionError(f"gzip compression failed: {e}")
        finally:
            stream.close()


def create_compressor(job: BackupJob):
    """
    Factory function to create the compressor configured for a job.

    Args:
        job: BackupJob (compressor, gzip_threads, compression_level)

    Returns:
        PigzCompressor or GzipCompressor instance

    Raises:
        ValueError: If the compressor name is invalid
    """
    if job.compressor == 'pigz':
        return PigzCompressor(threads=job.gzip_threads, level=job.compression_level)
    elif job.compressor == 'gzip':
        return GzipCompressor(threads=job.gzip_threads, level=job.compression_level)
    else:
        raise ValueError(f"Invalid compressor: {job.compressor}")


class Sha1Checksum:
    """SHA-1 digest over a file, read in chunks."""

    name = 'sha1'

    def missing_tools(self) -> List[str]:
        return []

    def compute(self, path: str) -> str:
        digest = hashlib.sha1()
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
                digest.update(chunk)
        return digest.hexdigest()


def write_checksum_file(checksum: str, path: str):
    """Write a checksum file holding just the hex digest."""
    try:
        with open(path, 'w') as f:
            f.write(f"{checksum}\n")
    except OSError as e:
        raise PackagingError(f"Failed to write checksum file {os.path.basename(path)}: {e}")


def create_bundle(member_paths: List[str], output_path: str) -> str:
    """
    Bundle files into an uncompressed tar archive.

    The archive is written under a temporary name and renamed into place, so
    a failure never leaves a half-written file at output_path.

    Args:
        member_paths: Files to include (stored under their basenames)
        output_path: Final archive path

    Returns:
        output_path

    Raises:
        PackagingError: If any member is missing or writing fails
    """
    if not member_paths:
        raise PackagingError("No files to package")

    partial_path = f"{output_path}.part"

    try:
        with tarfile.open(partial_path, 'w') as tar:
            for member_path in member_paths:
                member = Path(member_path)
                if not member.is_file():
                    raise PackagingError(f"Path does not exist: {member_path}")
                tar.add(member, arcname=member.name, recursive=False)
        os.replace(partial_path, output_path)
        return output_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(partial_path):
            try:
                os.remove(partial_path)
            except OSError:
                pass
        if isinstance(e, PackagingError):
            raise
        raise PackagingError(f"Failed to create archive: {e}")


def verify_archive(archive_path: str) -> bool:
    """
    Check an archive's payload against its stored checksum.

    Also decompresses the payload end to end, so a truncated or corrupt
    gzip stream fails verification even if the checksum was computed over it.

    Args:
        archive_path: Path to a {schema}_{timestamp}.tar archive

    Returns:
        True if the checksum matches and the payload decompresses cleanly

    Raises:
        PackagingError: If the archive cannot be read or is missing a member
    """
    base = strip_archive_extension(os.path.basename(archive_path))
    payload_name = f"{base}.sql.gz"
    checksum_name = f"{base}.sha1"

    try:
        with tarfile.open(archive_path, 'r:') as tar:
            names = tar.getnames()
            if payload_name not in names or checksum_name not in names:
                raise PackagingError(
                    f"Archive {os.path.basename(archive_path)} is missing "
                    f"{payload_name} or {checksum_name}"
                )

            stored = tar.extractfile(checksum_name).read().decode().split()
            expected = stored[0] if stored else ''

            digest = hashlib.sha1()
            payload = tar.extractfile(payload_name)
            for chunk in iter(lambda: payload.read(CHUNK_SIZE), b''):
                digest.update(chunk)

            if digest.hexdigest() != expected:
                return False

            try:
                with gzip.GzipFile(fileobj=tar.extractfile(payload_name)) as gz:
                    while gz.read(CHUNK_SIZE):
                        pass
            except (OSError, EOFError, zlib.error):
                return False
            return True
    except (tarfile.TarError, OSError) as e:
        raise PackagingError(f"Failed to read archive {archive_path}: {e}")


def generate_archive_filename(base_name: str) -> str:
    """Archive filename for a base name: {base_name}.tar"""
    return f"{base_name}.{ARCHIVE_EXTENSION}"


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Args:
        filename: Archive filename with extension

    Returns:
        Filename without extension
    """
    suffix = f".{ARCHIVE_EXTENSION}"
    if filename.endswith(suffix):
        return filename[:-len(suffix)]
    return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        PackagingError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise PackagingError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise PackagingError(f"Failed to get archive size: {e}")

"""
Unit tests for compression, checksum and packaging (pgbackup/backup/compression.py).
"""

import io
import os
import gzip
import hashlib
import tarfile
from unittest.mock import MagicMock, patch

import pytest

from pgbackup.models import BackupJob
from pgbackup.backup.compression import (
    CompressionError,
    GzipCompressor,
    PackagingError,
    PigzCompressor,
    Sha1Checksum,
    create_bundle,
    create_compressor,
    generate_archive_filename,
    get_archive_size,
    strip_archive_extension,
    verify_archive,
    write_checksum_file,
)


def _make_archive(directory, base, payload: bytes, checksum: str = None):
    """Build {base}.tar holding a gzip payload and checksum file."""
    payload_path = os.path.join(directory, f"{base}.sql.gz")
    with gzip.open(payload_path, 'wb') as f:
        f.write(payload)
    if checksum is None:
        checksum = Sha1Checksum().compute(payload_path)
    checksum_path = os.path.join(directory, f"{base}.sha1")
    write_checksum_file(checksum, checksum_path)
    archive_path = os.path.join(directory, f"{base}.tar")
    return create_bundle([payload_path, checksum_path], archive_path)


class TestGzipCompressor:
    """Test in-process streaming compression."""

    def test_compress_stream(self, tmp_path, sample_sql):
        """Compressed output decompresses to the original dump."""
        stream = io.BytesIO(sample_sql)
        output = tmp_path / 'dump.sql.gz'

        GzipCompressor(level=9, chunk_size=1024).compress(stream, str(output))

        assert gzip.decompress(output.read_bytes()) == sample_sql
        assert stream.closed

    def test_compress_reads_in_chunks(self, tmp_path):
        """The stream is consumed chunk by chunk, never with an unbounded read."""
        stream = MagicMock()
        stream.read.side_effect = [b'a' * 10, b'b' * 10, b'']

        GzipCompressor(chunk_size=10).compress(stream, str(tmp_path / 'out.gz'))

        for call in stream.read.call_args_list:
            assert call.args == (10,)
        stream.close.assert_called_once()

    def test_cancellation_check_aborts(self, tmp_path, sample_sql):
        class Stop(Exception):
            pass

        def cancel():
            raise Stop()

        with pytest.raises(Stop):
            GzipCompressor().compress(io.BytesIO(sample_sql), str(tmp_path / 'out.gz'), cancel)

    def test_write_failure_raises_compression_error(self, tmp_path, sample_sql):
        missing_dir = tmp_path / 'nope' / 'out.gz'

        with pytest.raises(CompressionError, match="gzip compression failed"):
            GzipCompressor().compress(io.BytesIO(sample_sql), str(missing_dir))


class TestPigzCompressor:
    """Test the pigz pipeline command and failure handling."""

    def test_build_command(self):
        compressor = PigzCompressor(threads=6, level=9)

        assert compressor.build_command() == ['pigz', '-9', '-p', '6', '-c']

    def test_missing_tools(self):
        with patch('pgbackup.backup.compression.shutil.which', return_value=None):
            assert PigzCompressor().missing_tools() == ['pigz']
        with patch('pgbackup.backup.compression.shutil.which', return_value='/usr/bin/pigz'):
            assert PigzCompressor().missing_tools() == []

    @patch('pgbackup.backup.compression.subprocess.Popen')
    def test_nonzero_exit_raises(self, mock_popen, tmp_path):
        process = MagicMock()
        process.poll.return_value = 1
        process.returncode = 1
        mock_popen.return_value = process
        stream = MagicMock()

        output = tmp_path / 'out.sql.gz'

        def popen(cmd, stdin, stdout, stderr):
            stderr.write(b'pigz: write error')
            return process
        mock_popen.side_effect = popen

        with pytest.raises(CompressionError, match="exited with status 1: pigz: write error"):
            PigzCompressor().compress(stream, str(output))

        # Parent closes its copy of the pipe once pigz owns it
        stream.close.assert_called_once()

    @patch('pgbackup.backup.compression.subprocess.Popen')
    def test_cancellation_kills_pigz(self, mock_popen, tmp_path):
        process = MagicMock()
        process.poll.return_value = None
        mock_popen.return_value = process

        class Stop(Exception):
            pass

        def cancel():
            raise Stop()

        with pytest.raises(Stop):
            PigzCompressor().compress(MagicMock(), str(tmp_path / 'out.gz'), cancel)

        process.kill.assert_called_once()

    @patch('pgbackup.backup.compression.subprocess.Popen', side_effect=FileNotFoundError('pigz'))
    def test_missing_binary_raises(self, mock_popen, tmp_path):
        with pytest.raises(CompressionError, match="pigz failed"):
            PigzCompressor().compress(MagicMock(), str(tmp_path / 'out.gz'))


class TestCreateCompressor:
    """Test compressor factory."""

    def test_pigz(self):
        compressor = create_compressor(BackupJob(compressor='pigz', gzip_threads=3, compression_level=7))

        assert isinstance(compressor, PigzCompressor)
        assert compressor.threads == 3
        assert compressor.level == 7

    def test_gzip(self):
        assert isinstance(create_compressor(BackupJob(compressor='gzip')), GzipCompressor)

    def test_invalid(self):
        with pytest.raises(ValueError, match="Invalid compressor"):
            create_compressor(BackupJob(compressor='lz4'))


class TestChecksum:
    """Test SHA-1 checksum service."""

    def test_matches_hashlib(self, tmp_path, sample_sql):
        path = tmp_path / 'payload'
        path.write_bytes(sample_sql)

        assert Sha1Checksum().compute(str(path)) == hashlib.sha1(sample_sql).hexdigest()

    def test_checksum_file_holds_digest_only(self, tmp_path):
        path = tmp_path / 'x.sha1'
        write_checksum_file('deadbeef', str(path))

        assert path.read_text() == 'deadbeef\n'

    def test_checksum_file_failure(self, tmp_path):
        with pytest.raises(PackagingError, match="checksum file"):
            write_checksum_file('deadbeef', str(tmp_path / 'missing' / 'x.sha1'))


class TestCreateBundle:
    """Test tar packaging."""

    def test_bundle_contains_members_uncompressed(self, tmp_path, sample_sql):
        archive_path = _make_archive(str(tmp_path), 'orders_20240501_010203', sample_sql)

        assert archive_path.endswith('orders_20240501_010203.tar')
        with tarfile.open(archive_path, 'r:') as tar:
            assert sorted(tar.getnames()) == [
                'orders_20240501_010203.sha1',
                'orders_20240501_010203.sql.gz',
            ]
        assert not os.path.exists(archive_path + '.part')

    def test_missing_member_raises_and_cleans_up(self, tmp_path):
        output = tmp_path / 'a_20240501_010203.tar'

        with pytest.raises(PackagingError, match="does not exist"):
            create_bundle([str(tmp_path / 'nope.sql.gz')], str(output))

        assert not output.exists()
        assert not (tmp_path / 'a_20240501_010203.tar.part').exists()

    def test_unwritable_destination_raises(self, tmp_path):
        member = tmp_path / 'm.sql.gz'
        member.write_bytes(b'x')

        with pytest.raises(PackagingError, match="Failed to create archive"):
            create_bundle([str(member)], str(tmp_path / 'missing_dir' / 'a.tar'))

    def test_empty_member_list(self, tmp_path):
        with pytest.raises(PackagingError, match="No files"):
            create_bundle([], str(tmp_path / 'a.tar'))


class TestVerifyArchive:
    """Test the integrity check of finished archives."""

    def test_valid_archive(self, tmp_path, sample_sql):
        archive_path = _make_archive(str(tmp_path), 'orders_20240501_010203', sample_sql)

        assert verify_archive(archive_path) is True

    def test_checksum_mismatch(self, tmp_path, sample_sql):
        archive_path = _make_archive(
            str(tmp_path), 'orders_20240501_010203', sample_sql, checksum='0' * 40
        )

        assert verify_archive(archive_path) is False

    def test_missing_member(self, tmp_path):
        member = tmp_path / 'orders_20240501_010203.sql.gz'
        member.write_bytes(gzip.compress(b'select 1;'))
        archive_path = create_bundle([str(member)], str(tmp_path / 'orders_20240501_010203.tar'))

        with pytest.raises(PackagingError, match="missing"):
            verify_archive(archive_path)

    def test_corrupt_payload_with_matching_checksum(self, tmp_path):
        """A checksum computed over a truncated gzip still fails verification."""
        base = 'orders_20240501_010203'
        payload = tmp_path / f'{base}.sql.gz'
        payload.write_bytes(gzip.compress(b'x' * 10000)[:-12])
        checksum_path = tmp_path / f'{base}.sha1'
        write_checksum_file(Sha1Checksum().compute(str(payload)), str(checksum_path))
        archive_path = create_bundle([str(payload), str(checksum_path)], str(tmp_path / f'{base}.tar'))

        assert verify_archive(archive_path) is False

    def test_not_a_tar(self, tmp_path):
        path = tmp_path / 'orders_20240501_010203.tar'
        path.write_bytes(b'not a tar file at all')

        with pytest.raises(PackagingError, match="Failed to read archive"):
            verify_archive(str(path))


class TestNameHelpers:
    """Test filename helpers."""

    def test_generate_archive_filename(self):
        assert generate_archive_filename('orders_20240501_010203') == 'orders_20240501_010203.tar'

    def test_strip_archive_extension(self):
        assert strip_archive_extension('orders_20240501_010203.tar') == 'orders_20240501_010203'
        assert strip_archive_extension('notes.txt') == 'notes'

    def test_get_archive_size(self, tmp_path):
        path = tmp_path / 'a.tar'
        path.write_bytes(b'12345')

        assert get_archive_size(str(path)) == 5
        with pytest.raises(PackagingError, match="not found"):
            get_archive_size(str(tmp_path / 'missing.tar'))

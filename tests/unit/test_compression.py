"""
Unit tests for archive helpers (dvom/backup/compression.py) and the stream
adapters they are used with (dvom/utils/streams.py).
"""

import io
import gzip
import tarfile

import pytest

from dvom.backup.compression import (
    CompressionError,
    ResourceLimitError,
    clean_snapshot_name,
    copy_stream,
    format_size,
    inspect_archive,
    strip_archive_extension,
)
from dvom.utils.streams import ChainReader, CheckedReader, IterStream, read_full


class TestCopyStream:
    """Test bounded copying."""

    def test_copies_everything(self):
        dst = io.BytesIO()
        assert copy_stream(io.BytesIO(b'a' * 200000), dst) == 200000
        assert dst.getvalue() == b'a' * 200000

    def test_exactly_at_limit_is_allowed(self):
        dst = io.BytesIO()
        assert copy_stream(io.BytesIO(b'a' * 1000), dst, limit=1000) == 1000

    def test_over_limit_raises(self):
        """Test the copy stops as soon as the cap is crossed."""
        dst = io.BytesIO()

        with pytest.raises(ResourceLimitError):
            copy_stream(io.BytesIO(b'a' * 1001), dst, limit=1000, chunk_size=100)

        assert len(dst.getvalue()) == 1000

    def test_cancellation_check_called_per_chunk(self):
        calls = []
        copy_stream(io.BytesIO(b'a' * 250), io.BytesIO(), chunk_size=100,
                    cancellation_check=lambda: calls.append(1))

        # three chunks plus the final empty read
        assert len(calls) == 4

    def test_cancellation_aborts(self):
        def cancel():
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            copy_stream(io.BytesIO(b'data'), io.BytesIO(), cancellation_check=cancel)


class TestInspectArchive:
    """Test streaming archive inspection."""

    def test_counts_members_and_size(self, sample_archive):
        summary = inspect_archive(str(sample_archive))

        # test_data/, file1.txt, file2.txt
        assert summary['members'] == 3
        assert summary['size'] == len('Content 1') + len('Content 2')

    def test_decompression_bomb_rejected(self, tmp_path):
        """Test a small archive that expands past the limit is rejected."""
        payload = tmp_path / 'zeros.bin'
        payload.write_bytes(b'\0' * (2 * 1024 * 1024))
        archive = tmp_path / 'bomb.tar.gz'
        with tarfile.open(archive, 'w:gz') as tar:
            tar.add(payload, arcname='zeros.bin')

        assert archive.stat().st_size < 64 * 1024

        with pytest.raises(ResourceLimitError):
            inspect_archive(str(archive), limit=1024 * 1024)

    def test_not_gzip(self, tmp_path):
        bogus = tmp_path / 'bogus.tar.gz'
        bogus.write_bytes(b'this is not an archive at all' * 20)

        with pytest.raises(CompressionError):
            inspect_archive(str(bogus))

    def test_gzip_but_not_tar(self, tmp_path):
        bogus = tmp_path / 'plain.gz'
        bogus.write_bytes(gzip.compress(b'just text, no tar headers' * 40))

        with pytest.raises(CompressionError):
            inspect_archive(str(bogus))

    def test_missing_file(self, tmp_path):
        with pytest.raises(CompressionError):
            inspect_archive(str(tmp_path / 'missing.tar.gz'))


class TestNames:
    """Test snapshot name helpers."""

    @pytest.mark.parametrize('filename, expected', [
        ('backup.tar.gz', 'backup'),
        ('backup.tar.bz2', 'backup'),
        ('backup.tar.xz', 'backup'),
        ('backup.tar', 'backup'),
        ('backup.zip', 'backup'),
        ('backup.v2', 'backup.v2'),
        ('backup', 'backup'),
    ])
    def test_strip_archive_extension(self, filename, expected):
        assert strip_archive_extension(filename) == expected

    def test_clean_snapshot_name(self):
        assert clean_snapshot_name(' prod/db\\main.tar.gz ') == 'prod-db-main'

    @pytest.mark.parametrize('size, text', [
        (0, '0 B'),
        (512, '512 B'),
        (1536, '1.5 KB'),
        (5 * 1024 * 1024, '5.0 MB'),
        (100 * 1024 ** 3, '100.0 GB'),
    ])
    def test_format_size(self, size, text):
        assert format_size(size) == text


class TestStreams:
    """Test file-like adapters."""

    def test_chain_reader(self):
        reader = ChainReader(io.BytesIO(b'header|'), io.BytesIO(b''), io.BytesIO(b'body'))
        assert reader.read() == b'header|body'

    def test_chain_reader_closes_all(self):
        parts = [io.BytesIO(b'a'), io.BytesIO(b'b')]
        reader = ChainReader(*parts)
        reader.read()
        reader.close()
        assert all(p.closed for p in parts)

    def test_iter_stream_skips_empty_chunks(self):
        stream = IterStream([b'ab', b'', b'cd'])
        assert read_full(stream, 10) == b'abcd'

    def test_read_full_short_reads(self):
        stream = IterStream([b'a', b'b', b'c', b'd'])
        assert read_full(stream, 3) == b'abc'
        assert read_full(stream, 3) == b'd'
        assert read_full(stream, 3) == b''

    def test_checked_reader(self):
        calls = []
        reader = CheckedReader(io.BytesIO(b'x' * 10), lambda: calls.append(1), chunk_size=4)
        assert reader.read() == b'x' * 10
        assert len(calls) == 4

import hashlib

import pytest

from replica_sync import file_digest, files_equal


def test_digest_matches_md5_of_content(tmp_path):
    path = tmp_path / "a.bin"
    path.write_bytes(b"hello world")
    assert file_digest(path) == hashlib.md5(b"hello world").hexdigest()


def test_digest_reads_in_chunks(tmp_path):
    data = bytes(range(256)) * 40
    path = tmp_path / "big.bin"
    path.write_bytes(data)
    assert file_digest(path, chunk_size=7) == hashlib.md5(data).hexdigest()


def test_identical_files_are_equal(tmp_path):
    a, b = tmp_path / "a", tmp_path / "b"
    a.write_text("same content")
    b.write_text("same content")
    assert files_equal(a, b)


def test_one_byte_difference_is_not_equal(tmp_path):
    a, b = tmp_path / "a", tmp_path / "b"
    a.write_bytes(b"abcdef")
    b.write_bytes(b"abcdeg")
    assert not files_equal(a, b)


def test_same_size_and_mtime_still_compared_by_content(tmp_path):
    import os

    a, b = tmp_path / "a", tmp_path / "b"
    a.write_bytes(b"1111")
    b.write_bytes(b"2222")
    os.utime(a, ns=(1_000_000_000, 1_000_000_000))
    os.utime(b, ns=(1_000_000_000, 1_000_000_000))
    assert not files_equal(a, b)


def test_missing_file_raises_os_error(tmp_path):
    a = tmp_path / "a"
    a.write_text("x")
    with pytest.raises(OSError):
        files_equal(a, tmp_path / "missing")

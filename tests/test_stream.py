from __future__ import annotations

import io
import os
import stat
import tarfile

import pytest

from conftest import make_tar, tarinfo
from tarextract import (
    ConflictError, Entry, EntryType, ExtractionOptions, Outcome, Overwrite, ReadError,
    SequenceArchiveStream, TarArchiveStream, TruncatedArchiveError, extract_all,
    extract_tarfile,
)


def sample_members():
    return [
        tarinfo("x", tarfile.DIRTYPE, mode=0o755),
        tarinfo("x/f", data=b"hello", mode=0o644),
        tarinfo("x/link", tarfile.SYMTYPE, linkname="x/f"),
        tarinfo("x/hard", tarfile.LNKTYPE, linkname="x/f"),
        tarinfo("x/pipe", tarfile.FIFOTYPE, mode=0o600),
    ]


def test_entries_mapped_from_tar_headers():
    with TarArchiveStream(fileobj=make_tar(sample_members())) as stream:
        entries = []
        for entry in stream:
            entries.append(entry)
            if entry.isreg():
                assert stream.read_payload(512)[:5] == b"hello"

    assert [(e.path, e.type) for e in entries] == [
        ("x", EntryType.DIRECTORY),
        ("x/f", EntryType.REGULAR),
        ("x/link", EntryType.SYMLINK),
        ("x/hard", EntryType.HARDLINK),
        ("x/pipe", EntryType.FIFO),
    ]
    assert entries[1].size == 5
    assert entries[2].link_target == "x/f"
    assert entries[0].mode == 0o755


def test_unread_payload_is_skipped():
    members = [tarinfo("a", data=b"A" * 700), tarinfo("b", data=b"B")]
    with TarArchiveStream(fileobj=make_tar(members)) as stream:
        assert stream.next_entry().path == "a"
        entry = stream.next_entry()
        assert entry.path == "b"
        assert stream.read_payload(512)[:1] == b"B"
        assert stream.next_entry() is None


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="no fifos")
def test_extract_tar_archive(dest, read):
    result = extract_tarfile(fileobj=make_tar(sample_members()), destination_prefix=dest)

    assert stat.S_IMODE(os.stat(os.path.join(dest, "x")).st_mode) == 0o755
    assert read(dest, "x", "f") == b"hello"
    assert read(dest, "x", "link") == b"hello"
    assert os.stat(os.path.join(dest, "x", "hard")).st_ino == \
        os.stat(os.path.join(dest, "x", "f")).st_ino
    assert stat.S_ISFIFO(os.lstat(os.path.join(dest, "x", "pipe")).st_mode)
    assert result.clean
    assert len(result.outcomes) == 5


def test_extract_compressed_archive_from_file(tmp_path, dest, read):
    archive = tmp_path / "a.tar.gz"
    archive.write_bytes(make_tar([tarinfo("d/e/f.txt", data=b"gz")], "gz").getvalue())
    extract_tarfile(archive, destination_prefix=dest)
    assert read(dest, "d", "e", "f.txt") == b"gz"


def test_truncated_tar_archive(dest):
    data = make_tar([tarinfo("big", data=b"z" * 4000)]).getvalue()
    with pytest.raises(TruncatedArchiveError):
        extract_tarfile(fileobj=io.BytesIO(data[:512 + 1000]), destination_prefix=dest)


def test_garbage_is_a_read_error():
    with pytest.raises(ReadError):
        TarArchiveStream(fileobj=io.BytesIO(b"this is not a tar archive" * 40))


def test_sequence_stream_pads_payload():
    stream = SequenceArchiveStream([(Entry("f", size=3), b"abc")], blocksize=16)
    entry = stream.next_entry()
    assert stream.read_payload(16) == b"abc" + b"\0" * 13
    assert stream.read_payload(1) == b""
    assert stream.next_entry() is None
    assert entry.path == "f"


def test_options_respected_for_tar_archive(dest):
    members = [tarinfo("f", data=b"1"), tarinfo("f", data=b"2")]
    with pytest.raises(ConflictError):
        extract_all(TarArchiveStream(fileobj=make_tar(members)), dest,
                    ExtractionOptions(overwrite=Overwrite.REJECT))


def test_empty_archive_is_a_clean_end(dest):
    result = extract_tarfile(fileobj=make_tar([]), destination_prefix=dest)
    assert result.outcomes == []
    assert os.listdir(dest) == []


def two_member_archive():
    return make_tar([tarinfo("a", data=b"A"), tarinfo("b", data=b"B")]).getvalue()


def test_corrupt_later_header_is_a_read_error(dest, read):
    data = bytearray(two_member_archive())
    data[1024:1536] = b"\xff" * 512
    with pytest.raises(ReadError) as excinfo:
        extract_tarfile(fileobj=io.BytesIO(bytes(data)), destination_prefix=dest)
    assert read(dest, "a") == b"A"
    assert excinfo.value.result.outcomes == [(os.path.join(dest, "a"), Outcome.CREATED)]


def test_archive_cut_at_header_boundary_is_a_read_error(dest):
    data = two_member_archive()
    with pytest.raises(ReadError, match="end-of-archive"):
        extract_tarfile(fileobj=io.BytesIO(data[:1024]), destination_prefix=dest)
    assert os.listdir(dest) == ["a"]


def test_archive_cut_inside_header_is_a_read_error(dest):
    data = two_member_archive()
    with pytest.raises(ReadError, match="truncated header"):
        extract_tarfile(fileobj=io.BytesIO(data[:1024 + 100]), destination_prefix=dest)


def test_unread_payload_cut_short_is_a_read_error():
    data = make_tar([tarinfo("a", data=b"A" * 2000), tarinfo("b")]).getvalue()
    with TarArchiveStream(fileobj=io.BytesIO(data[:512 + 1000])) as stream:
        assert stream.next_entry().path == "a"
        with pytest.raises(ReadError):
            stream.next_entry()


@pytest.mark.parametrize("kind", [tarfile.SYMTYPE, tarfile.LNKTYPE])
def test_link_without_target_is_a_read_error(dest, kind):
    members = [tarinfo("f", data=b"F"), tarinfo("l", kind, linkname="")]
    with pytest.raises(ReadError, match="needs a link target"):
        extract_tarfile(fileobj=make_tar(members), destination_prefix=dest)
    assert not os.path.exists(os.path.join(dest, "l"))

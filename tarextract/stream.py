"""Archive streams the Extractor reads entries from."""
from __future__ import annotations
import io
import logging
import os
import tarfile
import zlib
from typing import IO, Iterable, Optional, Tuple
from .extractfile import BLOCKSIZE, Entry, EntryType, ReadError, round_up

log = logging.getLogger(__name__)


class ArchiveStream(object):
    """Forward-only cursor over the entries of an archive.

    next_entry() returns the next Entry, None at the clean end of the
    archive, and raises ReadError when the next header cannot be
    decoded. After a regular file entry, its padded payload has to be
    read with read_payload() before next_entry() is called again.
    """

    blocksize = BLOCKSIZE

    def next_entry(self) -> Optional[Entry]:
        raise NotImplementedError

    def read_payload(self, size: int) -> bytes:
        raise NotImplementedError

    def close(self):
        pass

    def __iter__(self):
        while True:
            entry = self.next_entry()
            if entry is None:
                return
            yield entry


def entry_from_tarinfo(tarinfo: tarfile.TarInfo) -> Entry:
    if tarinfo.isdir():
        kind = EntryType.DIRECTORY
    elif tarinfo.issym():
        kind = EntryType.SYMLINK
    elif tarinfo.islnk():
        kind = EntryType.HARDLINK
    elif tarinfo.ischr():
        kind = EntryType.CHARDEV
    elif tarinfo.isblk():
        kind = EntryType.BLOCKDEV
    elif tarinfo.isfifo():
        kind = EntryType.FIFO
    else:
        # Unknown types carry their data like regular files.
        kind = EntryType.REGULAR
    return Entry(tarinfo.name, kind, mode=tarinfo.mode, size=tarinfo.size,
                 link_target=tarinfo.linkname or None,
                 devmajor=tarinfo.devmajor, devminor=tarinfo.devminor)


class TarArchiveStream(ArchiveStream):
    """ArchiveStream over a tar archive, decoded by the tarfile module
    in streaming mode. Compressed archives are detected transparently.
    """

    def __init__(self, name: str | os.PathLike | None = None, fileobj: Optional[IO[bytes]] = None,
                 mode: str = "r|*"):
        try:
            self.tarfile = tarfile.open(name, mode=mode, fileobj=fileobj)
        except tarfile.TarError as e:
            raise ReadError("cannot open archive: %s" % e, name and os.fspath(name)) from e
        self.name = self.tarfile.name
        # tarfile decodes the first header while opening; None there
        # means the archive holds nothing but its end marker.
        self.first = self.tarfile.firstmember
        self.tarfile.firstmember = None
        self.done = self.first is None
        log.debug("reading %s (%s)", self.name or "<stream>", mode)

    def next_entry(self) -> Optional[Entry]:
        if self.done:
            return None
        if self.first is not None:
            tarinfo, self.first = self.first, None
        else:
            tarinfo = self._next_tarinfo()
            if tarinfo is None:
                self.done = True
                return None
        try:
            return entry_from_tarinfo(tarinfo)
        except ValueError as e:
            raise ReadError("bad archive member: %s" % e, self.name) from e

    def _next_tarinfo(self) -> Optional[tarfile.TarInfo]:
        """Decode the next header. Only a zero block ends the archive
        cleanly; a missing, short or corrupt header is a ReadError.
        """
        tar = self.tarfile
        try:
            if tar.offset != tar.fileobj.tell():
                # Skip payload the caller left unread.
                tar.fileobj.seek(tar.offset - 1)
                if not tar.fileobj.read(1):
                    raise ReadError("unexpected end of data", self.name)
            return tarfile.TarInfo.fromtarfile(tar)
        except tarfile.EOFHeaderError:
            return None
        except tarfile.EmptyHeaderError as e:
            raise ReadError("archive ends without end-of-archive marker", self.name) from e
        except tarfile.TruncatedHeaderError as e:
            raise ReadError("truncated header: %s" % e, self.name) from e
        except (tarfile.TarError, EOFError, zlib.error) as e:
            raise ReadError("cannot read archive header: %s" % e, self.name) from e

    def read_payload(self, size: int) -> bytes:
        # Payload left unread is skipped by the next call to next_entry().
        return self.tarfile.fileobj.read(size)

    def close(self):
        self.tarfile.close()

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        self.close()


class SequenceArchiveStream(ArchiveStream):
    """ArchiveStream over already decoded entries. Each item is an
    Entry or an (Entry, payload) pair; payloads of regular entries are
    padded to the block size the way an archive stores them, unless
    pad is False, in which case the payload is served as given.
    """

    def __init__(self, items: Iterable[Entry | Tuple[Entry, bytes]], blocksize: int = BLOCKSIZE,
                 pad: bool = True):
        self.items = iter(items)
        self.blocksize = blocksize
        self.pad = pad
        self.payload = io.BytesIO()
        self.consumed = 0

    def next_entry(self) -> Optional[Entry]:
        try:
            item = next(self.items)
        except StopIteration:
            return None
        if isinstance(item, Entry):
            entry, data = item, b""
        else:
            entry, data = item
        if entry.isreg() and self.pad:
            data = data[:entry.size]
            data += b"\0" * (round_up(entry.size, self.blocksize) - len(data))
        self.payload = io.BytesIO(data)
        return entry

    def read_payload(self, size: int) -> bytes:
        buf = self.payload.read(size)
        self.consumed += len(buf)
        return buf

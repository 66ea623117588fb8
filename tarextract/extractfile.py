# -*- coding: utf-8 -*-
#-------------------------------------------------------------------
# extractfile.py
#-------------------------------------------------------------------

# Copyright (C) 2002 Lars Gustäbel <lars@gustaebel.de>
# Copyright (c) 2013, Citrix Inc.
# All rights reserved.
#
# Permission  is  hereby granted,  free  of charge,  to  any person
# obtaining a  copy of  this software  and associated documentation
# files  (the  "Software"),  to   deal  in  the  Software   without
# restriction,  including  without limitation  the  rights to  use,
# copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies  of  the  Software,  and to  permit  persons  to  whom the
# Software  is  furnished  to  do  so,  subject  to  the  following
# conditions:
#
# The above copyright  notice and this  permission notice shall  be
# included in all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS  IS", WITHOUT WARRANTY OF ANY  KIND,
# EXPRESS OR IMPLIED, INCLUDING  BUT NOT LIMITED TO  THE WARRANTIES
# OF  MERCHANTABILITY,  FITNESS   FOR  A  PARTICULAR   PURPOSE  AND
# NONINFRINGEMENT.  IN  NO  EVENT SHALL  THE  AUTHORS  OR COPYRIGHT
# HOLDERS  BE LIABLE  FOR ANY  CLAIM, DAMAGES  OR OTHER  LIABILITY,
# WHETHER  IN AN  ACTION OF  CONTRACT, TORT  OR OTHERWISE,  ARISING
# FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR
# OTHER DEALINGS IN THE SOFTWARE.

"""Materialize archive entries onto a filesystem.

   Entries are pulled one at a time from an archive stream and turned
   into directories, regular files, hardlinks, device nodes and fifos.
   Symbolic link entries are deferred to a second pass, after the rest
   of the tree exists, and by default are realized as copies of their
   targets rather than as real symbolic links.

   Derived from Lars Gustäbel's tarfile.py
"""
from __future__ import annotations

#---------
# Imports
#---------
import collections
import enum
import errno
import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from typing import Deque, Iterator, List, Optional, Tuple

log = logging.getLogger(__name__)

__all__ = ["Extractor", "Entry", "EntryType", "ExtractionOptions",
           "ExtractionResult", "ExtractionError", "resolve", "ensure_parent"]

#---------------------------------------------------------
# constants
#---------------------------------------------------------
BLOCKSIZE       = 512                # payload padding unit
RECORDSIZE      = BLOCKSIZE * 20     # length of records
LINK_COPY_MODE  = 0o700              # mode given to copied links

try:
    MAXPATHLEN = os.pathconf("/", "PC_PATH_MAX")
except (AttributeError, ValueError, OSError):
    MAXPATHLEN = 4096                # pragma: no cover

#---------------------------------------------------------
# Some useful functions
#---------------------------------------------------------

def round_up(count, blocksize=BLOCKSIZE):
    """Round up a byte count by blocksize and return it,
       e.g. round_up(513) => 1024.
    """
    blocks, remainder = divmod(count, blocksize)
    if remainder:
        blocks += 1
    return blocks * blocksize


def resolve(prefix, entry_path):
    # type:(Optional[str], str) -> str
    """Join the destination prefix and the recorded path of an entry.
       No normalization is done, a `..' in entry_path stays a `..'.
    """
    entry_path = os.fspath(entry_path)
    if prefix:
        path = "%s/%s" % (os.fspath(prefix), entry_path)
    else:
        path = entry_path
    if len(os.fsencode(path)) >= MAXPATHLEN:
        raise PathTooLongError("path too long (%d bytes)" % len(os.fsencode(path)),
                               path)
    return path


def ensure_parent(path):
    """Create all missing upper directories of path.
    """
    upperdirs = os.path.dirname(path)
    if upperdirs and not os.path.isdir(upperdirs):
        os.makedirs(upperdirs, 0o777, exist_ok=True)


#---------------------------------------------------------
# exceptions
#---------------------------------------------------------
class ExtractionError(Exception):
    """Base exception. `path' names the offending filesystem object."""
    def __init__(self, message, path=None):
        super().__init__(message)
        self.path = path
class ConflictError(ExtractionError):
    """Destination exists and overwriting is rejected."""
    pass
class NotFoundError(ExtractionError):
    """Link target or copy source is missing."""
    pass
class TruncatedArchiveError(ExtractionError):
    """The archive ended inside a payload; the stream is unusable."""
    pass
class ExtractIOError(ExtractionError):
    """Generic filesystem failure."""
    pass
class OutOfMemoryError(ExtractionError):
    """Memory ran out while materializing an entry."""
    pass
class PathTooLongError(ExtractionError):
    """A resolved path exceeds the platform limit."""
    pass
class UnsupportedEntryTypeError(ExtractionError):
    """The platform cannot create this kind of object."""
    pass
class ReadError(ExtractionError):
    """The archive stream could not decode the next entry."""
    def __init__(self, message, path=None, result=None):
        super().__init__(message, path)
        self.result = result


def _convert(e, path):
    # type:(OSError, str) -> ExtractionError
    """Turn an OSError raised while materializing path into the
       matching ExtractionError.
    """
    if isinstance(e, FileNotFoundError):
        cls = NotFoundError
    elif e.errno == errno.ENAMETOOLONG:
        cls = PathTooLongError
    elif e.errno == errno.ENOMEM:
        cls = OutOfMemoryError
    else:
        cls = ExtractIOError
    if e.filename is None:
        msg = "%s: %r" % (e.strerror or e, path)
    else:
        msg = "%s: %r" % (e.strerror, e.filename)
    return cls(msg, path)

#---------------------------
# internal file interface
#---------------------------
class _LowLevelFile(object):
    """Low-level file object for the destination of a regular
       file entry. Writes go straight to the descriptor.
    """

    def __init__(self, name):
        flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC | getattr(os, "O_BINARY", 0)
        self.name = name
        self.fd = os.open(name, flags, 0o666)

    def close(self):
        if self.fd is not None:
            fd, self.fd = self.fd, None
            os.close(fd)

    def write(self, s):
        view = memoryview(s)
        while view:
            n = os.write(self.fd, view)
            view = view[n:]

    def chmod(self, mode):
        if not hasattr(os, "fchmod"):
            raise OSError(errno.ENOSYS, "fchmod not supported by system", self.name)
        os.fchmod(self.fd, mode)

#------------------
# Exported Classes
#------------------
class EntryType(enum.Enum):
    REGULAR = "regular"
    DIRECTORY = "directory"
    HARDLINK = "hardlink"
    SYMLINK = "symlink"
    CHARDEV = "chardev"
    BLOCKDEV = "blockdev"
    FIFO = "fifo"


class Outcome(enum.Enum):
    CREATED = "created"
    ALREADY_EXISTED = "already-existed"


class Overwrite(enum.Enum):
    ALLOW = "allow"
    REJECT = "reject"


class SymlinkMode(enum.Enum):
    COPY = "copy"           # duplicate the target's content
    LINK = "link"           # create a real symbolic link


class Entry(object):
    """Informational class which holds the details about one
       archive member as delivered by an archive stream. An Entry is
       only valid until the stream is asked for the next one.
    """

    def __init__(self, path, type=EntryType.REGULAR, mode=0o644, size=0,
                 link_target=None, devmajor=0, devminor=0):
        if type in (EntryType.HARDLINK, EntryType.SYMLINK) and not link_target:
            raise ValueError("%s entry %r needs a link target" % (type.value, path))
        self.path = path
        self.type = type
        self.mode = mode & 0o7777
        self.size = size if type is EntryType.REGULAR else 0
        self.link_target = link_target
        self.devmajor = devmajor
        self.devminor = devminor

    def __repr__(self):
        return "<%s %s %r at %#x>" % (self.__class__.__name__, self.type.value,
                                      self.path, id(self))

    def isreg(self):
        return self.type is EntryType.REGULAR
    def isdir(self):
        return self.type is EntryType.DIRECTORY
    def islnk(self):
        return self.type is EntryType.HARDLINK
    def issym(self):
        return self.type is EntryType.SYMLINK
    def ischr(self):
        return self.type is EntryType.CHARDEV
    def isblk(self):
        return self.type is EntryType.BLOCKDEV
    def isfifo(self):
        return self.type is EntryType.FIFO
# class Entry


class ExtractionOptions(object):
    """Settings for one extraction run.

       overwrite           Overwrite.ALLOW replaces existing files,
                           Overwrite.REJECT fails on any existing object.
       destination_prefix  joined in front of every entry path.
       symlinks            SymlinkMode.COPY (default) or SymlinkMode.LINK.
       link_copy_mode      mode of copied links, None keeps the entry's.
    """

    ENV_PREFIX = "TAREXTRACT_"

    def __init__(self, overwrite=Overwrite.ALLOW, destination_prefix=None,
                 symlinks=SymlinkMode.COPY, link_copy_mode=LINK_COPY_MODE):
        self.overwrite = Overwrite(overwrite)
        self.destination_prefix = destination_prefix
        self.symlinks = SymlinkMode(symlinks)
        self.link_copy_mode = link_copy_mode

    def __repr__(self):
        return "%s(overwrite=%s, destination_prefix=%r, symlinks=%s, link_copy_mode=%s)" % (
            self.__class__.__name__, self.overwrite.value, self.destination_prefix,
            self.symlinks.value,
            None if self.link_copy_mode is None else oct(self.link_copy_mode))

    @classmethod
    def from_env(cls, environ=None):
        """Build options from TAREXTRACT_* environment variables. Unset
           variables keep their defaults.
        """
        if environ is None:
            environ = os.environ
        kwargs = {}
        value = environ.get(cls.ENV_PREFIX + "OVERWRITE")
        if value:
            kwargs["overwrite"] = Overwrite(value.strip().lower())
        value = environ.get(cls.ENV_PREFIX + "SYMLINKS")
        if value:
            kwargs["symlinks"] = SymlinkMode(value.strip().lower())
        value = environ.get(cls.ENV_PREFIX + "LINK_MODE")
        if value is not None:
            value = value.strip()
            if value.lower() in ("", "entry", "none"):
                kwargs["link_copy_mode"] = None
            else:
                kwargs["link_copy_mode"] = int(value, 8)
        value = environ.get(cls.ENV_PREFIX + "PREFIX")
        if value:
            kwargs["destination_prefix"] = value
        return cls(**kwargs)


@dataclass
class DeferredLinkRecord:
    """A symbolic link entry waiting for the second pass."""
    target_path: str
    link_path: str
    mode: int
    linkname: str = ""


class DeferredLinkQueue(object):
    """FIFO of DeferredLinkRecords. Each record leaves the queue
       exactly once, either through drain() or clear().
    """

    def __init__(self):
        self._records = collections.deque()  # type: Deque[DeferredLinkRecord]

    def __len__(self):
        return len(self._records)

    def push(self, record):
        self._records.append(record)

    def drain(self):
        # type:() -> Iterator[DeferredLinkRecord]
        while self._records:
            yield self._records.popleft()

    def clear(self):
        self._records.clear()


@dataclass
class LinkWarning:
    link_path: str
    target_path: str
    reason: str

    def __str__(self):
        return "%s -> %s: %s" % (self.link_path, self.target_path, self.reason)


@dataclass
class ExtractionResult:
    """Outcome of a run that was not aborted. Links that could not be
       materialized in the second pass are listed in `warnings'.
    """
    outcomes: List[Tuple[str, Outcome]] = field(default_factory=list)
    warnings: List[LinkWarning] = field(default_factory=list)

    @property
    def clean(self):
        """True when no queued link had to be skipped."""
        return not self.warnings

    def record(self, path, outcome):
        self.outcomes.append((path, outcome))


class Extractor(object):
    """The Extractor class drives the extraction of an archive
       stream onto the filesystem.
    """

    debug = 0                   # May be set from 0 (no msgs) to 3 (all msgs)

    bufsize = RECORDSIZE        # Payload is read in chunks of this size.

    # Materializer for every entry type, looked up by extract_one().
    makers = {
        EntryType.REGULAR:   "makefile",
        EntryType.DIRECTORY: "makedir",
        EntryType.HARDLINK:  "makelink",
        EntryType.SYMLINK:   "makesymlink",
        EntryType.CHARDEV:   "makedev",
        EntryType.BLOCKDEV:  "makedev",
        EntryType.FIFO:      "makefifo",
    }

    def __init__(self, stream, options=None):
        """Extract from `stream', an ArchiveStream. `options' is an
           ExtractionOptions instance, the defaults are used if it is
           omitted. The stream is not closed unless close() is called
           or the Extractor is used as a context manager.
        """
        if options is None:
            options = ExtractionOptions()
        self.stream = stream
        self.options = options
        self.deferred = DeferredLinkQueue()
        self.closed = False

    @property
    def prefix(self):
        return self.options.destination_prefix

    @property
    def blocksize(self):
        return getattr(self.stream, "blocksize", BLOCKSIZE)

    #--------------------------------------------------------------------------
    # The public methods which Extractor provides:

    def close(self):
        if self.closed:
            return
        self.deferred.clear()
        close = getattr(self.stream, "close", None)
        if close is not None:
            close()
        self.closed = True

    def extractall(self):
        # type:() -> ExtractionResult
        """Extract every entry of the stream. Symbolic links are queued
           and materialized once everything else has been extracted.
           Raises the first fatal ExtractionError; failures on queued
           links are returned as warnings instead.
        """
        self._check()
        result = ExtractionResult()
        readerror = None

        try:
            while True:
                try:
                    entry = self.stream.next_entry()
                except ReadError as e:
                    readerror = e
                    break
                if entry is None:
                    break
                targetpath = resolve(self.prefix, entry.path)
                if entry.issym():
                    self._defer(entry, targetpath)
                    continue
                result.record(targetpath, self.extract_one(entry, targetpath))
        except ExtractionError as e:
            log.error("extraction aborted at %r: %s", e.path, e)
            self.deferred.clear()
            raise

        for record in self.deferred.drain():
            self._materialize_deferred(record, result)

        if readerror is not None:
            readerror.result = result
            raise readerror
        return result

    def extract(self, entry):
        """Extract a single entry below the destination prefix. Symbolic
           links are materialized right away.
        """
        self._check()
        return self.extract_one(entry, resolve(self.prefix, entry.path))

    def extract_one(self, entry, targetpath):
        # type:(Entry, str) -> Outcome
        """Materialize entry at targetpath with the maker registered
           for its type.
        """
        if self.options.overwrite is Overwrite.REJECT:
            self._reject_existing(targetpath)

        if entry.issym():
            self._dbg(1, "%s -> %s" % (entry.path, entry.link_target))
        else:
            self._dbg(1, entry.path)

        maker = getattr(self, self.makers[entry.type])
        try:
            return maker(entry, targetpath)
        except OSError as e:
            raise _convert(e, targetpath) from e
        except MemoryError as e:
            raise OutOfMemoryError("out of memory", targetpath) from e

    #--------------------------------------------------------------------------
    # Below are the different file methods. They are called via
    # extract_one(). They can be replaced in a subclass to implement
    # other functionality.

    def makefile(self, entry, targetpath):
        """Make a file called targetpath from the payload of entry.
        """
        try:
            target = _LowLevelFile(targetpath)
        except FileNotFoundError:
            ensure_parent(targetpath)
            target = _LowLevelFile(targetpath)

        try:
            self._copypayload(entry, target)
            try:
                target.chmod(entry.mode)
            except OSError:
                target.close()
                os.chmod(targetpath, entry.mode)
        finally:
            target.close()
        return Outcome.CREATED

    def makedir(self, entry, targetpath):
        """Make a directory called targetpath.
        """
        ensure_parent(targetpath)
        try:
            os.mkdir(targetpath, entry.mode)
        except FileExistsError:
            if not os.path.isdir(targetpath):
                raise
            os.chmod(targetpath, entry.mode)
            self._dbg(2, "using existing directory %s" % targetpath)
            return Outcome.ALREADY_EXISTED
        os.chmod(targetpath, entry.mode)
        return Outcome.CREATED

    def makelink(self, entry, targetpath):
        """Make a hard link called targetpath. The target must have been
           extracted already.
        """
        ensure_parent(targetpath)
        os.link(resolve(self.prefix, entry.link_target), targetpath)
        return Outcome.CREATED

    def makesymlink(self, entry, targetpath):
        """Materialize a symbolic link entry immediately, without going
           through the deferred queue.
        """
        self._link(self._record(entry, targetpath))
        return Outcome.CREATED

    def makedev(self, entry, targetpath):
        """Make a character or block device called targetpath.
        """
        if not hasattr(os, "mknod") or not hasattr(os, "makedev"):
            raise UnsupportedEntryTypeError("special devices not supported by system",
                                            targetpath)
        ensure_parent(targetpath)

        mode = entry.mode
        if entry.isblk():
            mode |= stat.S_IFBLK
        else:
            mode |= stat.S_IFCHR

        os.mknod(targetpath, mode, os.makedev(entry.devmajor, entry.devminor))
        return Outcome.CREATED

    def makefifo(self, entry, targetpath):
        """Make a fifo called targetpath.
        """
        if not hasattr(os, "mkfifo"):
            raise UnsupportedEntryTypeError("fifo not supported by system", targetpath)
        ensure_parent(targetpath)
        os.mkfifo(targetpath, entry.mode)
        return Outcome.CREATED

    #--------------------------------------------------------------------------
    # Little helper methods:

    def _copypayload(self, entry, target):
        """Read the padded payload of entry from the stream and write
           its first entry.size bytes to target. The whole padded
           payload is consumed even if writing fails.
        """
        remaining = round_up(entry.size, self.blocksize)
        left = entry.size
        error = None

        while remaining:
            count = min(self.bufsize, remaining)
            buf = self.stream.read_payload(count)
            if len(buf) != count:
                raise TruncatedArchiveError(
                    "unexpected end of data, %d of %d payload bytes missing"
                    % (remaining - len(buf), round_up(entry.size, self.blocksize)),
                    target.name)
            remaining -= count

            if left and error is None:
                data = buf[:left]
                try:
                    target.write(data)
                except OSError as e:
                    error = e
                left -= len(data)

        if error is not None:
            raise error

    def _record(self, entry, targetpath):
        mode = self.options.link_copy_mode
        if mode is None:
            mode = entry.mode
        return DeferredLinkRecord(target_path=resolve(self.prefix, entry.link_target),
                                  link_path=targetpath,
                                  mode=mode,
                                  linkname=entry.link_target)

    def _defer(self, entry, targetpath):
        if self.options.overwrite is Overwrite.REJECT:
            self._reject_existing(targetpath)
        self._dbg(2, "deferring %s -> %s" % (entry.path, entry.link_target))
        self.deferred.push(self._record(entry, targetpath))

    def _link(self, record):
        """Materialize a queued link, either as a copy of its target
           or as a real symbolic link.
        """
        ensure_parent(record.link_path)
        try:
            os.unlink(record.link_path)
        except FileNotFoundError:
            pass

        if self.options.symlinks is SymlinkMode.LINK:
            os.symlink(record.linkname, record.link_path)
            return

        self._dbg(1, "copy %s to %s (mode: %#o)" % (record.target_path,
                                                     record.link_path, record.mode))
        if not stat.S_ISREG(os.stat(record.target_path).st_mode):
            raise OSError(errno.EINVAL, "not a regular file", record.target_path)
        with open(record.target_path, "rb") as source:
            with open(record.link_path, "wb") as target:
                shutil.copyfileobj(source, target)
        os.chmod(record.link_path, record.mode)

    def _materialize_deferred(self, record, result):
        if (self.options.overwrite is Overwrite.REJECT
                and os.path.lexists(record.link_path)):
            self._warn(result, record, "destination exists")
            return
        try:
            self._link(record)
        except OSError as e:
            self._warn(result, record, e.strerror or str(e))
            return
        result.record(record.link_path, Outcome.CREATED)

    def _warn(self, result, record, reason):
        warning = LinkWarning(record.link_path, record.target_path, reason)
        log.warning("skipped link %s", warning)
        result.warnings.append(warning)

    def _reject_existing(self, targetpath):
        try:
            os.lstat(targetpath)
        except FileNotFoundError:
            return
        except OSError:
            pass
        raise ConflictError("refusing to overwrite %r" % targetpath, targetpath)

    def _check(self):
        """Check if the Extractor is still open.
        """
        if self.closed:
            raise IOError("%s is closed" % self.__class__.__name__)

    def _dbg(self, level, msg):
        """Write debugging output to the module logger.
        """
        if level <= self.debug:
            log.debug(msg)

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        self.close()
# class Extractor

if set(Extractor.makers) != set(EntryType):  # pragma: no cover
    raise ImportError("no maker for %s" % (set(EntryType) - set(Extractor.makers)))

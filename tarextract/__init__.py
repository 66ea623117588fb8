from __future__ import annotations
import os
from typing import IO, Optional
from .extractfile import (
    BLOCKSIZE, ConflictError, DeferredLinkQueue, DeferredLinkRecord, Entry, EntryType,
    ExtractIOError, ExtractionError, ExtractionOptions, ExtractionResult, Extractor,
    LinkWarning, NotFoundError, Outcome, OutOfMemoryError, Overwrite, PathTooLongError,
    ReadError, SymlinkMode, TruncatedArchiveError, UnsupportedEntryTypeError,
    ensure_parent, resolve, round_up,
)
from .stream import ArchiveStream, SequenceArchiveStream, TarArchiveStream

__version__ = "0.1"


def extract_all(stream: ArchiveStream, destination_prefix: Optional[str] = None,
                options: Optional[ExtractionOptions] = None) -> ExtractionResult:
    if options is None:
        options = ExtractionOptions()
    if destination_prefix is not None:
        options = ExtractionOptions(overwrite=options.overwrite,
                                    destination_prefix=destination_prefix,
                                    symlinks=options.symlinks,
                                    link_copy_mode=options.link_copy_mode)
    return Extractor(stream, options).extractall()


def extract_tarfile(name: str | os.PathLike | None = None, fileobj: Optional[IO[bytes]] = None,
                    destination_prefix: Optional[str] = None,
                    options: Optional[ExtractionOptions] = None) -> ExtractionResult:
    with TarArchiveStream(name, fileobj=fileobj) as stream:
        return extract_all(stream, destination_prefix, options)

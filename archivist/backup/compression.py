"""
Compression handlers for backup archives.

Supports multiple formats:
- none / tar: Plain tar
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- zip: Standard zip compression

Archives are built from ArchiveEntry objects: either a filesystem path added
recursively, or a stream (database dump) that is consumed in chunks. Entry
order is preserved, and stream entries get a fixed mtime and owner, so the
same inputs always produce the same bytes.
"""

import gzip
import os
import shutil
import tarfile
import tempfile
import time
import zipfile
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, ContextManager, List, Optional


CHUNK_SIZE = 1024 * 1024

EXTENSIONS = {
    'none': 'tar',
    'tar': 'tar',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'zip': 'zip',
}


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


@dataclass
class ArchiveEntry:
    """
    One named input of an archive.

    Exactly one of `path` (file or directory added verbatim) or `opener`
    (callable returning a context manager that yields a binary stream) is set.
    `exclude` filters source paths below a directory entry.
    """
    name: str
    path: Optional[str] = None
    opener: Optional[Callable[[], ContextManager[BinaryIO]]] = None
    exclude: Optional[Callable[[Path], bool]] = None

    @property
    def is_stream(self) -> bool:
        return self.opener is not None


def archive_extension(compression_format: str) -> str:
    """
    Get the file extension (without leading dot) for a format.

    Raises:
        ValueError: If compression_format is invalid
    """
    if compression_format not in EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(EXTENSIONS.keys())}"
        )
    return EXTENSIONS[compression_format]


def create_archive(
    entries: List[ArchiveEntry],
    output_path: str,
    compression_format: str = 'tar.gz',
    mtime: Optional[int] = None
) -> str:
    """
    Create a compressed archive from entries.

    Args:
        entries: Entries to include, in archive order
        output_path: Path where archive should be created (without extension)
        compression_format: Format to use (see EXTENSIONS)
        mtime: Modification time (epoch seconds) for stream entries and gzip header

    Returns:
        Full path to the created archive file

    Raises:
        CompressionError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if not entries:
        raise CompressionError("No entries provided")

    extension = archive_extension(compression_format)
    archive_path = f"{output_path}.{extension}"

    names = set()
    for entry in entries:
        if entry.name in names:
            raise CompressionError(f"Duplicate entry name in archive: {entry.name}")
        names.add(entry.name)
        if not entry.is_stream and not os.path.exists(entry.path):
            raise CompressionError(f"Path does not exist: {entry.path}")

    handler = _create_zip if compression_format == 'zip' else _create_tar
    mtime = int(mtime if mtime is not None else time.time())

    try:
        handler(entries, archive_path, compression_format, mtime)
        return archive_path
    except BaseException as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            os.remove(archive_path)
        if isinstance(e, CompressionError):
            raise
        if isinstance(e, (OSError, tarfile.TarError, zipfile.BadZipFile)):
            raise CompressionError(f"Failed to create archive: {e}") from e
        # Errors from stream openers (failed dumps) keep their own type
        raise


def _create_tar(entries: List[ArchiveEntry], archive_path: str, compression_format: str, mtime: int):
    """
    Create a TAR archive with optional compression.

    Stream entries are spooled to an anonymous temp file next to the archive
    because a tar header needs the entry size up front.
    """
    spool_dir = os.path.dirname(os.path.abspath(archive_path))

    with ExitStack() as stack:
        raw = stack.enter_context(open(archive_path, 'wb'))

        if compression_format == 'tar.gz':
            # Explicit GzipFile so the header carries no file name and a fixed mtime
            fileobj = stack.enter_context(gzip.GzipFile(filename='', mode='wb', fileobj=raw, mtime=mtime))
            mode = 'w'
        elif compression_format == 'tar.bz2':
            fileobj, mode = raw, 'w:bz2'
        elif compression_format == 'tar.xz':
            fileobj, mode = raw, 'w:xz'
        else:
            fileobj, mode = raw, 'w'

        tar = stack.enter_context(tarfile.open(fileobj=fileobj, mode=mode))

        for entry in entries:
            if entry.is_stream:
                _add_stream_to_tar(tar, entry, spool_dir, mtime)
            else:
                tar.add(entry.path, arcname=entry.name, recursive=True, filter=_tar_filter(entry))


def _add_stream_to_tar(tar: tarfile.TarFile, entry: ArchiveEntry, spool_dir: str, mtime: int):
    with tempfile.TemporaryFile(dir=spool_dir, prefix='.spool-') as spool:
        # The opener checks the producer's exit status on exit, so a failed
        # dump never reaches the archive
        with entry.opener() as stream:
            shutil.copyfileobj(stream, spool, CHUNK_SIZE)

        info = tarfile.TarInfo(entry.name)
        info.size = spool.tell()
        info.mtime = mtime
        info.mode = 0o644
        info.uid = info.gid = 0
        info.uname = info.gname = ''

        spool.seek(0)
        tar.addfile(info, spool)


def _tar_filter(entry: ArchiveEntry):
    if entry.exclude is None:
        return None

    root = Path(entry.path)

    def tar_filter(tarinfo: tarfile.TarInfo):
        relative = os.path.relpath(tarinfo.name, entry.name)
        source = root if relative == '.' else root / relative
        if entry.exclude(source):
            return None
        return tarinfo

    return tar_filter


def _create_zip(entries: List[ArchiveEntry], archive_path: str, compression_format: str, mtime: int):
    """
    Create a ZIP archive.

    Args:
        entries: Entries to include
        archive_path: Output archive path
        compression_format: Not used for zip, kept for interface consistency
        mtime: Modification time for stream entries
    """
    # Zip timestamps cannot predate 1980
    date_time = time.gmtime(max(mtime, 315532800))[:6]

    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for entry in entries:
            if entry.is_stream:
                info = zipfile.ZipInfo(entry.name, date_time=date_time)
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = 0o644 << 16
                with entry.opener() as stream:
                    with zipf.open(info, 'w', force_zip64=True) as dest:
                        shutil.copyfileobj(stream, dest, CHUNK_SIZE)
            else:
                source = Path(entry.path)
                if source.is_file():
                    zipf.write(source, entry.name)
                else:
                    _add_directory_to_zip(zipf, source, entry)


def _add_directory_to_zip(zipf: zipfile.ZipFile, directory: Path, entry: ArchiveEntry):
    """
    Recursively add directory to zip archive in sorted order.

    Args:
        zipf: ZipFile object
        directory: Directory to add
        entry: Entry providing the archive name and exclude filter
    """
    for root, dirs, files in os.walk(directory):
        root_path = Path(root)
        if entry.exclude:
            dirs[:] = [d for d in dirs if not entry.exclude(root_path / d)]
        dirs.sort()

        for name in sorted(files):
            item = root_path / name
            if entry.exclude and entry.exclude(item):
                continue
            relative_path = Path(entry.name) / item.relative_to(directory)
            zipf.write(item, relative_path.as_posix())


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")

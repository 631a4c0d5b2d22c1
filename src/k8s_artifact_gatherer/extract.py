from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import BinaryIO
import os
import posixpath
import shutil
import stat
import tarfile
import threading

from .logging_config import get_logger

COPY_CHUNK_SIZE = 64 * 1024
DEFAULT_DIRECTORY_MODE = 0o755

logger = get_logger(__name__)


class ArchiveExtractionError(RuntimeError):
    """Raised when the tar stream cannot be reconstructed on disk."""

    def __init__(self, message: str, *, entry: str | None = None) -> None:
        super().__init__(message)
        self.entry = entry
        self.diagnostics = ""


class ArchiveCorruptionError(ArchiveExtractionError):
    """Raised for entries that fall outside the agreed prefix or the destination root."""


def storage_prefix(mount_path: str) -> str:
    """Entry-name prefix `tar cf - <mount_path>` produces (tar drops the leading slash)."""
    return _normalize_prefix(mount_path)


def extract_tar_stream(
    stream: BinaryIO,
    destination: Path | str,
    prefix: str,
    *,
    cancel_event: threading.Event | None = None,
) -> int:
    root_path = Path(destination)
    try:
        root_path.mkdir(parents=True, exist_ok=True)
        root = Path(os.path.realpath(root_path, strict=True))
    except OSError as error:
        raise ArchiveExtractionError(f"unable to prepare destination {root_path}: {error}") from error
    prefix = _normalize_prefix(prefix)

    try:
        archive = tarfile.open(fileobj=stream, mode="r|")
    except (tarfile.TarError, OSError) as error:
        raise ArchiveExtractionError(f"unable to read tar stream: {error}") from error

    written = 0
    with archive:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise ArchiveExtractionError(f"extraction into {root} cancelled after {written} entries")
            try:
                member = archive.next()
            except (tarfile.TarError, OSError) as error:
                raise ArchiveExtractionError(f"unable to read next archive entry: {error}") from error
            if member is None:
                break
            if _extract_member(archive, member, root=root, prefix=prefix):
                written += 1

        if not _end_of_archive_seen(archive):
            raise ArchiveExtractionError(
                f"archive truncated: stream ended after {written} entries without an end-of-archive marker"
            )

    logger.info("Extracted %d archive entries into %s", written, root)
    return written


def _extract_member(archive: tarfile.TarFile, member: tarfile.TarInfo, *, root: Path, prefix: str) -> bool:
    relative = _strip_prefix(member.name, prefix)
    if not relative:
        if member.isdir():
            return True
        raise ArchiveCorruptionError(
            f"tar contents corrupted: non-directory entry '{member.name}' names the destination root",
            entry=member.name,
        )

    destination = root / relative
    _ensure_within_root(Path(os.path.realpath(destination.parent)), root, member.name)

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        if member.isdir():
            _ensure_within_root(Path(os.path.realpath(destination)), root, member.name)
            destination.mkdir(mode=DEFAULT_DIRECTORY_MODE, parents=True, exist_ok=True)
            logger.debug("Created directory %s", destination)
            return True

        canonical_parent = Path(os.path.realpath(destination.parent, strict=True))
        _ensure_within_root(canonical_parent, root, member.name)

        if member.issym():
            _create_symlink(member, destination, canonical_parent=canonical_parent, root=root)
        elif member.islnk():
            _copy_hard_link(member, destination, root=root, prefix=prefix)
        elif member.isreg():
            _write_regular_file(archive, member, destination)
        else:
            logger.warning("Skipping archive entry %s with unsupported type %r", member.name, member.type)
            return False
    except ArchiveExtractionError:
        raise
    except (tarfile.TarError, OSError) as error:
        raise ArchiveExtractionError(f"unable to extract '{member.name}': {error}", entry=member.name) from error

    return True


def _create_symlink(member: tarfile.TarInfo, destination: Path, *, canonical_parent: Path, root: Path) -> None:
    target = member.linkname
    if os.path.isabs(target):
        resolved_target = os.path.normpath(target)
    else:
        resolved_target = os.path.normpath(os.path.join(canonical_parent, target))
    # Entries written through the link later are still checked against the root.
    if not _is_within(Path(resolved_target), root):
        logger.warning("Symlink %s -> %s resolves outside %s", member.name, target, root)

    if destination.is_symlink() or destination.is_file():
        destination.unlink()
    os.symlink(target, destination)
    logger.debug("Created symlink %s -> %s", destination, target)


def _copy_hard_link(member: tarfile.TarInfo, destination: Path, *, root: Path, prefix: str) -> None:
    relative = _strip_prefix(member.linkname, prefix)
    source = Path(os.path.realpath(root / relative)) if relative else root
    if not _is_within(source, root) or not source.is_file():
        raise ArchiveCorruptionError(
            f"hard link '{member.name}' -> '{member.linkname}' has no extracted file to copy",
            entry=member.name,
        )

    if destination.is_symlink():
        destination.unlink()
    shutil.copyfile(source, destination)
    os.chmod(destination, (member.mode & 0o777) | stat.S_IRUSR | stat.S_IWUSR)
    os.utime(destination, (member.mtime, member.mtime))
    logger.debug("Copied hard link %s from %s", destination, source)


def _write_regular_file(archive: tarfile.TarFile, member: tarfile.TarInfo, destination: Path) -> None:
    source = archive.extractfile(member)
    if source is None:
        raise ArchiveExtractionError(f"no payload available for '{member.name}'", entry=member.name)

    # Writing through a link left by an earlier run could land outside the root.
    if destination.is_symlink():
        destination.unlink()

    with source, destination.open("wb") as handle:
        copied = _copy_exact(source, handle, member.size)
        handle.flush()
    if copied != member.size:
        raise ArchiveExtractionError(
            f"archive truncated inside '{member.name}': expected {member.size} bytes, got {copied}",
            entry=member.name,
        )

    os.chmod(destination, (member.mode & 0o777) | stat.S_IRUSR | stat.S_IWUSR)
    os.utime(destination, (member.mtime, member.mtime))
    logger.debug("Wrote %s (%d bytes)", destination, copied)


def _copy_exact(source: BinaryIO, target: BinaryIO, length: int) -> int:
    copied = 0
    while copied < length:
        chunk = source.read(min(COPY_CHUNK_SIZE, length - copied))
        if not chunk:
            break
        target.write(chunk)
        copied += len(chunk)
    return copied


def _strip_prefix(name: str, prefix: str) -> str:
    if prefix:
        if name != prefix and not name.startswith(f"{prefix}/"):
            raise ArchiveCorruptionError(
                f"tar contents corrupted: entry '{name}' does not start with '{prefix}'",
                entry=name,
            )
        name = name[len(prefix):]

    relative = name.lstrip("/")
    if ".." in PurePosixPath(relative).parts:
        raise ArchiveCorruptionError(f"tar contents corrupted: entry '{name}' escapes its prefix", entry=name)
    return relative


def _ensure_within_root(path: Path, root: Path, entry: str) -> None:
    if not _is_within(path, root):
        raise ArchiveCorruptionError(f"entry '{entry}' resolves outside the destination {root}", entry=entry)


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def _end_of_archive_seen(archive: tarfile.TarFile) -> bool:
    # tarfile stops silently on an empty or short header; only a full zero block
    # at the final offset means the producer finished the archive.
    return archive.fileobj.tell() >= archive.offset + tarfile.BLOCKSIZE


def _normalize_prefix(prefix: str) -> str:
    stripped = prefix.strip().lstrip("/")
    if not stripped:
        return ""
    normalized = posixpath.normpath(stripped)
    return "" if normalized == "." else normalized

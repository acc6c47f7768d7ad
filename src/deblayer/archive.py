"""Unpacking of ``.deb`` archives into a layer tree.

Each archive is streamed into its own staging directory (safe to run in
parallel), then staged trees are merged into the layer one at a time in
resolution order, so a later package's files replace an earlier one's.
"""

import asyncio
import logging
import os
import shutil
import tarfile
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path, PurePosixPath

from debian.arfile import ArError, ArFile

from deblayer.compression import DECODE_ERRORS, Codec, UnsupportedCompression
from deblayer.errors import ExtractionError
from deblayer.events import Event, EventKind, EventSink, log_event
from deblayer.models import ResolvedPackageSet, VerifiedArchive

logger = logging.getLogger(__name__)

DEB_FORMAT_MAJOR = b"2."


class ExtractionAborted(Exception):
    pass


def safe_member_path(name: str) -> PurePosixPath | None:
    """Normalize a tar member name to a relative path.

    Returns None for the archive root (``./``). Raises ValueError for absolute
    names and names containing ``..``.
    """
    path = PurePosixPath(name)
    if path.is_absolute():
        raise ValueError(f"absolute path {name!r}")
    parts = [part for part in path.parts if part not in ("", ".")]
    if ".." in parts:
        raise ValueError(f"path {name!r} escapes the archive root")
    return PurePosixPath(*parts) if parts else None


def _is_inside(root: Path, path: Path) -> bool:
    real_root = os.path.realpath(root)
    real_path = os.path.realpath(path)
    return real_path == real_root or real_path.startswith(real_root + os.sep)


def _remove(path: Path) -> None:
    if path.is_symlink() or not path.is_dir():
        path.unlink(missing_ok=True)
    else:
        shutil.rmtree(path)


def _data_member(archive: VerifiedArchive):
    """Open the archive and return its ``data.tar*`` member, checking the layout."""
    try:
        ar = ArFile(filename=str(archive.path))
        members = ar.getmembers()
    except (ArError, OSError, ValueError) as e:
        raise ExtractionError(archive.name, f"not a Debian archive: {e}") from e

    names = [m.name for m in members]
    if (
        len(members) < 3
        or names[0] != "debian-binary"
        or not names[1].startswith("control.tar")
        or not names[2].startswith("data.tar")
    ):
        raise ExtractionError(archive.name, f"unexpected archive members {names}")

    try:
        version = members[0].read().strip()
    except OSError as e:
        raise ExtractionError(archive.name, f"unreadable debian-binary: {e}") from e
    if not version.startswith(DEB_FORMAT_MAJOR):
        raise ExtractionError(archive.name, f"unsupported format version {version.decode(errors='replace')}")
    return members[2]


def _extract_member(tar: tarfile.TarFile, member: tarfile.TarInfo, root: Path) -> None:
    relative = safe_member_path(member.name)
    if relative is None:
        return
    target = root.joinpath(*relative.parts)
    if not _is_inside(root, target.parent):
        raise ValueError(f"path {member.name!r} resolves outside the archive root")

    if member.isdir():
        if target.exists() and not target.is_dir():
            _remove(target)
        target.mkdir(parents=True, exist_ok=True)
        # keep owner-writable
        os.chmod(target, (member.mode & 0o7777) | 0o700)
        return

    target.parent.mkdir(parents=True, exist_ok=True)
    if target.exists() or target.is_symlink():
        _remove(target)

    if member.isreg():
        source = tar.extractfile(member)
        with source, open(target, "wb") as output:
            shutil.copyfileobj(source, output)
        os.chmod(target, member.mode & 0o7777)
        os.utime(target, (member.mtime, member.mtime))
    elif member.issym():
        os.symlink(member.linkname, target)
    elif member.islnk():
        link_source = safe_member_path(member.linkname)
        if link_source is None:
            raise ValueError(f"hard link {member.name!r} points at the archive root")
        source_path = root.joinpath(*link_source.parts)
        if not _is_inside(root, source_path) or not source_path.is_file():
            raise ValueError(f"hard link {member.name!r} points at missing {member.linkname!r}")
        os.link(source_path, target)
    else:
        logger.debug(f"Skipping special file {member.name}")


def extract_archive(archive: VerifiedArchive, staging_dir: Path, abort: threading.Event | None = None) -> Path:
    """Stream the data member of ``archive`` into ``staging_dir``.

    Entries are checked before anything is written for them. On any error
    the staging directory is left for the caller to discard.
    """
    data = _data_member(archive)
    try:
        codec = Codec.from_filename(data.name)
    except UnsupportedCompression as e:
        raise ExtractionError(archive.name, str(e)) from e

    staging_dir.mkdir(parents=True, exist_ok=True)
    count = 0
    try:
        with codec.open_stream(data) as stream, tarfile.open(fileobj=stream, mode="r|") as tar:
            for member in tar:
                if abort is not None and abort.is_set():
                    raise ExtractionAborted()
                _extract_member(tar, member, staging_dir)
                count += 1
    except ExtractionAborted:
        raise ExtractionError(archive.name, "aborted") from None
    except ValueError as e:
        raise ExtractionError(archive.name, str(e)) from e
    except (tarfile.TarError, *DECODE_ERRORS) as e:
        raise ExtractionError(archive.name, f"corrupt {data.name}: {e}") from e

    logger.debug(f"Extracted {count} entries from {archive.path.name}")
    return staging_dir


def merge_tree(staging_dir: Path, destination: Path, package: str) -> None:
    """Move a staged package tree into ``destination``, replacing existing entries.

    Directory symlinks already in ``destination`` (``lib -> usr/lib``) are kept
    and written through as long as they stay inside it.
    """
    try:
        _merge(staging_dir, destination, package)
    except OSError as e:
        raise ExtractionError(package, f"cannot merge into {destination}: {e}") from e


def _merge(staging_dir: Path, destination: Path, package: str) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    for current, dirnames, filenames in os.walk(staging_dir):
        relative = Path(current).relative_to(staging_dir)
        target_dir = destination / relative
        if not _is_inside(destination, target_dir):
            raise ExtractionError(package, f"{relative} resolves outside the layer")

        for name in list(dirnames):
            source = Path(current, name)
            target = target_dir / name
            if source.is_symlink():
                dirnames.remove(name)
                _replace(source, target)
                continue
            if target.is_symlink():
                if target.is_dir() and _is_inside(destination, target):
                    continue
                target.unlink()
            elif target.exists() and not target.is_dir():
                target.unlink()
            target.mkdir(exist_ok=True)
            shutil.copymode(source, target)

        for name in filenames:
            _replace(Path(current, name), target_dir / name)


def _replace(source: Path, target: Path) -> None:
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    os.replace(source, target)


class Extractor:
    """Unpacks verified archives into a layer tree.

    Archives are decoded by a pool of worker threads into per-package staging
    directories; a single committer merges them in resolution order.
    """

    def __init__(self, workers: int = 4, sink: EventSink = log_event):
        self.workers = workers
        self.sink = sink

    async def extract_all(
        self,
        resolved: ResolvedPackageSet,
        archives: dict[str, VerifiedArchive],
        destination: Path,
        staging_root: Path,
    ) -> None:
        loop = asyncio.get_running_loop()
        abort = threading.Event()
        ordered = resolved.ordered()
        futures: dict[str, asyncio.Future[Path]] = {}
        stagings: list[Path] = []

        def _job(name: str, staging: Path) -> Path:
            started = Event(kind=EventKind.EXTRACTION_STARTED, package=name, message=archives[name].path.name)
            loop.call_soon_threadsafe(self.sink, started)
            return extract_archive(archives[name], staging, abort)

        executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="deblayer-extract")
        try:
            for package in ordered:
                name = package.descriptor.name
                staging = staging_root / f"{package.resolution_order_index:05d}-{name}"
                stagings.append(staging)
                futures[name] = loop.run_in_executor(executor, _job, name, staging)

            for package in ordered:
                name = package.descriptor.name
                staging = await futures[name]
                # single committer, renames only
                merge_tree(staging, destination, name)
                shutil.rmtree(staging, ignore_errors=True)
                self.sink(Event(kind=EventKind.EXTRACTION_COMPLETED, package=name, message=package.descriptor.label))
        except BaseException:
            abort.set()
            for future in futures.values():
                if not future.done():
                    future.cancel()
                elif not future.cancelled():
                    # mark as retrieved; the first failure is the one raised
                    future.exception()
            raise
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
            # partial writes of aborted workers
            for staging in stagings:
                shutil.rmtree(staging, ignore_errors=True)

"""
Artifact extraction.

Each supported container format is an Extractor variant. The variant for an
artifact is chosen by inspecting its leading bytes (and, for containers that
share a format with plain archives, their content), never by file extension.

Supported formats:
- VSIX containers (zip with the payload under ``Contents/``)
- .zip
- tar, optionally gzip, xz or bzip2 compressed
- .7z (py7zr)

``extract`` writes members one at a time, hashing each file as it is written
so the caller gets (path, sha256, size) for every file without a second
pass. Any failure, including cancellation, removes the destination directory
before the error propagates.
"""

import logging
import posixpath
import stat
import tarfile
import tempfile
import threading
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Tuple, Type
from urllib.parse import unquote

import py7zr

from toolpkg.core.exceptions import (
    ExtractionError,
    InsecureArchiveError,
    OperationCancelled,
    UnsupportedArtifactFormat,
)
from toolpkg.core.filesystem import normalize_member_path, safe_rmtree
from toolpkg.core.verification import CHUNK_SIZE, StreamingHasher
from toolpkg.toolchain.models import InstalledFile

logger = logging.getLogger(__name__)

HEADER_SIZE = 512

ZIP_MAGIC = (b"PK\x03\x04", b"PK\x05\x06")
GZIP_MAGIC = b"\x1f\x8b"
XZ_MAGIC = b"\xfd7zXZ\x00"
BZIP2_MAGIC = b"BZh"
SEVEN_ZIP_MAGIC = b"7z\xbc\xaf\x27\x1c"
TAR_MAGIC_OFFSET = 257
MAX_LINK_DEPTH = 40

VSIX_MARKERS = ("extension.vsixmanifest", "[Content_Types].xml")
VSIX_PAYLOAD_PREFIX = "Contents/"


@dataclass
class ArchiveMember:
    """
    A regular file inside an archive.

    Attributes:
        path: Normalized relative POSIX path it extracts to
        executable: Whether any execute bit is set
        handle: Format-specific reference used to open the member
    """

    path: str
    executable: bool = False
    handle: Any = None


class Extractor(ABC):
    """
    Reader for one archive format.

    Subclasses implement ``detect`` (content sniffing), ``members`` and
    ``open``. Instances are context managers that own the open archive.
    """

    format_name = ""

    def __init__(self, archive_path: Path, work_dir: Optional[Path] = None):
        self.archive_path = Path(archive_path)
        self.work_dir = Path(work_dir) if work_dir else self.archive_path.parent

    @classmethod
    @abstractmethod
    def detect(cls, archive_path: Path, header: bytes) -> bool:
        """Whether this variant handles the archive."""

    @abstractmethod
    def members(self) -> List[ArchiveMember]:
        """
        Regular files in archive order.

        Raises:
            InsecureArchiveError: If any member path is unsafe
        """

    @abstractmethod
    def open(self, member: ArchiveMember) -> BinaryIO:
        """Open a member for streaming reads."""

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class ZipExtractor(Extractor):
    format_name = "zip"

    def __init__(self, archive_path: Path, work_dir: Optional[Path] = None):
        super().__init__(archive_path, work_dir)
        self._zip = zipfile.ZipFile(self.archive_path, "r")

    @classmethod
    def detect(cls, archive_path: Path, header: bytes) -> bool:
        return header.startswith(ZIP_MAGIC)

    def _member_path(self, name: str) -> Optional[str]:
        return normalize_member_path(name)

    def members(self) -> List[ArchiveMember]:
        result = []
        for info in self._zip.infolist():
            if info.is_dir():
                continue
            path = self._member_path(info.filename)
            if path is None:
                continue
            mode = info.external_attr >> 16
            result.append(
                ArchiveMember(path=path, executable=bool(mode & 0o111), handle=info)
            )
        return result

    def open(self, member: ArchiveMember) -> BinaryIO:
        return self._zip.open(member.handle, "r")

    def close(self) -> None:
        self._zip.close()


class VsixExtractor(ZipExtractor):
    """
    VSIX container: a zip whose installable payload lives under ``Contents/``
    with percent-encoded member names. Package metadata outside ``Contents/``
    is not installed.
    """

    format_name = "vsix"

    @classmethod
    def detect(cls, archive_path: Path, header: bytes) -> bool:
        if not header.startswith(ZIP_MAGIC):
            return False
        try:
            with zipfile.ZipFile(archive_path, "r") as zf:
                names = set(zf.namelist())
        except zipfile.BadZipFile:
            return False
        return any(marker in names for marker in VSIX_MARKERS)

    def _member_path(self, name: str) -> Optional[str]:
        decoded = unquote(name.replace("\\", "/"))
        if not decoded.startswith(VSIX_PAYLOAD_PREFIX):
            return None
        return normalize_member_path(decoded[len(VSIX_PAYLOAD_PREFIX):])


class TarExtractor(Extractor):
    """Tar archives; compression is detected by tarfile itself."""

    format_name = "tar"

    def __init__(self, archive_path: Path, work_dir: Optional[Path] = None):
        super().__init__(archive_path, work_dir)
        self._tar = tarfile.open(self.archive_path, "r:*")

    @classmethod
    def detect(cls, archive_path: Path, header: bytes) -> bool:
        if header.startswith((GZIP_MAGIC, XZ_MAGIC, BZIP2_MAGIC)):
            return True
        return header[TAR_MAGIC_OFFSET:TAR_MAGIC_OFFSET + 5] == b"ustar"

    def members(self) -> List[ArchiveMember]:
        """
        Regular files in archive order, with links materialized.

        A link to a file becomes a copy of that file. A link to a directory
        becomes copies of every file under the directory. Links whose target
        is missing or outside the archive are skipped with a warning.
        """
        entries: List[Tuple[str, tarfile.TarInfo]] = []
        files: Dict[str, tarfile.TarInfo] = {}
        links: Dict[str, tarfile.TarInfo] = {}
        for info in self._tar.getmembers():
            if info.isdir():
                continue
            if not (info.isfile() or info.issym() or info.islnk()):
                raise InsecureArchiveError(
                    f"Archive member '{info.name}' is a device or fifo. "
                    "This is a security risk and extraction has been blocked."
                )
            path = normalize_member_path(info.name)
            if path is None:
                continue
            entries.append((path, info))
            (files if info.isfile() else links)[path] = info

        result = []
        for path, info in entries:
            if info.isfile():
                result.append(_tar_member(path, info))
            else:
                result.extend(self._link_members(path, info, entries, files, links))
        return result

    def _link_members(self, path, info, entries, files, links) -> List[ArchiveMember]:
        target = _resolve_link_path(path, links)
        if target is not None and target in files:
            return [_tar_member(path, files[target])]

        expanded = []
        if target is not None:
            prefix = target + "/"
            for child, _ in entries:
                if not child.startswith(prefix):
                    continue
                resolved = _resolve_link_path(child, links)
                if resolved in files:
                    expanded.append(
                        _tar_member(f"{path}/{child[len(prefix):]}", files[resolved])
                    )

        if not expanded:
            logger.warning(
                f"Skipping link '{info.name}' -> '{info.linkname}' in "
                f"{self.archive_path.name}: target is not in the archive"
            )
        return expanded

    def open(self, member: ArchiveMember) -> BinaryIO:
        fileobj = self._tar.extractfile(member.handle)
        if fileobj is None:
            raise ExtractionError(f"Cannot read archive member '{member.handle.name}'")
        return fileobj

    def close(self) -> None:
        self._tar.close()


def _tar_member(path: str, info: tarfile.TarInfo) -> ArchiveMember:
    return ArchiveMember(path=path, executable=bool(info.mode & 0o111), handle=info)


def _link_target(path: str, info: tarfile.TarInfo) -> Optional[str]:
    """Archive path a link points at, or None if it leaves the archive."""
    linkname = info.linkname.replace("\\", "/")
    if info.issym():
        linkname = posixpath.join(posixpath.dirname(path), linkname)
    target = posixpath.normpath(linkname)
    if target in (".", "..") or target.startswith(("/", "../")):
        return None
    return target


def _resolve_link_path(
    path: str, links: Dict[str, tarfile.TarInfo], depth: int = 0
) -> Optional[str]:
    """
    Follow links on every component of ``path``.

    Returns:
        A path free of links, or None for targets outside the archive and
        link cycles
    """
    if depth > MAX_LINK_DEPTH:
        return None
    resolved = ""
    for part in path.split("/"):
        current = f"{resolved}/{part}" if resolved else part
        info = links.get(current)
        if info is not None:
            target = _link_target(current, info)
            if target is None:
                return None
            current = _resolve_link_path(target, links, depth + 1)
            if current is None:
                return None
        resolved = current
    return resolved


class SevenZipExtractor(Extractor):
    """
    7z archives.

    py7zr decompresses solid blocks as a whole, so the archive is unpacked
    into a scratch directory beside the destination and members are then
    streamed from there.
    """

    format_name = "7z"

    def __init__(self, archive_path: Path, work_dir: Optional[Path] = None):
        super().__init__(archive_path, work_dir)
        self._scratch: Optional[Path] = None

    @classmethod
    def detect(cls, archive_path: Path, header: bytes) -> bool:
        return header.startswith(SEVEN_ZIP_MAGIC)

    def members(self) -> List[ArchiveMember]:
        with py7zr.SevenZipFile(self.archive_path, "r") as archive:
            entries = [(info.filename, info.is_directory) for info in archive.list()]
            files = {}
            for name, is_dir in entries:
                path = normalize_member_path(name)
                if path is not None and not is_dir:
                    files[path] = name

            self.work_dir.mkdir(parents=True, exist_ok=True)
            self._scratch = Path(tempfile.mkdtemp(dir=self.work_dir, prefix=".7z-"))
            archive.extractall(path=self._scratch)

        result = []
        for path in files:
            source = self._scratch / path
            if source.is_symlink() or not source.is_file():
                raise InsecureArchiveError(
                    f"Archive member '{files[path]}' did not extract to a regular file"
                )
            mode = source.stat().st_mode
            result.append(
                ArchiveMember(path=path, executable=bool(mode & 0o111), handle=source)
            )
        return result

    def open(self, member: ArchiveMember) -> BinaryIO:
        return open(member.handle, "rb")

    def close(self) -> None:
        if self._scratch is not None:
            safe_rmtree(self._scratch, require_prefix=self.work_dir)
            self._scratch = None


# Order matters: VSIX must be tried before plain zip
EXTRACTORS: List[Type[Extractor]] = [
    VsixExtractor,
    ZipExtractor,
    TarExtractor,
    SevenZipExtractor,
]


def register_extractor(extractor: Type[Extractor], first: bool = False) -> None:
    """Add an Extractor variant to the detection list."""
    if extractor in EXTRACTORS:
        return
    if first:
        EXTRACTORS.insert(0, extractor)
    else:
        EXTRACTORS.append(extractor)


def select_extractor(archive_path: Path) -> Type[Extractor]:
    """
    Pick the Extractor variant for an artifact by content.

    Raises:
        UnsupportedArtifactFormat: If no variant recognises the content
    """
    with open(archive_path, "rb") as f:
        header = f.read(HEADER_SIZE)

    for extractor in EXTRACTORS:
        if extractor.detect(archive_path, header):
            return extractor

    raise UnsupportedArtifactFormat(
        f"Unrecognised artifact format: {archive_path} "
        f"(leading bytes {header[:8].hex()})"
    )


def _strip_root(members: List[ArchiveMember], archive_path: Path) -> None:
    roots = set()
    for member in members:
        head, sep, rest = member.path.partition("/")
        if not sep:
            raise ExtractionError(
                f"Cannot strip root directory of {archive_path.name}: "
                f"'{member.path}' is not inside a directory"
            )
        roots.add(head)
        member.path = rest

    if len(roots) > 1:
        raise ExtractionError(
            f"Cannot strip root directory of {archive_path.name}: "
            f"multiple root directories ({', '.join(sorted(roots))})"
        )


def _write_member(source: BinaryIO, target: Path, executable: bool) -> Tuple[str, int]:
    hasher = StreamingHasher()
    with open(target, "wb") as out:
        for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
            out.write(chunk)
            hasher.update(chunk)
    if executable:
        target.chmod(target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return hasher.finalize(), hasher.size


def extract(
    archive_path: Path,
    destination: Path,
    strip_root: bool = False,
    cancel_event: Optional[threading.Event] = None,
) -> List[InstalledFile]:
    """
    Extract an artifact into ``destination``.

    ``destination`` may already hold files from other artifacts of the same
    package; members overwrite same-named files.

    Args:
        archive_path: Verified artifact in the download cache
        destination: Directory to extract into (created if needed)
        strip_root: Drop the archive's single top-level directory
        cancel_event: Checked between members

    Returns:
        One InstalledFile per member written, in archive order

    Raises:
        ExtractionError: On any failure; ``destination`` no longer exists
        OperationCancelled: If cancelled; ``destination`` no longer exists
    """
    archive_path = Path(archive_path)
    destination = Path(destination)

    try:
        destination.mkdir(parents=True, exist_ok=True)
        extractor_cls = select_extractor(archive_path)
        logger.debug(f"Extracting {archive_path.name} as {extractor_cls.format_name}")

        written: List[InstalledFile] = []
        with extractor_cls(archive_path, work_dir=destination.parent) as extractor:
            members = extractor.members()
            if strip_root:
                _strip_root(members, archive_path)

            for member in members:
                if cancel_event is not None and cancel_event.is_set():
                    raise OperationCancelled(f"Extraction of {archive_path.name} cancelled")

                target = destination / member.path
                target.parent.mkdir(parents=True, exist_ok=True)
                with extractor.open(member) as source:
                    digest, size = _write_member(source, target, member.executable)
                written.append(InstalledFile(member.path, digest, size))

        logger.debug(f"Extracted {len(written)} files from {archive_path.name}")
        return written

    except BaseException as e:
        _purge(destination)
        if isinstance(e, (ExtractionError, OperationCancelled)) or not isinstance(e, Exception):
            raise
        raise ExtractionError(f"Failed to extract {archive_path.name}: {e}") from e


def _purge(destination: Path) -> None:
    if not destination.exists():
        return
    logger.warning(f"Removing partially extracted directory {destination}")
    safe_rmtree(destination, require_prefix=destination.parent)


def merge_files(groups: List[List[InstalledFile]]) -> List[InstalledFile]:
    """
    Combine per-artifact file lists into one list sorted by path.

    When several artifacts write the same path, the last one wins, matching
    what is on disk.
    """
    merged: Dict[str, InstalledFile] = {}
    for group in groups:
        for installed in group:
            merged[installed.path] = installed
    return [merged[path] for path in sorted(merged)]


__all__ = [
    "ArchiveMember",
    "Extractor",
    "ZipExtractor",
    "VsixExtractor",
    "TarExtractor",
    "SevenZipExtractor",
    "EXTRACTORS",
    "register_extractor",
    "select_extractor",
    "extract",
    "merge_files",
]

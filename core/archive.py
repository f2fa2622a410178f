"""Archive extraction used to unpack downloaded template bundles."""
from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable
import tarfile
import zipfile

import zstandard as zstd

_SUFFIX_FORMATS: list[tuple[str, str]] = [
    (".tar.zst", "zst"),
    (".tzst", "zst"),
    (".tar.gz", "gztar"),
    (".tgz", "gztar"),
    (".tar.bz2", "bztar"),
    (".tbz", "bztar"),
    (".tar.xz", "xztar"),
    (".txz", "xztar"),
    (".tar", "tar"),
    (".zip", "zip"),
]

_TAR_MODES: dict[str, str] = {
    "gztar": "r:gz",
    "bztar": "r:bz2",
    "xztar": "r:xz",
    "tar": "r:",
}


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be unpacked."""


@runtime_checkable
class ArchiveConsole(Protocol):
    """Console methods :class:`ArchiveManager` reports through."""

    dry_run: bool

    def info(self, message: str) -> None:
        ...

    def dry(self, message: str) -> None:
        ...


def archive_format_for(path: Path) -> str | None:
    name = path.name.lower()
    for suffix, archive_format in _SUFFIX_FORMATS:
        if name.endswith(suffix):
            return archive_format
    return None


def _check_member_path(dest: Path, member_name: str) -> None:
    target = (dest / member_name).resolve()
    if target != dest and dest not in target.parents:
        raise ArchiveError(f"Archive member '{member_name}' escapes the destination directory")


def _check_tar_member(dest: Path, member: tarfile.TarInfo) -> None:
    _check_member_path(dest, member.name)
    if member.issym():
        target = (dest / member.name).parent / member.linkname
    elif member.islnk():
        target = dest / member.linkname
    else:
        return
    target = target.resolve()
    if target != dest and dest not in target.parents:
        raise ArchiveError(f"Archive link '{member.name}' points outside the destination directory")


# Python releases with extraction filters also refuse special files and absolute links.
_TAR_EXTRACT_OPTIONS: dict[str, str] = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}


class ArchiveManager:
    """Unpack zip and tar archives (gzip, bzip2, xz and zstd compressed)."""

    def __init__(self, console: ArchiveConsole) -> None:
        self._console = console

    def _resolve_format(self, archive: Path, format_hint: str | None) -> str:
        if format_hint:
            return format_hint
        detected = archive_format_for(archive)
        if detected is not None:
            return detected
        if zipfile.is_zipfile(archive):
            return "zip"
        if tarfile.is_tarfile(archive):
            return "tar"
        raise ArchiveError(f"Cannot determine archive format for '{archive}'")

    def extract_archive(
        self,
        *,
        archive_path: Path | str,
        destination_dir: Path | str,
        format_hint: str | None = None,
    ) -> None:
        """Extract ``archive_path`` into ``destination_dir``.

        Members resolving outside the destination are rejected before
        anything is written.
        """
        archive = Path(archive_path).expanduser()
        dest = Path(destination_dir).expanduser()

        if not archive.exists():
            raise FileNotFoundError(f"Archive '{archive}' does not exist")

        if self._console.dry_run:
            self._console.dry(f"Would extract {archive} to {dest}")
            return

        dest.mkdir(parents=True, exist_ok=True)
        dest = dest.resolve()
        archive_format = self._resolve_format(archive, format_hint)

        try:
            if archive_format == "zst":
                self._extract_zst(archive, dest)
            elif archive_format in _TAR_MODES:
                with tarfile.open(archive, _TAR_MODES[archive_format]) as tar:
                    for member in tar.getmembers():
                        _check_tar_member(dest, member)
                    tar.extractall(path=dest, **_TAR_EXTRACT_OPTIONS)
            elif archive_format == "zip":
                with zipfile.ZipFile(archive, "r") as zip_ref:
                    for name in zip_ref.namelist():
                        _check_member_path(dest, name)
                    zip_ref.extractall(dest)
            else:
                raise ArchiveError(f"Unsupported archive format: {archive_format}")
        except (tarfile.TarError, zipfile.BadZipFile, zstd.ZstdError) as exc:
            raise ArchiveError(f"Failed to extract '{archive}': {exc}") from exc

        self._console.info(f"Extracted {archive} to {dest}")

    def _extract_zst(self, archive: Path, dest: Path) -> None:
        dctx = zstd.ZstdDecompressor()
        with archive.open("rb") as ifh:
            with dctx.stream_reader(ifh) as reader:
                with tarfile.open(fileobj=reader, mode="r|") as tar:
                    for member in tar:
                        _check_tar_member(dest, member)
                        tar.extract(member, path=dest, **_TAR_EXTRACT_OPTIONS)


__all__ = [
    "ArchiveConsole",
    "ArchiveError",
    "ArchiveManager",
    "archive_format_for",
]

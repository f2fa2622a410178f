"""Provisioning of the local ``template/`` directory from a remote bundle."""
from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Protocol
import shutil
import tempfile
import urllib.error
import urllib.parse
import urllib.request

from core.archive import ArchiveError, ArchiveManager, archive_format_for

from .console import Console

DEFAULT_TEMPLATE_URL = "https://github.com/openfaas/templates/archive/master.zip"
TEMPLATE_DIR_NAME = "template"


class ProvisioningError(RuntimeError):
    """Raised when templates cannot be downloaded or installed."""


class TemplateSource(Protocol):
    def fetch(self, source_url: str, *, overwrite: bool = False) -> List[str]:
        ...


def _find_template_root(extracted: Path) -> Path | None:
    # Bundles usually wrap everything in one top-level folder (e.g. templates-master/).
    direct = extracted / TEMPLATE_DIR_NAME
    if direct.is_dir():
        return direct
    for child in sorted(extracted.iterdir()):
        candidate = child / TEMPLATE_DIR_NAME
        if child.is_dir() and candidate.is_dir():
            return candidate
    return None


class TemplateFetcher:
    """Download a template bundle and install its languages into ``template_dir``."""

    def __init__(
        self,
        template_dir: Path,
        console: Console,
        *,
        archive_manager: ArchiveManager | None = None,
        opener: Callable[..., object] = urllib.request.urlopen,
        timeout: float = 60.0,
    ) -> None:
        self._template_dir = template_dir
        self._console = console
        self._archives = archive_manager or ArchiveManager(console)
        self._opener = opener
        self._timeout = timeout

    def _download(self, source_url: str, destination: Path) -> Path:
        url_path = urllib.parse.urlparse(source_url).path
        filename = Path(url_path).name or "templates.zip"
        if archive_format_for(Path(filename)) is None:
            filename = f"{filename}.zip"
        target = destination / filename
        self._console.debug(f"Downloading {source_url} to {target}")
        try:
            with self._opener(source_url, timeout=self._timeout) as response, target.open("wb") as handle:
                shutil.copyfileobj(response, handle)
        except (urllib.error.URLError, ValueError, OSError) as exc:
            raise ProvisioningError(f"Unable to download templates from {source_url}: {exc}") from exc
        return target

    def fetch(self, source_url: str, *, overwrite: bool = False) -> List[str]:
        """Install every language found in the bundle; returns the installed names.

        Languages that already exist locally are left untouched unless
        ``overwrite`` is set.
        """
        if self._console.dry_run:
            self._console.dry(f"Would fetch templates from {source_url} into {self._template_dir}")
            return []

        installed: List[str] = []
        with tempfile.TemporaryDirectory(prefix="stackbuild-templates-") as scratch:
            scratch_dir = Path(scratch)
            archive = self._download(source_url, scratch_dir)
            extracted = scratch_dir / "extracted"
            try:
                self._archives.extract_archive(archive_path=archive, destination_dir=extracted)
            except (ArchiveError, OSError) as exc:
                raise ProvisioningError(f"Unable to extract templates from {source_url}: {exc}") from exc

            template_root = _find_template_root(extracted)
            if template_root is None:
                raise ProvisioningError(f"No '{TEMPLATE_DIR_NAME}' directory found in bundle {source_url}")

            try:
                self._template_dir.mkdir(parents=True, exist_ok=True)
                for language_dir in sorted(template_root.iterdir()):
                    if not language_dir.is_dir():
                        continue
                    target = self._template_dir / language_dir.name
                    if target.exists():
                        if not overwrite:
                            self._console.debug(f"Keeping existing template '{language_dir.name}'")
                            continue
                        shutil.rmtree(target)
                    shutil.copytree(language_dir, target)
                    installed.append(language_dir.name)
            except OSError as exc:
                raise ProvisioningError(f"Unable to install templates into {self._template_dir}: {exc}") from exc

        self._console.info(f"Fetched {len(installed)} template(s) from {source_url}: {', '.join(installed) or '<none>'}")
        return installed


class TemplateProvisioner:
    """Fetch templates once; an existing ``template_dir`` is never refreshed."""

    def __init__(self, template_dir: Path, fetcher: TemplateSource, console: Console) -> None:
        self._template_dir = template_dir
        self._fetcher = fetcher
        self._console = console

    def _templates_present(self) -> bool:
        try:
            self._template_dir.stat()
        except OSError:
            return False
        return True

    def ensure_templates(self, source_url: str) -> bool:
        """Return ``True`` when a fetch happened, ``False`` when templates were already present."""
        if self._templates_present():
            self._console.debug(f"Using templates in {self._template_dir}")
            return False

        self._console.info("No templates found in current directory.")
        try:
            self._fetcher.fetch(source_url, overwrite=False)
        except ProvisioningError:
            self._console.error(f"Unable to download templates from {source_url}.")
            raise
        except OSError as exc:
            self._console.error(f"Unable to download templates from {source_url}.")
            raise ProvisioningError(str(exc)) from exc
        return True


__all__ = [
    "DEFAULT_TEMPLATE_URL",
    "ProvisioningError",
    "TEMPLATE_DIR_NAME",
    "TemplateFetcher",
    "TemplateProvisioner",
    "TemplateSource",
]

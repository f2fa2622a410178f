"""Load YAML/JSON/TOML documents from disk or over HTTP."""
from __future__ import annotations

from pathlib import Path
from typing import IO, Any, Callable, Dict, Mapping
import io
import json
import tomllib
import urllib.error
import urllib.parse
import urllib.request

import yaml


DocumentLoader = Callable[[IO[Any]], Any]


FILE_LOADERS: Dict[str, DocumentLoader] = {
    ".yml": yaml.safe_load,
    ".yaml": yaml.safe_load,
    ".json": json.load,
    ".toml": tomllib.load,
}
"""Mapping of file suffixes to loader callables."""

_BINARY_SUFFIXES = {".toml"}

REMOTE_SCHEMES = ("http", "https")


class ConfigError(ValueError):
    """Raised when a document cannot be read or decoded."""


def is_remote(location: str | Path) -> bool:
    return urllib.parse.urlparse(str(location)).scheme in REMOTE_SCHEMES


def _loader_for(suffix: str) -> DocumentLoader:
    loader = FILE_LOADERS.get(suffix.lower())
    if loader is None:
        supported = ", ".join(sorted(FILE_LOADERS))
        raise ConfigError(f"Unsupported configuration file extension: {suffix or '<none>'}. Supported: {supported}")
    return loader


def _decode(loader: DocumentLoader, stream: IO[Any], origin: str) -> Mapping[str, Any]:
    try:
        data = loader(stream)
    except (yaml.YAMLError, json.JSONDecodeError, tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Unable to parse '{origin}': {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Configuration file '{origin}' must contain a mapping at the root")
    return data


def load_config_file(path: Path) -> Mapping[str, Any]:
    """Load and decode a mapping from ``path``.

    An empty document decodes to an empty mapping.
    """

    suffix = path.suffix.lower()
    loader = _loader_for(suffix)
    if suffix in _BINARY_SUFFIXES:
        with path.open("rb") as handle:
            return _decode(loader, handle, str(path))
    with path.open("r", encoding="utf-8") as handle:
        return _decode(loader, handle, str(path))


def load_config_url(url: str, *, timeout: float = 30.0) -> Mapping[str, Any]:
    """Download ``url`` and decode it according to its path suffix (YAML by default)."""

    suffix = Path(urllib.parse.urlparse(url).path).suffix.lower() or ".yml"
    loader = _loader_for(suffix)
    request = urllib.request.Request(url, headers={"Accept": "*/*"})
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            payload = response.read()
    except urllib.error.URLError as exc:
        raise ConfigError(f"Unable to download '{url}': {exc}") from exc
    if suffix in _BINARY_SUFFIXES:
        return _decode(loader, io.BytesIO(payload), url)
    return _decode(loader, io.TextIOWrapper(io.BytesIO(payload), encoding="utf-8"), url)


def load_config(location: str | Path) -> Mapping[str, Any]:
    if is_remote(location):
        return load_config_url(str(location))
    return load_config_file(Path(location))


__all__ = [
    "ConfigError",
    "DocumentLoader",
    "FILE_LOADERS",
    "is_remote",
    "load_config",
    "load_config_file",
    "load_config_url",
]

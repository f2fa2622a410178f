"""Parsing and merging of ``KEY=VALUE`` build arguments."""
from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Iterable, Mapping, MutableMapping


class BuildArgError(ValueError):
    """Base class for malformed ``key=value`` input."""


class MalformedArgumentError(BuildArgError):
    """Raised when an entry has no ``=`` separator."""


class EmptyKeyError(BuildArgError):
    """Raised when an entry has nothing before its first ``=``."""


def parse_map(entries: Iterable[str], kind_label: str) -> Dict[str, str]:
    """Parse ``key=value`` entries into a dict.

    Only the first ``=`` separates key from value. A repeated key keeps the
    value of its last occurrence.
    """
    mapped: Dict[str, str] = {}
    for entry in entries:
        key, separator, value = entry.partition("=")
        if not separator:
            raise MalformedArgumentError(f"each {kind_label} must take the form key=value")
        if not key:
            raise EmptyKeyError(f"{kind_label} must have a non-empty key")
        mapped[key] = value
    return mapped


def extend_build_arg_map(build_args: MutableMapping[str, str], new_entries: Iterable[str]) -> None:
    """Merge ``new_entries`` into ``build_args`` in place.

    A key already present keeps its value and gains the new one after a
    single space; unknown keys are inserted as-is.
    """
    for key, value in parse_map(new_entries, "build-arg").items():
        existing = build_args.get(key)
        if existing is None:
            build_args[key] = value
        else:
            build_args[key] = f"{existing} {value}"


def freeze(build_args: Mapping[str, str]) -> Mapping[str, str]:
    """Return a read-only snapshot of ``build_args``."""
    return MappingProxyType(dict(build_args))


__all__ = [
    "BuildArgError",
    "EmptyKeyError",
    "MalformedArgumentError",
    "extend_build_arg_map",
    "freeze",
    "parse_map",
]

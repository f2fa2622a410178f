"""Stack manifest and language template descriptor models."""
from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence, Tuple
import re

from core.config_loader import ConfigError, load_config, load_config_file

DEFAULT_OPTION_ARG = "ADDITIONAL_PACKAGE"


class StackParseError(ValueError):
    """Raised when a stack manifest is missing, unreadable or invalid."""


@dataclass(frozen=True, slots=True)
class BuildOption:
    name: str
    arg: str
    packages: Tuple[str, ...] = ()

    def as_build_arg(self) -> str:
        return f"{self.arg}={' '.join(self.packages)}"


@dataclass(frozen=True, slots=True)
class LanguageTemplate:
    language: str
    build_options: Tuple[BuildOption, ...] = ()


@dataclass(frozen=True, slots=True)
class FunctionSpec:
    name: str
    image: str
    handler: str
    language: str
    skip_build: bool = False
    build_options: Tuple[str, ...] = field(default_factory=tuple)


def _string_list(value: Any, *, field_name: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, Sequence):
        raise ValueError(f"{field_name} must be a string or a list of strings")
    items: List[str] = []
    for item in value:
        if not isinstance(item, (str, int, float)) or isinstance(item, bool):
            raise ValueError(f"{field_name} entries must be strings")
        text = str(item).strip()
        if text:
            items.append(text)
    return tuple(items)


def _parse_build_option(entry: Any, index: int) -> BuildOption:
    if not isinstance(entry, Mapping):
        raise ValueError(f"build_options[{index}] must be a mapping")
    name = str(entry.get("name") or "").strip()
    if not name:
        raise ValueError(f"build_options[{index}] requires a non-empty name")
    arg = str(entry.get("arg") or "").strip() or DEFAULT_OPTION_ARG
    if "=" in arg:
        raise ValueError(f"build_options[{index}].arg must not contain '='")
    packages = _string_list(entry.get("packages"), field_name=f"build_options[{index}].packages")
    return BuildOption(name=name, arg=arg, packages=packages)


def parse_language_template(path: Path) -> LanguageTemplate:
    """Parse a ``template.yml`` descriptor.

    Raises :class:`core.config_loader.ConfigError` for undecodable files and
    :class:`ValueError` for structurally invalid content.
    """
    data = load_config_file(path)
    language = str(data.get("language") or path.parent.name)
    raw_options = data.get("build_options") or []
    if not isinstance(raw_options, Sequence) or isinstance(raw_options, str):
        raise ValueError("build_options must be a list")
    options = tuple(_parse_build_option(entry, index) for index, entry in enumerate(raw_options))
    return LanguageTemplate(language=language, build_options=options)


def _parse_function(key: str, entry: Any) -> FunctionSpec:
    if not isinstance(entry, Mapping):
        raise StackParseError(f"Function '{key}' must be a mapping")
    skip_build = entry.get("skip_build", False)
    if not isinstance(skip_build, bool):
        raise StackParseError(f"Function '{key}': skip_build must be a boolean")
    try:
        build_options = _string_list(entry.get("build_options"), field_name=f"{key}.build_options")
    except ValueError as exc:
        raise StackParseError(str(exc)) from exc
    return FunctionSpec(
        name=key,
        image=str(entry.get("image") or ""),
        handler=str(entry.get("handler") or ""),
        language=str(entry.get("lang") or ""),
        skip_build=skip_build,
        build_options=build_options,
    )


def select_functions(
    functions: Mapping[str, FunctionSpec],
    *,
    regex: str | None = None,
    filter: str | None = None,
) -> Dict[str, FunctionSpec]:
    """Narrow ``functions`` to names matching ``regex`` or the ``filter`` wildcard."""
    if regex and filter:
        raise StackParseError("pass in a regex or a filter, not both")
    if not regex and not filter:
        return dict(functions)

    if regex:
        try:
            pattern = re.compile(regex)
        except re.error as exc:
            raise StackParseError(f"invalid --regex '{regex}': {exc}") from exc
        selected = {name: spec for name, spec in functions.items() if pattern.search(name)}
    else:
        selected = {name: spec for name, spec in functions.items() if fnmatchcase(name, filter)}

    if not selected:
        raise StackParseError("no functions matching --filter/--regex were found in the YAML file")
    return selected


def parse_stack_file(
    location: str | Path,
    *,
    regex: str | None = None,
    filter: str | None = None,
) -> Dict[str, FunctionSpec]:
    """Load a stack manifest from a path or an http(s) URL, keyed by function name."""
    try:
        data = load_config(location)
    except (ConfigError, OSError) as exc:
        raise StackParseError(f"Unable to read stack file '{location}': {exc}") from exc

    raw_functions = data.get("functions")
    if raw_functions is None:
        raise StackParseError(f"Stack file '{location}' has no 'functions' section")
    if not isinstance(raw_functions, Mapping):
        raise StackParseError("'functions' must be a mapping of function name to definition")

    functions = {str(key): _parse_function(str(key), entry) for key, entry in raw_functions.items()}
    return select_functions(functions, regex=regex, filter=filter)


__all__ = [
    "BuildOption",
    "DEFAULT_OPTION_ARG",
    "FunctionSpec",
    "LanguageTemplate",
    "StackParseError",
    "parse_language_template",
    "parse_stack_file",
    "select_functions",
]

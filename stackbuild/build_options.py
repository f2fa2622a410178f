"""Expansion of named, per-language build options into build arguments."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Sequence

from core.config_loader import ConfigError

from .console import Console
from .stack import BuildOption, parse_language_template

TEMPLATE_DESCRIPTOR = "template.yml"


class BuildOptionError(RuntimeError):
    """Base class for failures while resolving build options."""


class TemplateNotFoundError(BuildOptionError):
    def __init__(self, language: str, path: Path) -> None:
        super().__init__(f"language template '{language}' not found at {path}")
        self.language = language
        self.path = path


class TemplateParseError(BuildOptionError):
    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"unable to parse {path}: {reason}")
        self.path = path


class UnknownBuildOptionError(BuildOptionError):
    """One or more requested option names are not declared by the template.

    ``matched`` holds the options that did resolve, and ``build_args`` their
    ``ARG=packages`` form once :meth:`BuildOptionResolver.validate_build_options`
    has seen the error.
    """

    def __init__(self, names: Sequence[str], matched: Sequence[BuildOption] = ()) -> None:
        joined = ", ".join(names)
        super().__init__(
            f"unknown build option(s): {joined}. "
            "Check template/<language>/template.yml for supported build options."
        )
        self.names = list(names)
        self.matched = list(matched)
        self.build_args: List[str] = []


def format_build_args(options: Iterable[BuildOption]) -> List[str]:
    return [option.as_build_arg() for option in options]


class BuildOptionResolver:
    def __init__(self, template_dir: Path, console: Console) -> None:
        self._template_dir = template_dir
        self._console = console

    def descriptor_path(self, language: str) -> Path:
        return self._template_dir / language / TEMPLATE_DESCRIPTOR

    def derive_build_options(self, language: str) -> List[BuildOption]:
        """Load the options declared by ``language``'s template descriptor."""
        path = self.descriptor_path(language)
        if not language or not path.is_file():
            raise TemplateNotFoundError(language, path)
        try:
            template = parse_language_template(path)
        except (ConfigError, ValueError, OSError) as exc:
            raise TemplateParseError(path, str(exc)) from exc
        return list(template.build_options)

    def find_build_options(
        self,
        available: Sequence[BuildOption],
        requested: Iterable[str],
    ) -> List[BuildOption]:
        """Pick ``requested`` options out of ``available`` in requested order.

        The whole request is scanned before failing so every unknown name is
        reported, not just the first.
        """
        found: List[BuildOption] = []
        unknown: List[str] = []
        for name in requested:
            match = next((option for option in available if option.name == name), None)
            if match is None:
                self._console.error(
                    f"Unknown build option '{name}'. "
                    "Check template/<language>/template.yml for supported build options."
                )
                unknown.append(name)
            else:
                found.append(match)
        if unknown:
            raise UnknownBuildOptionError(unknown, found)
        return found

    def validate_build_options(self, requested: Sequence[str], language: str) -> List[str]:
        """Resolve ``requested`` for ``language`` into ``ARG=packages`` strings."""
        available = self.derive_build_options(language)
        try:
            matched = self.find_build_options(available, requested)
        except UnknownBuildOptionError as exc:
            exc.build_args = format_build_args(exc.matched)
            raise
        return format_build_args(matched)


__all__ = [
    "BuildOptionError",
    "BuildOptionResolver",
    "TEMPLATE_DESCRIPTOR",
    "TemplateNotFoundError",
    "TemplateParseError",
    "UnknownBuildOptionError",
    "format_build_args",
]

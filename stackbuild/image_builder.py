"""Container image builds for a single function."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Protocol
import shutil
import time

from core.command_runner import CommandError, CommandRunner

from .console import Console

DOCKERFILE_LANGUAGE = "dockerfile"


@dataclass(frozen=True, slots=True)
class BuildRequest:
    image: str
    handler: str
    name: str
    language: str
    no_cache: bool = False
    squash: bool = False
    shrinkwrap: bool = False
    build_args: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class BuildResult:
    name: str
    image: str
    success: bool
    error: str | None = None
    shrinkwrapped: bool = False
    context_dir: Path | None = None
    duration: float = 0.0

    @classmethod
    def failure(cls, request: BuildRequest, error: str) -> "BuildResult":
        return cls(name=request.name, image=request.image, success=False, error=error)


class ImageBuilder(Protocol):
    def build(self, request: BuildRequest) -> BuildResult:
        ...


class DockerImageBuilder:
    """Assemble a build context under ``build/<name>`` and run ``docker build``.

    The context is the language template with the handler copied into its
    ``function/`` folder. ``dockerfile`` functions use the handler directory
    as-is. With ``dry_run`` nothing is written and the command is only handed
    to the runner, which is expected to record it.
    """

    def __init__(
        self,
        workspace: Path,
        runner: CommandRunner,
        console: Console,
        *,
        template_dir: Path | None = None,
        build_dir: Path | None = None,
        dry_run: bool = False,
    ) -> None:
        self._workspace = workspace
        self._runner = runner
        self._console = console
        self._template_dir = template_dir or workspace / "template"
        self._build_dir = build_dir or workspace / "build"
        self._dry_run = dry_run

    def _handler_path(self, handler: str) -> Path:
        path = Path(handler).expanduser()
        return path if path.is_absolute() else self._workspace / path

    def prepare_context(self, request: BuildRequest) -> Path:
        """Return the directory ``docker build`` runs in, creating it when needed."""
        handler_dir = self._handler_path(request.handler)
        if request.language == DOCKERFILE_LANGUAGE:
            return handler_dir

        template = self._template_dir / request.language
        context = self._build_dir / request.name
        if self._dry_run:
            self._console.dry(f"Would copy {template} and {handler_dir} into {context}")
            return context

        if not template.is_dir():
            raise FileNotFoundError(
                f"language template: {request.language} not supported. Build a custom Dockerfile instead."
            )
        if not handler_dir.is_dir():
            raise FileNotFoundError(f"handler directory {handler_dir} does not exist")

        if context.exists():
            shutil.rmtree(context)
        shutil.copytree(template, context)
        shutil.copytree(handler_dir, context / "function", dirs_exist_ok=True)
        self._console.debug(f"Prepared build context for {request.name} in {context}")
        return context

    @staticmethod
    def build_command(request: BuildRequest) -> List[str]:
        command = ["docker", "build", "-t", request.image]
        if request.no_cache:
            command.append("--no-cache")
        if request.squash:
            command.append("--squash")
        for key in sorted(request.build_args):
            command.extend(["--build-arg", f"{key}={request.build_args[key]}"])
        command.append(".")
        return command

    def build(self, request: BuildRequest) -> BuildResult:
        started = time.monotonic()
        if not request.image:
            return BuildResult.failure(request, "please provide a valid image name for your Docker image")
        if not request.language:
            return BuildResult.failure(request, "please provide a valid language for your function")

        try:
            context = self.prepare_context(request)
        except OSError as exc:
            return BuildResult.failure(request, str(exc))

        if request.shrinkwrap:
            self._console.info(f"{request.name} shrink-wrapped to {context}")
            return BuildResult(
                name=request.name,
                image=request.image,
                success=True,
                shrinkwrapped=True,
                context_dir=context,
                duration=time.monotonic() - started,
            )

        command = self.build_command(request)
        try:
            self._runner.run(command, cwd=context, note=f"Build {request.name}", stream=True)
        except CommandError as exc:
            return BuildResult(
                name=request.name,
                image=request.image,
                success=False,
                error=str(exc),
                context_dir=context,
                duration=time.monotonic() - started,
            )
        except OSError as exc:
            return BuildResult.failure(request, f"unable to run docker: {exc}")

        self._console.info(f"Image: {request.image} built.")
        return BuildResult(
            name=request.name,
            image=request.image,
            success=True,
            context_dir=context,
            duration=time.monotonic() - started,
        )


__all__ = [
    "BuildRequest",
    "BuildResult",
    "DOCKERFILE_LANGUAGE",
    "DockerImageBuilder",
    "ImageBuilder",
]

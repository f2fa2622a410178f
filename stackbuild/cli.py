"""Command line interface for stackbuild."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Dict, Iterable, List
import os
import sys

from core.command_runner import CommandRunner, RecordingCommandRunner, SubprocessCommandRunner

from .build import BuildConfig, BuildOrchestrator
from .build_args import BuildArgError, parse_map
from .build_options import BuildOptionError, BuildOptionResolver
from .console import Console
from .image_builder import DockerImageBuilder
from .stack import FunctionSpec, StackParseError, parse_stack_file
from .templates import (
    DEFAULT_TEMPLATE_URL,
    TEMPLATE_DIR_NAME,
    ProvisioningError,
    TemplateFetcher,
    TemplateProvisioner,
)

TEMPLATE_URL_ENV = "STACKBUILD_TEMPLATE_URL"
LOG_LEVEL_ENV = "STACKBUILD_LOG"


def _common_parser() -> ArgumentParser:
    common = ArgumentParser(add_help=False)
    common.add_argument(
        "--log",
        "-l",
        choices=sorted(Console.LEVELS, key=Console.LEVELS.__getitem__),
        default=None,
        help=f"Set log level (default: ${LOG_LEVEL_ENV} or info)",
    )
    common.add_argument("--verbose", "-v", action="store_true", help="Enable debug output")
    return common


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    common = _common_parser()
    parser = ArgumentParser(prog="stackbuild", description="Build function container images from a stack manifest")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser(
        "build",
        parents=[common],
        help="Build function containers",
        description=(
            "Build function containers either from a stack manifest (-f, may hold several "
            "functions) or from --image/--handler/--name flags for a single function."
        ),
    )
    build_parser.add_argument("-f", "--yaml", help="Path or URL of the stack manifest")
    build_parser.add_argument("--regex", help="Only build functions whose name matches this regex")
    build_parser.add_argument("--filter", help="Only build functions whose name matches this wildcard")
    build_parser.add_argument("--image", default="", help="Docker image name to build")
    build_parser.add_argument("--handler", default="", help="Directory with the function handler")
    build_parser.add_argument("--name", default="", help="Name of the function")
    build_parser.add_argument("--lang", default="", help="Programming language template")
    build_parser.add_argument("--no-cache", action="store_true", help="Do not use Docker's build cache")
    build_parser.add_argument("--squash", action="store_true", help="Use Docker's squash flag for smaller images")
    build_parser.add_argument("--shrinkwrap", action="store_true", help="Only write build contexts to ./build/")
    build_parser.add_argument("--parallel", type=int, default=1, help="Build in parallel to the depth specified")
    build_parser.add_argument(
        "-b",
        "--build-arg",
        dest="build_arg",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Add a build-arg for Docker",
    )
    build_parser.add_argument(
        "-o",
        "--build-option",
        dest="build_option",
        action="append",
        default=[],
        metavar="NAME",
        help="Set a build option, e.g. dev",
    )
    build_parser.add_argument(
        "--strict",
        action="store_true",
        help="Abort before building when any function's build options cannot be resolved",
    )
    build_parser.add_argument("--dry-run", action="store_true", help="Print docker commands without running them")
    build_parser.add_argument("--template-url", help=f"Template bundle URL (default: ${TEMPLATE_URL_ENV} or upstream)")

    template_parser = subparsers.add_parser("template", help="Manage language templates")
    template_sub = template_parser.add_subparsers(dest="template_command", required=True)
    pull_parser = template_sub.add_parser("pull", parents=[common], help="Download language templates")
    pull_parser.add_argument("url", nargs="?", help="Template bundle URL")
    pull_parser.add_argument("--overwrite", action="store_true", help="Replace templates that already exist")

    return parser.parse_args(list(argv))


def _make_console(args: Namespace, *, dry_run: bool = False) -> Console:
    if args.log:
        level = args.log
    elif args.verbose:
        level = "debug"
    else:
        level = os.environ.get(LOG_LEVEL_ENV) or "info"
    if level not in Console.LEVELS:
        level = "info"
    return Console(level=level, dry_run=dry_run)


def _template_url(explicit: str | None) -> str:
    return explicit or os.environ.get(TEMPLATE_URL_ENV) or DEFAULT_TEMPLATE_URL


def normalize_language(language: str, console: Console) -> str:
    if language == "Dockerfile":
        console.warn('Language "Dockerfile" was given; using "dockerfile" instead.')
        return "dockerfile"
    return language


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    workspace = Path.cwd()

    if args.command == "build":
        return _handle_build(args, workspace)
    if args.command == "template":
        return _handle_template_pull(args, workspace)
    raise ValueError(f"Unknown command: {args.command}")


def _single_function(args: Namespace, language: str, console: Console) -> Dict[str, FunctionSpec] | None:
    missing: List[str] = []
    if not args.image:
        missing.append("please provide a valid --image name for your Docker image")
    if not args.handler:
        missing.append("please provide the full path to your function's handler")
    if not args.name:
        missing.append("please provide the deployed --name of your function")
    if missing:
        console.error(missing[0])
        return None
    spec = FunctionSpec(name=args.name, image=args.image, handler=args.handler, language=language)
    return {args.name: spec}


def _handle_build(args: Namespace, workspace: Path) -> int:
    console = _make_console(args, dry_run=args.dry_run)
    language = normalize_language(args.lang, console)

    try:
        build_args = parse_map(args.build_arg, "build-arg")
    except BuildArgError as exc:
        console.error(str(exc))
        return 1

    functions: Dict[str, FunctionSpec] = {}
    if args.yaml:
        try:
            functions = parse_stack_file(args.yaml, regex=args.regex, filter=args.filter)
        except StackParseError as exc:
            console.error(str(exc))
            return 1

    # Without a manifest there is exactly one function, so option errors are fatal.
    # A dry run fetches no templates, so it only warns unless --strict is given.
    strict = args.strict
    if not functions:
        single = _single_function(args, language, console)
        if single is None:
            return 1
        functions = single
        strict = args.strict or not args.dry_run

    template_dir = workspace / TEMPLATE_DIR_NAME
    template_url = _template_url(args.template_url)
    provisioner = TemplateProvisioner(template_dir, TemplateFetcher(template_dir, console), console)
    try:
        provisioner.ensure_templates(template_url)
    except ProvisioningError as exc:
        console.error(f"could not pull templates: {exc}")
        return 1

    config = BuildConfig(
        workspace=workspace,
        template_dir=template_dir,
        no_cache=args.no_cache,
        squash=args.squash,
        shrinkwrap=args.shrinkwrap,
        parallel=args.parallel,
        build_args=build_args,
        build_options=tuple(args.build_option),
        strict=strict,
        dry_run=args.dry_run,
    )

    runner: CommandRunner
    if config.dry_run:
        runner = RecordingCommandRunner()
    else:
        runner = SubprocessCommandRunner()

    orchestrator = BuildOrchestrator(
        config,
        image_builder=DockerImageBuilder(
            workspace,
            runner,
            console,
            template_dir=template_dir,
            dry_run=config.dry_run,
        ),
        option_resolver=BuildOptionResolver(template_dir, console),
        console=console,
    )
    try:
        report = orchestrator.run(functions)
    except BuildOptionError as exc:
        console.error(str(exc))
        return 1

    if isinstance(runner, RecordingCommandRunner):
        for line in runner.iter_formatted(workspace=workspace):
            console.plain(line)

    console.plain(f"Build summary ({len(report.succeeded)} succeeded, {len(report.failed)} failed, {len(report.skipped)} skipped):")
    for line in report.summary_lines():
        console.plain(line)
    return 0 if report.ok else 1


def _handle_template_pull(args: Namespace, workspace: Path) -> int:
    console = _make_console(args)
    fetcher = TemplateFetcher(workspace / TEMPLATE_DIR_NAME, console)
    try:
        fetcher.fetch(_template_url(args.url), overwrite=args.overwrite)
    except ProvisioningError as exc:
        console.error(str(exc))
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

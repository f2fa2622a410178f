"""Concurrent build orchestration across a fixed-size worker pool."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Tuple
import threading

from .build_args import extend_build_arg_map, freeze
from .build_options import BuildOptionError, BuildOptionResolver, UnknownBuildOptionError
from .console import Console
from .image_builder import BuildRequest, BuildResult, ImageBuilder
from .stack import FunctionSpec


@dataclass(frozen=True, slots=True)
class BuildConfig:
    """Settings for one build run, fixed before any worker starts."""

    workspace: Path
    template_dir: Path
    no_cache: bool = False
    squash: bool = False
    shrinkwrap: bool = False
    parallel: int = 1
    build_args: Mapping[str, str] = field(default_factory=dict)
    build_options: Tuple[str, ...] = ()
    strict: bool = False
    dry_run: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "build_args", freeze(self.build_args))
        object.__setattr__(self, "build_options", tuple(self.build_options))

    @property
    def pool_size(self) -> int:
        return max(1, self.parallel)


@dataclass(frozen=True, slots=True)
class WorkItem:
    function: FunctionSpec
    build_args: Mapping[str, str]


@dataclass(slots=True)
class OptionWarning:
    function: str
    message: str


class BuildReport:
    """Outcome of a run; workers append results concurrently."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.results: List[BuildResult] = []
        self.skipped: List[str] = []
        self.warnings: List[OptionWarning] = []

    def add_result(self, result: BuildResult) -> None:
        with self._lock:
            self.results.append(result)

    @property
    def succeeded(self) -> List[BuildResult]:
        return [result for result in self.results if result.success]

    @property
    def failed(self) -> List[BuildResult]:
        return [result for result in self.results if not result.success]

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary_lines(self) -> Iterable[str]:
        for result in sorted(self.results, key=lambda item: item.name):
            if result.success:
                state = "shrink-wrapped" if result.shrinkwrapped else "built"
                yield f"  {result.name}: {state} ({result.duration:.1f}s)"
            else:
                yield f"  {result.name}: FAILED - {result.error}"
        for name in self.skipped:
            yield f"  {name}: skipped"
        for warning in self.warnings:
            yield f"  {warning.function}: warning - {warning.message}"


class QueueClosed(Exception):
    """Raised by :class:`HandoffQueue` once it is closed (and drained, for ``get``)."""


_EMPTY: Any = object()


class HandoffQueue:
    """Zero-capacity channel between the dispatcher and the workers.

    ``put`` returns only after a worker has taken the item, so the sender
    blocks while every worker is busy.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._slot: Any = _EMPTY
        self._handed = 0
        self._closed = False

    def put(self, item: Any) -> None:
        with self._cond:
            while self._slot is not _EMPTY and not self._closed:
                self._cond.wait()
            if self._closed:
                raise QueueClosed("put on a closed queue")
            self._slot = item
            ticket = self._handed
            self._cond.notify_all()
            while self._handed == ticket:
                self._cond.wait()

    def get(self) -> Any:
        with self._cond:
            while self._slot is _EMPTY and not self._closed:
                self._cond.wait()
            if self._slot is _EMPTY:
                raise QueueClosed("queue closed")
            item = self._slot
            self._slot = _EMPTY
            self._handed += 1
            self._cond.notify_all()
            return item

    def close(self) -> None:
        # An item already offered is still handed to a worker after closing.
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class BuildOrchestrator:
    """Build every non-skipped function with at most ``config.pool_size`` builds in flight."""

    def __init__(
        self,
        config: BuildConfig,
        *,
        image_builder: ImageBuilder,
        option_resolver: BuildOptionResolver,
        console: Console,
    ) -> None:
        self._config = config
        self._builder = image_builder
        self._resolver = option_resolver
        self._console = console

    @staticmethod
    def requested_options(function: FunctionSpec, global_options: Iterable[str]) -> List[str]:
        requested: List[str] = []
        for name in (*global_options, *function.build_options):
            if name not in requested:
                requested.append(name)
        return requested

    def resolve_build_args(self, function: FunctionSpec, report: BuildReport) -> Mapping[str, str]:
        """Global build args plus this function's expanded build options."""
        build_args: Dict[str, str] = dict(self._config.build_args)
        requested = self.requested_options(function, self._config.build_options)
        if not requested:
            return freeze(build_args)

        try:
            derived = self._resolver.validate_build_options(requested, function.language)
        except UnknownBuildOptionError as exc:
            derived = exc.build_args
            report.warnings.append(OptionWarning(function.name, str(exc)))
        except BuildOptionError as exc:
            self._console.error(f"{function.name}: {exc}")
            derived = []
            report.warnings.append(OptionWarning(function.name, str(exc)))

        extend_build_arg_map(build_args, derived)
        return freeze(build_args)

    def plan(self, functions: Mapping[str, FunctionSpec], report: BuildReport) -> List[WorkItem]:
        """Turn manifest entries into work items, in function-name order."""
        items: List[WorkItem] = []
        for key in sorted(functions):
            function = replace(functions[key], name=key)
            if function.skip_build:
                self._console.info(f"Skipping build of: {key}.")
                report.skipped.append(key)
                continue
            items.append(WorkItem(function=function, build_args=self.resolve_build_args(function, report)))
        return items

    def _request_for(self, item: WorkItem) -> BuildRequest:
        function = item.function
        return BuildRequest(
            image=function.image,
            handler=function.handler,
            name=function.name,
            language=function.language,
            no_cache=self._config.no_cache,
            squash=self._config.squash,
            shrinkwrap=self._config.shrinkwrap,
            build_args=item.build_args,
        )

    def _build_one(self, index: int, item: WorkItem) -> BuildResult:
        name = item.function.name
        self._console.info(f"[{index}] > Building {name}.")
        try:
            result = self._builder.build(self._request_for(item))
        except Exception as exc:
            # Keep the worker alive; the failure belongs to this function only.
            result = BuildResult(name=name, image=item.function.image, success=False, error=f"{type(exc).__name__}: {exc}")
        if not result.success:
            self._console.error(f"[{index}] Building {name} failed: {result.error}")
        self._console.info(f"[{index}] < Building {name} done.")
        return result

    def _worker(self, index: int, queue: HandoffQueue, report: BuildReport) -> None:
        while True:
            try:
                item = queue.get()
            except QueueClosed:
                break
            try:
                result = self._build_one(index, item)
            except Exception as exc:
                # Console writes can fail too (a closed pipe); record and keep draining.
                result = BuildResult(
                    name=item.function.name,
                    image=item.function.image,
                    success=False,
                    error=f"{type(exc).__name__}: {exc}",
                )
            report.add_result(result)
        try:
            self._console.debug(f"[{index}] worker done.")
        except OSError:
            pass

    def run(self, functions: Mapping[str, FunctionSpec]) -> BuildReport:
        """Build ``functions`` and block until every worker has finished.

        In strict mode any option warning raises :class:`BuildOptionError`
        before a single build starts.
        """
        report = BuildReport()
        items = self.plan(functions, report)
        if self._config.strict and report.warnings:
            details = "; ".join(f"{warning.function}: {warning.message}" for warning in report.warnings)
            raise BuildOptionError(f"build option validation failed: {details}")

        queue = HandoffQueue()
        workers = [
            threading.Thread(
                target=self._worker,
                args=(index, queue, report),
                name=f"stackbuild-worker-{index}",
                daemon=True,
            )
            for index in range(self._config.pool_size)
        ]
        for worker in workers:
            worker.start()
        try:
            for item in items:
                queue.put(item)
        finally:
            queue.close()
            for worker in workers:
                worker.join()
        return report


__all__ = [
    "BuildConfig",
    "BuildOrchestrator",
    "BuildReport",
    "HandoffQueue",
    "OptionWarning",
    "QueueClosed",
    "WorkItem",
]

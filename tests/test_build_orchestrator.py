from __future__ import annotations

from pathlib import Path
import io
import tempfile
import textwrap
import threading
import time
import unittest

from stackbuild.build import BuildConfig, BuildOrchestrator, HandoffQueue, QueueClosed
from stackbuild.build_options import BuildOptionError, BuildOptionResolver
from stackbuild.console import Console
from stackbuild.image_builder import BuildRequest, BuildResult
from stackbuild.stack import FunctionSpec


class FakeImageBuilder:
    def __init__(self, *, delay: float = 0.0, fail: tuple[str, ...] = (), explode: tuple[str, ...] = ()) -> None:
        self._lock = threading.Lock()
        self._delay = delay
        self._fail = fail
        self._explode = explode
        self.requests: list[BuildRequest] = []
        self.active = 0
        self.max_active = 0

    def build(self, request: BuildRequest) -> BuildResult:
        with self._lock:
            self.requests.append(request)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self._delay)
            if request.name in self._explode:
                raise RuntimeError("docker daemon went away")
            if request.name in self._fail:
                return BuildResult(name=request.name, image=request.image, success=False, error="exit 1")
            return BuildResult(name=request.name, image=request.image, success=True)
        finally:
            with self._lock:
                self.active -= 1


class BrokenPipeStream(io.StringIO):
    def write(self, text: str) -> int:
        raise BrokenPipeError(32, "Broken pipe")


def _spec(name: str, *, skip: bool = False, language: str = "python3", options: tuple[str, ...] = ()) -> FunctionSpec:
    return FunctionSpec(
        name=name,
        image=f"example/{name}:latest",
        handler=f"./{name}",
        language=language,
        skip_build=skip,
        build_options=options,
    )


def _worker_threads() -> list[threading.Thread]:
    return [thread for thread in threading.enumerate() if thread.name.startswith("stackbuild-worker-")]


class BuildOrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.workspace = Path(self.temp_dir.name)
        self.template_dir = self.workspace / "template"
        language_dir = self.template_dir / "python3"
        language_dir.mkdir(parents=True)
        (language_dir / "template.yml").write_text(
            textwrap.dedent(
                """
                language: python3
                build_options:
                  - name: dev
                    arg: ARG
                    packages: [curl, git]
                """
            ),
            encoding="utf-8",
        )
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()
        self.console = Console(level="debug", stdout=self.stdout, stderr=self.stderr)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _orchestrator(self, builder: FakeImageBuilder, **config: object) -> BuildOrchestrator:
        build_config = BuildConfig(workspace=self.workspace, template_dir=self.template_dir, **config)
        return BuildOrchestrator(
            build_config,
            image_builder=builder,
            option_resolver=BuildOptionResolver(self.template_dir, self.console),
            console=self.console,
        )

    def test_builds_each_non_skipped_function_once(self) -> None:
        functions = {
            "alpha": _spec("alpha"),
            "bravo": _spec("bravo", skip=True),
            "charlie": _spec("charlie", language="node"),
            "delta": _spec("delta", skip=True),
            "echo": _spec("echo"),
        }
        builder = FakeImageBuilder(delay=0.05)
        report = self._orchestrator(builder, parallel=2).run(functions)

        self.assertEqual(len(builder.requests), 3)
        by_name = {request.name: request for request in builder.requests}
        self.assertEqual(set(by_name), {"alpha", "charlie", "echo"})
        for name, request in by_name.items():
            self.assertEqual(request.image, functions[name].image)
            self.assertEqual(request.handler, functions[name].handler)
            self.assertEqual(request.language, functions[name].language)
        self.assertEqual(report.skipped, ["bravo", "delta"])
        self.assertEqual(len(report.results), 3)
        self.assertTrue(report.ok)
        self.assertLessEqual(builder.max_active, 2)
        self.assertEqual(_worker_threads(), [])

    def test_pool_size_below_one_behaves_as_one(self) -> None:
        functions = {name: _spec(name) for name in ("a", "b", "c")}
        for depth in (0, -3):
            with self.subTest(depth=depth):
                builder = FakeImageBuilder(delay=0.02)
                orchestrator = self._orchestrator(builder, parallel=depth)
                report = orchestrator.run(functions)
                self.assertEqual(len(builder.requests), 3)
                self.assertEqual(builder.max_active, 1)
                self.assertEqual(len(report.results), 3)
                self.assertEqual(_worker_threads(), [])

    def test_parallel_depth_allows_concurrent_builds(self) -> None:
        functions = {f"fn{index}": _spec(f"fn{index}") for index in range(4)}
        builder = FakeImageBuilder(delay=0.2)
        self._orchestrator(builder, parallel=4).run(functions)
        self.assertGreater(builder.max_active, 1)
        self.assertLessEqual(builder.max_active, 4)

    def test_name_is_back_filled_from_manifest_key(self) -> None:
        builder = FakeImageBuilder()
        self._orchestrator(builder).run({"real-name": _spec("stale")})
        self.assertEqual(builder.requests[0].name, "real-name")

    def test_function_options_merge_into_its_own_build_args(self) -> None:
        functions = {
            "with-dev": _spec("with-dev", options=("dev",)),
            "plain": _spec("plain"),
        }
        builder = FakeImageBuilder()
        report = self._orchestrator(builder, build_args={"ARG": "x", "OTHER": "1"}).run(functions)

        by_name = {request.name: request for request in builder.requests}
        self.assertEqual(dict(by_name["with-dev"].build_args), {"ARG": "x curl git", "OTHER": "1"})
        self.assertEqual(dict(by_name["plain"].build_args), {"ARG": "x", "OTHER": "1"})
        self.assertEqual(report.warnings, [])

    def test_global_build_options_apply_to_every_function(self) -> None:
        functions = {"one": _spec("one"), "two": _spec("two", options=("dev",))}
        builder = FakeImageBuilder()
        self._orchestrator(builder, build_options=("dev",)).run(functions)
        for request in builder.requests:
            self.assertEqual(request.build_args["ARG"], "curl git")

    def test_unknown_option_warns_but_still_builds(self) -> None:
        functions = {"fn": _spec("fn", options=("dev", "missing"))}
        builder = FakeImageBuilder()
        report = self._orchestrator(builder).run(functions)

        self.assertEqual(len(builder.requests), 1)
        self.assertEqual(builder.requests[0].build_args["ARG"], "curl git")
        self.assertEqual(len(report.warnings), 1)
        self.assertIn("missing", report.warnings[0].message)

    def test_missing_template_warns_without_blocking_build(self) -> None:
        functions = {"fn": _spec("fn", language="ruby", options=("dev",))}
        builder = FakeImageBuilder()
        report = self._orchestrator(builder).run(functions)
        self.assertEqual(len(builder.requests), 1)
        self.assertEqual(dict(builder.requests[0].build_args), {})
        self.assertEqual(report.warnings[0].function, "fn")
        self.assertIn("ruby", self.stderr.getvalue())

    def test_strict_mode_aborts_before_any_build(self) -> None:
        functions = {"good": _spec("good"), "bad": _spec("bad", options=("missing",))}
        builder = FakeImageBuilder()
        with self.assertRaises(BuildOptionError):
            self._orchestrator(builder, strict=True).run(functions)
        self.assertEqual(builder.requests, [])
        self.assertEqual(_worker_threads(), [])

    def test_failures_are_isolated_per_function(self) -> None:
        functions = {name: _spec(name) for name in ("a", "b", "c", "d")}
        builder = FakeImageBuilder(fail=("b",), explode=("c",))
        report = self._orchestrator(builder, parallel=2).run(functions)

        self.assertEqual(len(builder.requests), 4)
        self.assertEqual({result.name for result in report.failed}, {"b", "c"})
        self.assertEqual({result.name for result in report.succeeded}, {"a", "d"})
        self.assertFalse(report.ok)
        self.assertIn("docker daemon went away", self.stderr.getvalue())

    def test_broken_console_stream_does_not_stall_dispatch(self) -> None:
        broken = BrokenPipeStream()
        console = Console(level="info", stdout=broken, stderr=broken)
        orchestrator = BuildOrchestrator(
            BuildConfig(workspace=self.workspace, template_dir=self.template_dir, parallel=1),
            image_builder=FakeImageBuilder(),
            option_resolver=BuildOptionResolver(self.template_dir, console),
            console=console,
        )
        outcome: dict[str, object] = {}
        runner = threading.Thread(
            target=lambda: outcome.setdefault("report", orchestrator.run({"a": _spec("a"), "b": _spec("b")})),
            daemon=True,
        )
        runner.start()
        runner.join(timeout=3)

        self.assertFalse(runner.is_alive())
        report = outcome["report"]
        self.assertEqual({result.name for result in report.results}, {"a", "b"})
        self.assertFalse(report.ok)
        for result in report.results:
            self.assertIn("BrokenPipeError", result.error)
        self.assertEqual(_worker_threads(), [])

    def test_config_flags_reach_the_builder(self) -> None:
        builder = FakeImageBuilder()
        self._orchestrator(builder, no_cache=True, squash=True, shrinkwrap=True).run({"fn": _spec("fn")})
        request = builder.requests[0]
        self.assertTrue(request.no_cache)
        self.assertTrue(request.squash)
        self.assertTrue(request.shrinkwrap)

    def test_config_build_args_are_read_only(self) -> None:
        source = {"A": "1"}
        config = BuildConfig(workspace=self.workspace, template_dir=self.template_dir, build_args=source)
        source["A"] = "2"
        self.assertEqual(config.build_args["A"], "1")
        with self.assertRaises(TypeError):
            config.build_args["A"] = "3"  # type: ignore[index]

    def test_worker_progress_is_logged(self) -> None:
        self._orchestrator(FakeImageBuilder()).run({"fn": _spec("fn")})
        output = self.stdout.getvalue()
        self.assertIn("[0] > Building fn.", output)
        self.assertIn("[0] < Building fn done.", output)
        self.assertIn("[0] worker done.", output)


class HandoffQueueTests(unittest.TestCase):
    def test_put_blocks_until_item_is_taken(self) -> None:
        queue = HandoffQueue()
        sender = threading.Thread(target=queue.put, args=("item",))
        sender.start()
        time.sleep(0.1)
        self.assertTrue(sender.is_alive())
        self.assertEqual(queue.get(), "item")
        sender.join(timeout=2)
        self.assertFalse(sender.is_alive())

    def test_get_raises_once_closed_and_drained(self) -> None:
        queue = HandoffQueue()
        queue.close()
        with self.assertRaises(QueueClosed):
            queue.get()

    def test_put_after_close_raises(self) -> None:
        queue = HandoffQueue()
        queue.close()
        with self.assertRaises(QueueClosed):
            queue.put("late")

    def test_items_arrive_in_send_order_for_single_consumer(self) -> None:
        queue = HandoffQueue()
        received: list[int] = []

        def consume() -> None:
            while True:
                try:
                    received.append(queue.get())
                except QueueClosed:
                    return

        consumer = threading.Thread(target=consume)
        consumer.start()
        for value in range(5):
            queue.put(value)
        queue.close()
        consumer.join(timeout=2)
        self.assertEqual(received, [0, 1, 2, 3, 4])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()

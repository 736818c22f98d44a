# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from stagecheck.corpus import TestCase, discover_tests
from stagecheck.errors import CompileError
from stagecheck.options import HarnessOptions
from stagecheck.runner import FailureReport, TestRunner, format_failure_summary
from stagecheck.stages import StageManager
from stagecheck.test_support import COMPILER_SOURCE, FakeWorld, compiled, write_project


def _run(opts: HarnessOptions, world: FakeWorld, cases: list[TestCase] | None = None) -> FailureReport:
	stages = StageManager(opts, engine_factory=world.engine_factory)
	runner = TestRunner(opts, stages, engine_factory=world.engine_factory)
	if cases is None:
		cases = discover_tests(opts.resolve(opts.test_dir))
	return asyncio.run(runner.run(cases))


def _failed_stages(report: FailureReport) -> dict[str, list[str]]:
	return {test: [f.stage for f in fs] for test, fs in report.items()}


def test_scenario_add_passes_on_stage0(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
	opts = write_project(tmp_path, {"add": b"#t"})
	assert _run(opts, FakeWorld()) == {}
	lines = capsys.readouterr().out.splitlines()
	assert lines.index("  stage0 succeeded") > lines.index("Running test add.ss")


def test_scenario_echo_input_bound_before_anything_else(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {"echo": b"echo"}, inputs={"echo": b"42\n"})
	world = FakeWorld()
	assert _run(opts, world) == {}
	# Engines: one for compiling the test, one for running it.
	test_engine = next(e for e in world.engines if "invoke:do-test" in e.events)
	assert test_engine.events[0] == "set_input"
	assert test_engine.input == b"42\n"
	assert test_engine.output() == b"42\n"


def test_echo_without_input_fails(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {"echo": b"echo"})
	report = _run(opts, FakeWorld())
	assert report["echo.ss"][0].kind == "false-result"


def test_scenario_stage1_build_failure(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
	opts = write_project(tmp_path, {"a": b"#t", "b": b"#f"}, stage1=True)

	def stage0_cannot_self_compile(compiler: bytes, source: bytes) -> bytes:
		if source == COMPILER_SOURCE:
			raise CompileError("stage0 rejected compiler source")
		return compiled(source)

	report = _run(opts, FakeWorld(stage0_cannot_self_compile))
	assert _failed_stages(report) == {"a.ss": ["stage1"], "b.ss": ["stage0", "stage1"]}
	assert report["a.ss"][0].kind == "stage-build"
	assert report["b.ss"][0].kind == "false-result"
	assert report["b.ss"][1].kind == "stage-build"
	lines = [l for l in capsys.readouterr().out.splitlines() if not l.startswith("[stage]")]
	assert lines[:3] == ["Running test a.ss", "  stage0 succeeded", "  stage1 FAILED (stage-build)"]


@pytest.mark.parametrize(
	"body, kind",
	[
		(b"#f", "false-result"),
		(b"trap", "trap"),
		(b"weird", "marshal"),
		(b"boom", "error"),
	],
)
def test_attempt_failure_kinds(tmp_path: Path, body: bytes, kind: str) -> None:
	opts = write_project(tmp_path, {"t": body})
	report = _run(opts, FakeWorld())
	assert [(f.stage, f.kind) for f in report["t.ss"]] == [("stage0", kind)]


def test_load_error_when_compiler_emits_garbage(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {"t": b"#t"})
	report = _run(opts, FakeWorld(lambda compiler, source: b"garbage"))
	assert report["t.ss"][0].kind == "load"


def test_unexpected_errors_keep_traceback(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
	opts = write_project(tmp_path, {"t": b"boom"})
	report = _run(opts, FakeWorld())
	assert "ValueError: boom" in report["t.ss"][0].diagnostic
	assert "Traceback" in capsys.readouterr().err


@pytest.mark.parametrize("body", [b"#t", b"0", b"()", b"sym"])
def test_everything_but_false_passes(tmp_path: Path, body: bytes) -> None:
	opts = write_project(tmp_path, {"t": body}, stage1=True, stage2=True)
	assert _run(opts, FakeWorld()) == {}


def test_stage1_compile_failure_is_isolated(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {"x": b"#t", "y": b"#t", "z": b"#f"}, snapshot=compiled(b"snap"), stage1=True)

	def fail_x_at_stage1(compiler: bytes, source: bytes) -> bytes:
		if compiler != compiled(b"snap") and source == b"#t" and fail_x_at_stage1.armed:
			fail_x_at_stage1.armed = False
			raise CompileError("injected")
		return compiled(source)

	fail_x_at_stage1.armed = True  # type: ignore[attr-defined]
	baseline = _run(opts, FakeWorld())
	injected = _run(opts, FakeWorld(fail_x_at_stage1))
	assert _failed_stages(baseline) == {"z.ss": ["stage0", "stage1"]}
	assert _failed_stages(injected) == {"x.ss": ["stage1"], "z.ss": ["stage0", "stage1"]}
	assert injected["x.ss"][0].diagnostic == "injected"


def test_order_does_not_change_outcomes(tmp_path: Path) -> None:
	opts = write_project(
		tmp_path,
		{"a": b"#t", "b": b"#f", "c": b"trap", "d": b"echo", "e": b"0"},
		inputs={"d": b"hi"},
		stage1=True,
		stage2=True,
	)
	cases = discover_tests(opts.resolve(opts.test_dir))
	forward = _run(opts, FakeWorld(), cases)
	backward = _run(opts, FakeWorld(), list(reversed(cases)))
	assert forward == backward
	assert sorted(forward) == ["b.ss", "c.ss"]


def test_fresh_engine_per_attempt(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {"a": b"#t", "b": b"#t"}, stage1=True, stage2=True)
	world = FakeWorld()
	_run(opts, world)
	run_engines = [e for e in world.engines if "invoke:do-test" in e.events]
	assert len(run_engines) == 6
	assert len({id(e) for e in run_engines}) == 6
	assert all(e.events.count("load") == 1 for e in world.engines)


def test_failure_summary_lists_stages(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {"t": b"#f"}, stage1=True)
	lines = format_failure_summary(_run(opts, FakeWorld()))
	assert lines == ["Some tests failed:", "    't.ss': stage0, stage1"]

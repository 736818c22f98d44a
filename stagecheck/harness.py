# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
One harness run: discover the corpus, run it against every tested stage, then
(when stage3 is enabled) check the fixpoint.

Test results are always collected and summarized before the fixpoint check,
so a fatal fixpoint error never hides per-test outcomes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, TextIO

from stagecheck.corpus import discover_tests
from stagecheck.engine import EngineFactory, WasmtimeEngine
from stagecheck.errors import HarnessError
from stagecheck.fixpoint import FixpointResult, FixpointVerifier
from stagecheck.invoker import CompilerInvoker
from stagecheck.options import HarnessOptions
from stagecheck.runner import FailureReport, TestRunner, format_failure_summary
from stagecheck.stages import Stage, StageManager


@dataclass(frozen=True)
class HarnessReport:
	failures: FailureReport
	build_failures: dict[str, str]
	stages: list[Stage]
	fixpoint: Optional[FixpointResult] = None
	fatal: Optional[HarnessError] = None

	@property
	def ok(self) -> bool:
		return not self.failures and self.fatal is None

	def to_dict(self) -> dict[str, Any]:
		return {
			"ok": self.ok,
			"failures": {test: [f.to_dict() for f in fs] for test, fs in sorted(self.failures.items())},
			"build_failures": dict(sorted(self.build_failures.items())),
			"stages": [s.to_dict() for s in sorted(self.stages, key=lambda s: s.ordinal)],
			"fixpoint": self.fixpoint.to_dict() if self.fixpoint is not None else None,
			"fatal": self.fatal.to_dict() if self.fatal is not None else None,
		}


def harness_exit_code(report: HarnessReport) -> int:
	"""
	Exit code contract:
	- 0: every attempt passed and the fixpoint (if checked) held
	- 1: at least one (test, stage) attempt failed
	- 2: the run was aborted by a fatal error
	"""
	if report.fatal is not None:
		return 2
	if report.failures:
		return 1
	return 0


class Harness:
	def __init__(
		self,
		options: HarnessOptions,
		*,
		engine_factory: EngineFactory = WasmtimeEngine,
		host_compiler: CompilerInvoker | None = None,
		out: TextIO | None = None,
		err: TextIO | None = None,
	) -> None:
		self.options = options
		self.out = out
		self.stages = StageManager(options, engine_factory=engine_factory, host_compiler=host_compiler, out=out, err=err)
		self.runner = TestRunner(options, self.stages, engine_factory=engine_factory, out=out, err=err)
		self.verifier = FixpointVerifier(options, self.stages, out=out)
		self.failures: FailureReport = {}
		self.fixpoint: Optional[FixpointResult] = None

	async def run(self) -> HarnessReport:
		"""
		Raises FixpointMismatchError, StageBuildError (from the fixpoint chain)
		or ConfigError; `report()` still reflects everything completed before.
		"""
		opts = self.options
		cases = discover_tests(
			opts.resolve(opts.test_dir),
			source_ext=opts.source_ext,
			input_ext=opts.input_ext,
			only=opts.tests,
		)
		self.failures = await self.runner.run(cases)
		for line in format_failure_summary(self.failures):
			print(line, file=self.out)
		if self.verifier.enabled:
			self.fixpoint = await self.verifier.verify()
		return self.report()

	def report(self, fatal: HarnessError | None = None) -> HarnessReport:
		return HarnessReport(
			failures=dict(self.failures),
			build_failures={name: err.diagnostic for name, err in self.stages.failures().items()},
			stages=self.stages.built(),
			fixpoint=self.fixpoint,
			fatal=fatal,
		)


def run_harness(options: HarnessOptions, **kwargs: Any) -> HarnessReport:
	"""Synchronous entry point; fatal errors propagate."""
	return asyncio.run(Harness(options, **kwargs).run())


__all__ = ["Harness", "HarnessReport", "harness_exit_code", "run_harness"]

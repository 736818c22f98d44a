# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Per-test, per-stage execution.

Each (test, stage) attempt gets its own engine, compiles the test with that
stage's compiler, runs the entry export and checks the marshalled result.
Attempt errors are folded into an `ExecutionOutcome`; the only way a stage is
skipped is when it could not be built, which is recorded as a `stage-build`
failure for that attempt.
"""

from __future__ import annotations

import sys
import traceback
from dataclasses import dataclass
from typing import Any, Iterable, Optional, TextIO

from stagecheck.corpus import TestCase
from stagecheck.engine import EngineFactory, is_truthy
from stagecheck.errors import FailureKind, HarnessError, StageBuildError
from stagecheck.options import HarnessOptions
from stagecheck.stages import StageManager


@dataclass(frozen=True)
class ExecutionOutcome:
	test: str
	stage: str
	ok: bool
	kind: Optional[FailureKind] = None
	diagnostic: Optional[str] = None

	@classmethod
	def passed(cls, test: str, stage: str) -> "ExecutionOutcome":
		return cls(test=test, stage=stage, ok=True)

	@classmethod
	def failed(cls, test: str, stage: str, kind: FailureKind, diagnostic: str) -> "ExecutionOutcome":
		return cls(test=test, stage=stage, ok=False, kind=kind, diagnostic=diagnostic)


@dataclass(frozen=True)
class StageFailure:
	stage: str
	kind: FailureKind
	diagnostic: str

	def to_dict(self) -> dict[str, Any]:
		return {"stage": self.stage, "kind": self.kind, "diagnostic": self.diagnostic}


FailureReport = dict[str, list[StageFailure]]


class TestRunner:
	__test__ = False  # not a pytest class

	def __init__(
		self,
		options: HarnessOptions,
		stages: StageManager,
		*,
		engine_factory: EngineFactory,
		out: TextIO | None = None,
		err: TextIO | None = None,
	) -> None:
		self.options = options
		self.stages = stages
		self.engine_factory = engine_factory
		self.out = out
		self.err = err

	async def run_attempt(self, case: TestCase, ordinal: int) -> ExecutionOutcome:
		stage = f"stage{ordinal}"
		try:
			compiler = await self.stages.compiler(ordinal)
		except StageBuildError as err:
			return ExecutionOutcome.failed(case.name, stage, "stage-build", err.diagnostic)

		entry = self.options.entry_export
		try:
			engine = self.engine_factory()
			if case.input is not None:
				engine.set_input(case.input)
			compiled = await compiler.compile(case.source)
			module = engine.load_module(compiled)
			raw = engine.invoke(module, entry)
			value = engine.to_host(raw)
		except HarnessError as err:
			return ExecutionOutcome.failed(case.name, stage, err.kind, err.diagnostic)
		except Exception:  # noqa: BLE001
			return ExecutionOutcome.failed(case.name, stage, "error", traceback.format_exc().rstrip())
		if not is_truthy(value):
			return ExecutionOutcome.failed(case.name, stage, "false-result", f"'{entry}' returned #f")
		return ExecutionOutcome.passed(case.name, stage)

	async def run_case(self, case: TestCase) -> list[ExecutionOutcome]:
		print(f"Running test {case.name}", file=self.out)
		outcomes: list[ExecutionOutcome] = []
		for ordinal in self.options.tested_stages():
			outcome = await self.run_attempt(case, ordinal)
			self._report(outcome)
			outcomes.append(outcome)
		return outcomes

	async def run(self, cases: Iterable[TestCase]) -> FailureReport:
		"""Run every case against every tested stage; returns only the failing tests."""
		failures: FailureReport = {}
		for case in cases:
			local = [
				StageFailure(stage=o.stage, kind=o.kind or "error", diagnostic=o.diagnostic or "")
				for o in await self.run_case(case)
				if not o.ok
			]
			if local:
				failures[case.name] = local
		return failures

	def _report(self, outcome: ExecutionOutcome) -> None:
		if outcome.ok:
			print(f"  {outcome.stage} succeeded", file=self.out)
			return
		print(f"  {outcome.stage} FAILED ({outcome.kind})", file=self.out)
		for line in (outcome.diagnostic or "").splitlines():
			print(f"    {line}", file=self.err or sys.stderr)


def format_failure_summary(failures: FailureReport) -> list[str]:
	if not failures:
		return []
	lines = ["Some tests failed:"]
	for test, stage_failures in failures.items():
		lines.append(f"    '{test}': {', '.join(f.stage for f in stage_failures)}")
	return lines


__all__ = ["ExecutionOutcome", "StageFailure", "FailureReport", "TestRunner", "format_failure_summary"]

# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Stage derivation.

stage0 comes from the snapshot or the host toolchain; stage N>0 is always
stage N-1's compiler run over the canonical compiler source. Each stage is
built at most once per run: `build(n)` hands out the same future to every
caller, including callers that arrive while the build is still in flight.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Literal, TextIO

from stagecheck.crypto import sha256_hex
from stagecheck.engine import EngineFactory
from stagecheck.errors import HarnessError, SnapshotTrustError, StageBuildError
from stagecheck.invoker import CompilerInvoker, HostCompiler, ModuleCompiler
from stagecheck.options import FINAL_STAGE, HarnessOptions
from stagecheck.snapshot import load_snapshot

Provenance = Literal["snapshot", "host", "self"]


@dataclass(frozen=True)
class Stage:
	ordinal: int
	provenance: Provenance
	data: bytes = field(repr=False)

	@property
	def name(self) -> str:
		return f"stage{self.ordinal}"

	@cached_property
	def sha256(self) -> str:
		return sha256_hex(self.data)

	def to_dict(self) -> dict[str, Any]:
		return {"stage": self.name, "provenance": self.provenance, "size": len(self.data), "sha256": self.sha256}


class StageManager:
	def __init__(
		self,
		options: HarnessOptions,
		*,
		engine_factory: EngineFactory,
		host_compiler: CompilerInvoker | None = None,
		out: TextIO | None = None,
		err: TextIO | None = None,
	) -> None:
		self.options = options
		self.engine_factory = engine_factory
		if host_compiler is None:
			host_compiler = HostCompiler(
				options.host_command,
				scratch_path=options.resolve(options.scratch_path),
				cwd=options.root.resolve(),
				source_ext=options.source_ext,
			)
		self.host_compiler = host_compiler
		self.out = out
		self.err = err
		self._builds: list[asyncio.Future[Stage] | None] = [None] * (FINAL_STAGE + 1)
		self._compiler_source: bytes | None = None

	def build(self, ordinal: int) -> asyncio.Future[Stage]:
		"""Return the (shared) future for stage `ordinal`, starting the build on first use."""
		if not 0 <= ordinal <= FINAL_STAGE:
			raise ValueError(f"stage ordinal out of range: {ordinal}")
		fut = self._builds[ordinal]
		if fut is None:
			fut = asyncio.ensure_future(self._build(ordinal))
			self._builds[ordinal] = fut
		return fut

	async def stage(self, ordinal: int) -> Stage:
		return await self.build(ordinal)

	async def compiler(self, ordinal: int) -> ModuleCompiler:
		stage = await self.build(ordinal)
		return ModuleCompiler(stage.data, engine_factory=self.engine_factory, export=self.options.compile_export)

	def built(self) -> list[Stage]:
		return [fut.result() for fut in self._settled() if fut.exception() is None]

	def failures(self) -> dict[str, StageBuildError]:
		out: dict[str, StageBuildError] = {}
		for fut in self._settled():
			exc = fut.exception()
			if isinstance(exc, StageBuildError):
				out[exc.stage_name] = exc
		return out

	def _settled(self) -> list[asyncio.Future[Stage]]:
		return [fut for fut in self._builds if fut is not None and fut.done() and not fut.cancelled()]

	async def _build(self, ordinal: int) -> Stage:
		try:
			stage = await self._construct(ordinal)
		except StageBuildError as err:
			print(f"[stage] stage{ordinal} build FAILED: {err.diagnostic}", file=self.err or sys.stderr)
			raise
		except Exception as exc:  # noqa: BLE001
			err = StageBuildError(ordinal, f"{type(exc).__name__}: {exc}")
			print(f"[stage] stage{ordinal} build FAILED: {err.diagnostic}", file=self.err or sys.stderr)
			raise err from exc
		print(f"[stage] {stage.name} {stage.provenance} ({len(stage.data)} bytes, sha256:{stage.sha256})", file=self.out)
		return stage

	async def _construct(self, ordinal: int) -> Stage:
		if ordinal == 0:
			return await self._construct_stage0()
		try:
			prev = await self.build(ordinal - 1)
		except StageBuildError as err:
			raise StageBuildError(ordinal, f"depends on {err.stage_name}, which failed to build") from err
		source = self._canonical_source(ordinal)
		compiler = ModuleCompiler(prev.data, engine_factory=self.engine_factory, export=self.options.compile_export)
		try:
			data = await compiler.compile(source)
		except HarnessError as err:
			raise StageBuildError(ordinal, f"{prev.name} failed to compile the compiler source: {err.diagnostic}") from err
		return Stage(ordinal=ordinal, provenance="self", data=data)

	async def _construct_stage0(self) -> Stage:
		opts = self.options
		if opts.use_snapshot:
			path = opts.resolve(opts.snapshot_path)
			trust = opts.resolve(opts.trust_store_path) if opts.trust_store_path is not None else None
			try:
				data = load_snapshot(path, trust_store_path=trust)
			except SnapshotTrustError as err:
				raise StageBuildError(0, f"snapshot {path} is not trusted: {err.diagnostic}") from err
			except OSError as err:
				raise StageBuildError(0, f"cannot read snapshot {path}: {err}") from err
			return Stage(ordinal=0, provenance="snapshot", data=data)
		try:
			data = await self.host_compiler.compile(opts.resolve(opts.compiler_source))
		except HarnessError as err:
			raise StageBuildError(0, f"host build failed: {err.diagnostic}") from err
		return Stage(ordinal=0, provenance="host", data=data)

	def _canonical_source(self, ordinal: int) -> bytes:
		if self._compiler_source is None:
			path = self.options.resolve(self.options.compiler_source)
			try:
				self._compiler_source = path.read_bytes()
			except OSError as err:
				raise StageBuildError(ordinal, f"cannot read compiler source {path}: {err}") from err
		return self._compiler_source


__all__ = ["Provenance", "Stage", "StageManager"]

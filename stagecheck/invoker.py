# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Compiler invokers.

Both variants share one contract: `await compile(source) -> bytes`, raising
`CompileError` on failure.

- `HostCompiler` runs the trusted host toolchain as a subprocess and reads the
  scratch artifact it leaves behind.
- `ModuleCompiler` runs a compiler that is itself a compiled module, feeding
  the source through a fresh engine's input stream.
"""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from typing import Protocol, Sequence

from stagecheck.engine import EngineFactory
from stagecheck.errors import CompileError, HarnessError


class CompilerInvoker(Protocol):
	async def compile(self, source: bytes | Path) -> bytes: ...


class HostCompiler:
	"""
	Host-toolchain variant.

	The scratch artifact is a fixed path shared by every invocation, so all
	calls through one instance are serialized by `_lock`.
	"""

	def __init__(self, command: Sequence[str], *, scratch_path: Path, cwd: Path, source_ext: str = ".ss") -> None:
		self.command = tuple(command)
		self.scratch_path = scratch_path
		self.cwd = cwd
		self.source_ext = source_ext
		self._lock = asyncio.Lock()

	async def compile(self, source: bytes | Path) -> bytes:
		async with self._lock:
			if isinstance(source, Path):
				return await self._compile_path(source)
			with tempfile.TemporaryDirectory(prefix="stagecheck-host-") as tmp:
				src_path = Path(tmp) / f"source{self.source_ext}"
				src_path.write_bytes(source)
				return await self._compile_path(src_path)

	async def _compile_path(self, source_path: Path) -> bytes:
		# Never hand back an artifact left over from an earlier invocation.
		self.scratch_path.unlink(missing_ok=True)
		argv = [*self.command, str(source_path)]
		try:
			proc = await asyncio.create_subprocess_exec(
				*argv,
				cwd=str(self.cwd),
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
			)
		except OSError as err:
			raise CompileError(f"failed to start host compiler {argv[0]!r}: {err}") from err
		stdout, stderr = await proc.communicate()
		if proc.returncode != 0:
			detail = stderr.decode("utf-8", errors="replace").strip() or stdout.decode("utf-8", errors="replace").strip()
			raise CompileError(f"host compiler exited with status {proc.returncode} on {source_path}: {detail}")
		try:
			return self.scratch_path.read_bytes()
		except FileNotFoundError as err:
			raise CompileError(f"host compiler produced no artifact at {self.scratch_path} for {source_path}") from err


class ModuleCompiler:
	"""Module variant: `compiler_bytes` is a compiled compiler module."""

	def __init__(self, compiler_bytes: bytes, *, engine_factory: EngineFactory, export: str = "compile-stdin->stdout") -> None:
		self.compiler_bytes = compiler_bytes
		self.engine_factory = engine_factory
		self.export = export

	async def compile(self, source: bytes | Path) -> bytes:
		if isinstance(source, Path):
			try:
				source = source.read_bytes()
			except OSError as err:
				raise CompileError(f"cannot read source {source}: {err}") from err
		engine = self.engine_factory()
		try:
			compiler = engine.load_module(self.compiler_bytes)
			engine.set_input(source)
			engine.clear_output()
			engine.invoke(compiler, self.export)
		except CompileError:
			raise
		except HarnessError as err:
			raise CompileError(f"compiler module failed ({err.kind}): {err.diagnostic}") from err
		return engine.output()


__all__ = ["CompilerInvoker", "HostCompiler", "ModuleCompiler"]

# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Shared helpers for harness tests.

`FakeWorld` hands out scriptable engines that understand a tiny module format
(`MOD|<body>`). Running the compile export of any module writes
`compile_fn(compiler_bytes, input)` to the output buffer (by default
`MOD|<input>`, so the bootstrap converges immediately). Running the entry
export interprets the body as one of the programs in `run_program`.

Also provides WAT sources for the real wasmtime engine and a project writer
that lays out a corpus, snapshot and compiler source under a temp directory.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Mapping

import wasmtime

from stagecheck.engine import SCHEME_FALSE, SCHEME_TRUE
from stagecheck.errors import CompileError, LoadError, MarshalError, RuntimeTrapError
from stagecheck.options import HarnessOptions

MAGIC = b"MOD|"
COMPILER_SOURCE = b"compiler-src"
UNMARSHALABLE = object()


def compiled(body: bytes) -> bytes:
	return MAGIC + body


def default_compile(compiler: bytes, source: bytes) -> bytes:
	return compiled(source)


class FakeEngine:
	def __init__(self, world: "FakeWorld") -> None:
		self.world = world
		self.input = b""
		self.pos = 0
		self._output = bytearray()
		self.events: list[str] = []

	def read(self) -> bytes:
		data = self.input[self.pos :]
		self.pos = len(self.input)
		return data

	def write(self, data: bytes) -> None:
		self._output.extend(data)

	def set_input(self, data: bytes) -> None:
		self.events.append("set_input")
		self.input = bytes(data)
		self.pos = 0

	def clear_output(self) -> None:
		self.events.append("clear_output")
		self._output = bytearray()

	def output(self) -> bytes:
		return bytes(self._output)

	def load_module(self, data: bytes) -> bytes:
		self.events.append("load")
		if not data.startswith(MAGIC):
			raise LoadError(f"not a module: {data[:16]!r}")
		return data[len(MAGIC) :]

	def invoke(self, module: bytes, export: str) -> Any:
		self.events.append(f"invoke:{export}")
		if export == self.world.compile_export:
			source = self.read()
			self.world.compile_calls.append((compiled(module), source))
			self.write(self.world.compile_fn(compiled(module), source))
			return None
		if export == self.world.entry_export:
			return run_program(module, self)
		raise LoadError(f"module has no export '{export}'")

	def to_host(self, raw: Any) -> Any:
		if raw is UNMARSHALABLE:
			raise MarshalError("cannot marshal opaque engine value")
		return raw


def run_program(body: bytes, engine: FakeEngine) -> Any:
	if body == b"#t":
		return True
	if body == b"#f":
		return False
	if body == b"0":
		return 0
	if body == b"()":
		return ()
	if body == b"sym":
		return "sym"
	if body == b"echo":
		data = engine.read()
		engine.write(data)
		return bool(data) and engine.output() == data
	if body == b"trap":
		raise RuntimeTrapError("unreachable executed")
	if body == b"weird":
		return UNMARSHALABLE
	if body == b"boom":
		raise ValueError("boom")
	raise RuntimeTrapError(f"unknown program {body!r}")


class FakeWorld:
	compile_export = "compile-stdin->stdout"
	entry_export = "do-test"

	def __init__(self, compile_fn: Callable[[bytes, bytes], bytes] | None = None) -> None:
		self.compile_fn = compile_fn or default_compile
		self.engines: list[FakeEngine] = []
		self.compile_calls: list[tuple[bytes, bytes]] = []

	def engine_factory(self) -> FakeEngine:
		engine = FakeEngine(self)
		self.engines.append(engine)
		return engine


class FakeHostCompiler:
	"""Counts invocations; yields once so concurrent callers really interleave."""

	def __init__(self, result: bytes | None = None, *, error: str | None = None) -> None:
		self.result = result if result is not None else compiled(COMPILER_SOURCE)
		self.error = error
		self.calls: list[Any] = []

	async def compile(self, source: bytes | Path) -> bytes:
		self.calls.append(source)
		await asyncio.sleep(0)
		if self.error is not None:
			raise CompileError(self.error)
		return self.result


def write_project(
	root: Path,
	sources: Mapping[str, bytes],
	*,
	inputs: Mapping[str, bytes] | None = None,
	compiler_source: bytes = COMPILER_SOURCE,
	snapshot: bytes | None = compiled(b"snapshot"),
	**options: Any,
) -> HarnessOptions:
	"""
	Lay out `root/test/<name>.ss` (+ `.input`), the compiler source and the
	snapshot, and return options rooted at `root`.
	"""
	test_dir = root / "test"
	test_dir.mkdir(parents=True, exist_ok=True)
	for name, source in sources.items():
		(test_dir / f"{name}.ss").write_bytes(source)
	for name, data in (inputs or {}).items():
		(test_dir / f"{name}.input").write_bytes(data)
	src = root / "schism" / "compiler.ss"
	src.parent.mkdir(parents=True, exist_ok=True)
	src.write_bytes(compiler_source)
	if snapshot is not None:
		(root / "schism-stage0.wasm").write_bytes(snapshot)
	return HarnessOptions(root=root, **options)


# Identity compiler: copies its input stream to its output buffer. Compiling
# its own binary reproduces it exactly, so a bootstrap from it converges.
CAT_COMPILER_WAT = """
(module
  (import "rt" "read-char" (func $read (result i32)))
  (import "rt" "write-char" (func $write (param i32)))
  (func (export "compile-stdin->stdout")
    (local $c i32)
    (block $done
      (loop $next
        (local.set $c (call $read))
        (br_if $done (i32.lt_s (local.get $c) (i32.const 0)))
        (call $write (local.get $c))
        (br $next)))))
"""

ECHO_TEST_WAT = """
(module
  (import "rt" "read-char" (func $read (result i32)))
  (import "rt" "write-char" (func $write (param i32)))
  (func (export "do-test") (result i32)
    (local $c i32)
    (block $done
      (loop $next
        (local.set $c (call $read))
        (br_if $done (i32.lt_s (local.get $c) (i32.const 0)))
        (call $write (local.get $c))
        (br $next)))
    (i32.const %d)))
""" % SCHEME_TRUE

TRAP_TEST_WAT = """
(module
  (func (export "do-test") (result i32)
    unreachable))
"""


def return_test_wat(raw: int) -> str:
	return '(module (func (export "do-test") (result i32) (i32.const %d)))' % raw


def wasm(wat: str) -> bytes:
	return bytes(wasmtime.wat2wasm(wat))


__all__ = [
	"MAGIC",
	"COMPILER_SOURCE",
	"UNMARSHALABLE",
	"compiled",
	"default_compile",
	"FakeEngine",
	"FakeWorld",
	"FakeHostCompiler",
	"run_program",
	"write_project",
	"CAT_COMPILER_WAT",
	"ECHO_TEST_WAT",
	"TRAP_TEST_WAT",
	"return_test_wat",
	"wasm",
	"SCHEME_FALSE",
	"SCHEME_TRUE",
]

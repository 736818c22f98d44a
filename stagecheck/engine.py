# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Module-execution engine capability.

The harness talks to engines only through `Engine`: bind an input stream,
load a module, invoke an export, read the output buffer, and marshal a raw
result into a host value. `WasmtimeEngine` is the shipped implementation.

Runtime ABI offered to loaded modules (import module "rt"):
  read-char  () -> i32   next input byte, -1 at end of input
  peek-char  () -> i32   next input byte without consuming it, -1 at end
  write-char (i32)       append the low byte to the output buffer

Value marshalling (tagged i32, low 3 bits are the tag):
  0 fixnum    payload is the signed integer (arithmetic shift)
  1 constant  payload 0 = #f, 1 = #t, 2 = '(), 3 = unspecified
  3 char      payload is the code point
  others      heap references, returned as opaque `HeapValue`s
Only the canonical #f marshals to Python `False`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol

import wasmtime

from stagecheck.errors import LoadError, MarshalError, RuntimeTrapError

RUNTIME_MODULE = "rt"

TAG_BITS = 3
TAG_MASK = (1 << TAG_BITS) - 1
TAG_FIXNUM = 0
TAG_CONSTANT = 1
TAG_PAIR = 2
TAG_CHAR = 3
TAG_STRING = 4
TAG_SYMBOL = 5
TAG_CLOSURE = 6
TAG_BYTEVECTOR = 7

_HEAP_TAG_NAMES = {
	TAG_PAIR: "pair",
	TAG_STRING: "string",
	TAG_SYMBOL: "symbol",
	TAG_CLOSURE: "closure",
	TAG_BYTEVECTOR: "bytevector",
}

EMPTY_LIST: tuple[()] = ()
_CONSTANTS: dict[int, Any] = {0: False, 1: True, 2: EMPTY_LIST, 3: None}


@dataclass(frozen=True)
class HeapValue:
	"""A reference into engine memory; opaque to the harness."""

	tag: str
	word: int


def _signed32(word: int) -> int:
	word &= 0xFFFFFFFF
	return word - (1 << 32) if word & 0x80000000 else word


def encode_fixnum(n: int) -> int:
	return _signed32((n << TAG_BITS) | TAG_FIXNUM)


def encode_constant(payload: int) -> int:
	return _signed32((payload << TAG_BITS) | TAG_CONSTANT)


SCHEME_FALSE = encode_constant(0)
SCHEME_TRUE = encode_constant(1)


def decode_value(raw: Any) -> Any:
	"""Marshal a raw i32 result into a host value (see module docstring)."""
	if raw is None:
		raise MarshalError("entry export returned no value")
	if isinstance(raw, bool) or not isinstance(raw, int):
		raise MarshalError(f"expected an i32 result, got {type(raw).__name__}")
	word = raw & 0xFFFFFFFF
	tag = word & TAG_MASK
	if tag == TAG_FIXNUM:
		return _signed32(word) >> TAG_BITS
	payload = word >> TAG_BITS
	if tag == TAG_CONSTANT:
		if payload not in _CONSTANTS:
			raise MarshalError(f"unknown constant payload {payload} (raw {raw:#x})")
		return _CONSTANTS[payload]
	if tag == TAG_CHAR:
		try:
			return chr(payload)
		except (ValueError, OverflowError) as err:
			raise MarshalError(f"invalid character payload {payload} (raw {raw:#x})") from err
	return HeapValue(tag=_HEAP_TAG_NAMES[tag], word=word)


def is_truthy(value: Any) -> bool:
	"""Every host value except the canonical false counts as success."""
	return value is not False


class Engine(Protocol):
	def set_input(self, data: bytes) -> None: ...

	def clear_output(self) -> None: ...

	def output(self) -> bytes: ...

	def load_module(self, data: bytes) -> Any: ...

	def invoke(self, module: Any, export: str) -> Any: ...

	def to_host(self, raw: Any) -> Any: ...


EngineFactory = Callable[[], Engine]


class WasmtimeEngine:
	"""
	One isolated execution context: its own wasmtime engine, store, linker and
	I/O buffers. Instances are never shared between attempts.
	"""

	def __init__(self) -> None:
		self._engine = wasmtime.Engine()
		self._store = wasmtime.Store(self._engine)
		self._linker = wasmtime.Linker(self._engine)
		self._input = b""
		self._pos = 0
		self._output = bytearray()
		self._define_runtime()

	def _define_runtime(self) -> None:
		i32 = wasmtime.ValType.i32()
		self._linker.define_func(RUNTIME_MODULE, "read-char", wasmtime.FuncType([], [i32]), self._read_char)
		self._linker.define_func(RUNTIME_MODULE, "peek-char", wasmtime.FuncType([], [i32]), self._peek_char)
		self._linker.define_func(RUNTIME_MODULE, "write-char", wasmtime.FuncType([i32], []), self._write_char)

	def _read_char(self) -> int:
		if self._pos >= len(self._input):
			return -1
		c = self._input[self._pos]
		self._pos += 1
		return c

	def _peek_char(self) -> int:
		if self._pos >= len(self._input):
			return -1
		return self._input[self._pos]

	def _write_char(self, c: int) -> None:
		self._output.append(c & 0xFF)

	def set_input(self, data: bytes) -> None:
		self._input = bytes(data)
		self._pos = 0

	def clear_output(self) -> None:
		self._output = bytearray()

	def output(self) -> bytes:
		return bytes(self._output)

	def load_module(self, data: bytes) -> wasmtime.Instance:
		try:
			module = wasmtime.Module(self._engine, bytes(data))
		except wasmtime.WasmtimeError as err:
			raise LoadError(f"invalid module ({len(data)} bytes): {err}") from err
		try:
			return self._linker.instantiate(self._store, module)
		except (wasmtime.WasmtimeError, wasmtime.Trap) as err:
			raise LoadError(f"module failed to link/instantiate: {err}") from err

	def invoke(self, module: wasmtime.Instance, export: str) -> Any:
		try:
			func = module.exports(self._store)[export]
		except KeyError as err:
			raise LoadError(f"module has no export '{export}'") from err
		if not isinstance(func, wasmtime.Func):
			raise LoadError(f"export '{export}' is not a function")
		try:
			return func(self._store)
		except (wasmtime.Trap, wasmtime.WasmtimeError) as err:
			raise RuntimeTrapError(f"'{export}' trapped: {err}") from err

	def to_host(self, raw: Any) -> Any:
		return decode_value(raw)


__all__ = [
	"Engine",
	"EngineFactory",
	"WasmtimeEngine",
	"HeapValue",
	"EMPTY_LIST",
	"SCHEME_FALSE",
	"SCHEME_TRUE",
	"encode_fixnum",
	"encode_constant",
	"decode_value",
	"is_truthy",
]

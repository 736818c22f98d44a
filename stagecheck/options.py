# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Harness configuration.

`HarnessOptions` is built once (defaults, then an optional JSON file, then
command-line overrides) and handed by reference to every component. Nothing in
the package reads configuration from module-level state.

File format (pinned, JSON):
{
  "format": "stagecheck-options",
  "version": 0,
  "use_snapshot": true,
  "stage0": true,
  ...any other HarnessOptions field...
}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from stagecheck.errors import ConfigError

TESTED_STAGES = (0, 1, 2)
FINAL_STAGE = 3


@dataclass(frozen=True)
class HarnessOptions:
	use_snapshot: bool = True  # load the stage0 snapshot instead of building with the host toolchain
	stage0: bool = True
	stage1: bool = False
	stage2: bool = False
	stage3: bool = False  # compile-only; enables the fixpoint check
	root: Path = Path(".")
	test_dir: Path = Path("test")
	compiler_source: Path = Path("schism") / "compiler.ss"
	snapshot_path: Path = Path("schism-stage0.wasm")
	scratch_path: Path = Path("out.wasm")
	host_command: tuple[str, ...] = ("./schism.ss",)
	source_ext: str = ".ss"
	input_ext: str = ".input"
	entry_export: str = "do-test"
	compile_export: str = "compile-stdin->stdout"
	trust_store_path: Path | None = None
	tests: tuple[str, ...] = field(default=())

	def stage_enabled(self, ordinal: int) -> bool:
		return bool(getattr(self, f"stage{ordinal}"))

	def tested_stages(self) -> list[int]:
		"""Enabled stages that run the corpus; stage3 never does."""
		return [n for n in TESTED_STAGES if self.stage_enabled(n)]

	def resolve(self, path: Path) -> Path:
		"""Absolute form of `path`; relative paths are taken against `root`, itself taken against the cwd."""
		return path if path.is_absolute() else self.root.resolve() / path

	def to_dict(self) -> dict[str, Any]:
		out: dict[str, Any] = {}
		for f in fields(self):
			value = getattr(self, f.name)
			if isinstance(value, Path):
				value = str(value)
			elif isinstance(value, tuple):
				value = list(value)
			out[f.name] = value
		return out


_PATH_FIELDS = {"root", "test_dir", "compiler_source", "snapshot_path", "scratch_path", "trust_store_path"}
_BOOL_FIELDS = {"use_snapshot", "stage0", "stage1", "stage2", "stage3"}
_STR_FIELDS = {"source_ext", "input_ext", "entry_export", "compile_export"}
_LIST_FIELDS = {"host_command", "tests"}
_NULLABLE_FIELDS = {"trust_store_path"}


def _coerce(name: str, value: Any) -> Any:
	if name not in _BOOL_FIELDS | _PATH_FIELDS | _STR_FIELDS | _LIST_FIELDS:
		raise ConfigError(f"unknown option '{name}'")
	if value is None:
		if name in _NULLABLE_FIELDS:
			return None
		raise ConfigError(f"option '{name}' must not be null")
	if name in _BOOL_FIELDS:
		if not isinstance(value, bool):
			raise ConfigError(f"option '{name}' must be a boolean")
		return value
	if name in _PATH_FIELDS:
		if not isinstance(value, (str, Path)) or not str(value):
			raise ConfigError(f"option '{name}' must be a non-empty path string")
		return Path(value)
	if name in _STR_FIELDS:
		if not isinstance(value, str) or not value:
			raise ConfigError(f"option '{name}' must be a non-empty string")
		return value
	if name in _LIST_FIELDS:
		if isinstance(value, str) or not isinstance(value, (list, tuple)):
			raise ConfigError(f"option '{name}' must be a list of strings")
		if not all(isinstance(v, str) for v in value):
			raise ConfigError(f"option '{name}' must be a list of strings")
		return tuple(value)
	raise AssertionError(f"unhandled option '{name}'")


def with_overrides(base: HarnessOptions, overrides: Mapping[str, Any]) -> HarnessOptions:
	"""Return `base` with `overrides` applied; every value is type-checked."""
	changes = {name: _coerce(name, value) for name, value in overrides.items()}
	opts = replace(base, **changes)
	_validate(opts)
	return opts


def load_options_json(path: Path, base: HarnessOptions | None = None) -> HarnessOptions:
	try:
		obj = json.loads(path.read_text(encoding="utf-8"))
	except FileNotFoundError as err:
		raise ConfigError(f"options file not found: {path}") from err
	except json.JSONDecodeError as err:
		raise ConfigError(f"options file is not valid JSON: {path}: {err}") from err
	if not isinstance(obj, dict):
		raise ConfigError("options file must be a JSON object")
	if obj.get("format") != "stagecheck-options" or obj.get("version") != 0:
		raise ConfigError("unsupported options file format/version")
	values = {k: v for k, v in obj.items() if k not in ("format", "version")}
	return with_overrides(base or HarnessOptions(), values)


def _validate(opts: HarnessOptions) -> None:
	if not opts.host_command:
		raise ConfigError("host_command must not be empty")
	for name in ("source_ext", "input_ext"):
		ext = getattr(opts, name)
		if not ext.startswith("."):
			raise ConfigError(f"option '{name}' must start with '.', got: {ext}")
	if opts.source_ext == opts.input_ext:
		raise ConfigError("source_ext and input_ext must differ")


__all__ = ["HarnessOptions", "TESTED_STAGES", "FINAL_STAGE", "with_overrides", "load_options_json"]

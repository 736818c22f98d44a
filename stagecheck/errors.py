# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Error taxonomy for the bootstrap harness.

Per-attempt errors (`CompileError`, `LoadError`, `RuntimeTrapError`,
`MarshalError`) are caught by the test runner and recorded against a single
(test, stage) pair. `StageBuildError` and `FixpointMismatchError` are fatal to
the stage chain they belong to.
"""

from __future__ import annotations

from typing import Any, Literal

FailureKind = Literal["compile", "load", "trap", "marshal", "false-result", "stage-build", "error"]


class HarnessError(Exception):
	"""Base class: a diagnostic string plus a stable failure kind."""

	kind: FailureKind = "error"

	def __init__(self, diagnostic: str) -> None:
		super().__init__(diagnostic)
		self.diagnostic = diagnostic

	def __str__(self) -> str:
		return self.diagnostic

	def to_dict(self) -> dict[str, Any]:
		return {"kind": self.kind, "error": type(self).__name__, "diagnostic": self.diagnostic}

	def format_human(self) -> str:
		return f"[{self.kind}] {self.diagnostic}"


class CompileError(HarnessError):
	kind: FailureKind = "compile"


class LoadError(HarnessError):
	kind: FailureKind = "load"


class RuntimeTrapError(HarnessError):
	kind: FailureKind = "trap"


class MarshalError(HarnessError):
	kind: FailureKind = "marshal"


class ConfigError(HarnessError):
	pass


class SnapshotTrustError(HarnessError):
	"""Snapshot signature sidecar missing, malformed, or not signed by a trusted key."""


class StageBuildError(HarnessError):
	kind: FailureKind = "stage-build"

	def __init__(self, ordinal: int, diagnostic: str) -> None:
		super().__init__(f"stage{ordinal}: {diagnostic}")
		self.ordinal = ordinal

	@property
	def stage_name(self) -> str:
		return f"stage{self.ordinal}"

	def to_dict(self) -> dict[str, Any]:
		out = super().to_dict()
		out["stage"] = self.stage_name
		return out


class FixpointMismatchError(HarnessError):
	"""Two consecutive compiler generations differ byte-for-byte."""

	def __init__(
		self,
		*,
		left: str,
		right: str,
		left_size: int,
		right_size: int,
		left_sha256: str,
		right_sha256: str,
		first_diff: int,
	) -> None:
		super().__init__(
			f"{left} and {right} differ at byte {first_diff} "
			f"({left}: {left_size} bytes sha256:{left_sha256}; {right}: {right_size} bytes sha256:{right_sha256})"
		)
		self.left = left
		self.right = right
		self.left_size = left_size
		self.right_size = right_size
		self.left_sha256 = left_sha256
		self.right_sha256 = right_sha256
		self.first_diff = first_diff

	def to_dict(self) -> dict[str, Any]:
		out = super().to_dict()
		out.update(
			{
				"left": self.left,
				"right": self.right,
				"left_size": self.left_size,
				"right_size": self.right_size,
				"left_sha256": self.left_sha256,
				"right_sha256": self.right_sha256,
				"first_diff": self.first_diff,
			}
		)
		return out


__all__ = [
	"FailureKind",
	"HarnessError",
	"CompileError",
	"LoadError",
	"RuntimeTrapError",
	"MarshalError",
	"ConfigError",
	"SnapshotTrustError",
	"StageBuildError",
	"FixpointMismatchError",
]

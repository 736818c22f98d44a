# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Fixpoint check: one more self-compilation of the last tested stage must
reproduce that stage byte-for-byte.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TextIO

from stagecheck.errors import FixpointMismatchError
from stagecheck.options import FINAL_STAGE, HarnessOptions
from stagecheck.stages import StageManager


@dataclass(frozen=True)
class FixpointResult:
	left: str
	right: str
	size: int
	sha256: str

	def to_dict(self) -> dict[str, Any]:
		return {"left": self.left, "right": self.right, "size": self.size, "sha256": self.sha256, "ok": True}


def first_difference(a: bytes, b: bytes) -> int:
	"""Offset of the first differing byte; the shorter length if one is a prefix of the other."""
	for i, (x, y) in enumerate(zip(a, b)):
		if x != y:
			return i
	return min(len(a), len(b))


class FixpointVerifier:
	def __init__(self, options: HarnessOptions, stages: StageManager, *, out: TextIO | None = None) -> None:
		self.options = options
		self.stages = stages
		self.out = out

	@property
	def enabled(self) -> bool:
		return self.options.stage_enabled(FINAL_STAGE)

	def last_stage(self) -> int:
		"""Highest tested stage; stage2 when no stage is tested."""
		tested = self.options.tested_stages()
		return tested[-1] if tested else FINAL_STAGE - 1

	async def verify(self) -> FixpointResult:
		"""
		Raises FixpointMismatchError when the generations differ and
		StageBuildError when either generation cannot be built.
		"""
		k = self.last_stage()
		left = await self.stages.stage(k)
		right = await self.stages.stage(k + 1)
		if left.data != right.data:
			raise FixpointMismatchError(
				left=left.name,
				right=right.name,
				left_size=len(left.data),
				right_size=len(right.data),
				left_sha256=left.sha256,
				right_sha256=right.sha256,
				first_diff=first_difference(left.data, right.data),
			)
		print(f"[fixpoint] {left.name} == {right.name} ({len(left.data)} bytes, sha256:{left.sha256})", file=self.out)
		return FixpointResult(left=left.name, right=right.name, size=len(left.data), sha256=left.sha256)


__all__ = ["FixpointResult", "FixpointVerifier", "first_difference"]

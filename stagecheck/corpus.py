# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Test corpus discovery.

Every file in the test directory with the source extension is one test case.
A sibling with the same stem and the input extension supplies the bytes bound
to the engine's input stream before the test runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from stagecheck.errors import ConfigError


@dataclass(frozen=True)
class TestCase:
	__test__ = False  # not a pytest class

	name: str
	source_path: Path
	source: bytes = field(repr=False)
	input: Optional[bytes] = field(default=None, repr=False)


def discover_tests(
	test_dir: Path,
	*,
	source_ext: str = ".ss",
	input_ext: str = ".input",
	only: Iterable[str] | None = None,
) -> list[TestCase]:
	"""
	Load test cases sorted by name. `only` restricts the run to the named tests
	(file names, with or without the source extension).
	"""
	if not test_dir.is_dir():
		raise ConfigError(f"test directory not found: {test_dir}")
	cases: list[TestCase] = []
	for path in sorted(test_dir.iterdir()):
		if not path.is_file() or path.suffix != source_ext:
			continue
		input_path = path.with_suffix(input_ext)
		cases.append(
			TestCase(
				name=path.name,
				source_path=path,
				source=path.read_bytes(),
				input=input_path.read_bytes() if input_path.is_file() else None,
			)
		)
	if only:
		wanted = {n if n.endswith(source_ext) else n + source_ext for n in only}
		unknown = sorted(wanted - {c.name for c in cases})
		if unknown:
			raise ConfigError(f"unknown test(s): {', '.join(unknown)}")
		cases = [c for c in cases if c.name in wanted]
	return cases


__all__ = ["TestCase", "discover_tests"]

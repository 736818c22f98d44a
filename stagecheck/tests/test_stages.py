# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from stagecheck.errors import CompileError, StageBuildError
from stagecheck.options import HarnessOptions
from stagecheck.stages import StageManager
from stagecheck.test_support import COMPILER_SOURCE, FakeHostCompiler, FakeWorld, compiled, write_project


def _generational(compiler: bytes, source: bytes) -> bytes:
	# Each generation appends a mark, so no two stages are equal.
	return compiler + b"'"


def test_stage0_from_snapshot_is_verbatim(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {}, snapshot=compiled(b"snap"))
	host = FakeHostCompiler()
	stages = StageManager(opts, engine_factory=FakeWorld().engine_factory, host_compiler=host)
	stage0 = asyncio.run(stages.stage(0))
	assert stage0.provenance == "snapshot"
	assert stage0.data == compiled(b"snap")
	assert host.calls == []


def test_stage0_from_host_compiles_canonical_source(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {}, snapshot=None, use_snapshot=False)
	host = FakeHostCompiler(result=compiled(b"host-built"))
	stages = StageManager(opts, engine_factory=FakeWorld().engine_factory, host_compiler=host)
	stage0 = asyncio.run(stages.stage(0))
	assert stage0.provenance == "host"
	assert stage0.data == compiled(b"host-built")
	assert host.calls == [tmp_path / "schism" / "compiler.ss"]


def test_each_stage_is_previous_compiler_over_canonical_source(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {}, snapshot=compiled(b"snap"))
	world = FakeWorld(_generational)
	stages = StageManager(opts, engine_factory=world.engine_factory)

	async def all_stages() -> list[bytes]:
		return [(await stages.stage(n)).data for n in range(4)]

	datas = asyncio.run(all_stages())
	assert datas == [compiled(b"snap") + b"'" * n for n in range(4)]
	assert world.compile_calls == [(datas[n], COMPILER_SOURCE) for n in range(3)]
	assert [s.provenance for s in stages.built()] == ["snapshot", "self", "self", "self"]


def test_concurrent_requests_share_one_build(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {}, snapshot=None, use_snapshot=False)
	host = FakeHostCompiler()
	world = FakeWorld()
	stages = StageManager(opts, engine_factory=world.engine_factory, host_compiler=host)

	async def race() -> None:
		first, second, third = await asyncio.gather(stages.stage(0), stages.stage(2), stages.stage(0))
		assert first is third
		assert stages.build(2) is stages.build(2)

	asyncio.run(race())
	assert len(host.calls) == 1
	assert len(world.compile_calls) == 2


def test_stage_build_failure_cascades_upward_only(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {}, snapshot=compiled(b"snap"))

	def fail_from_stage1(compiler: bytes, source: bytes) -> bytes:
		if compiler != compiled(b"snap"):
			raise CompileError("stage1 cannot compile itself")
		return compiled(source)

	stages = StageManager(opts, engine_factory=FakeWorld(fail_from_stage1).engine_factory)

	async def run() -> None:
		assert (await stages.stage(1)).data == compiled(COMPILER_SOURCE)
		with pytest.raises(StageBuildError) as excinfo:
			await stages.stage(2)
		assert excinfo.value.ordinal == 2
		assert "stage1 failed to compile the compiler source" in excinfo.value.diagnostic
		with pytest.raises(StageBuildError) as excinfo:
			await stages.stage(3)
		assert "depends on stage2" in excinfo.value.diagnostic
		assert isinstance(excinfo.value.__cause__, StageBuildError)

	asyncio.run(run())
	assert [s.name for s in stages.built()] == ["stage0", "stage1"]
	assert sorted(stages.failures()) == ["stage2", "stage3"]


def test_failed_build_is_not_retried(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {}, snapshot=None, use_snapshot=False)
	host = FakeHostCompiler(error="host scheme crashed")
	stages = StageManager(opts, engine_factory=FakeWorld().engine_factory, host_compiler=host)

	async def run() -> None:
		for _ in range(3):
			with pytest.raises(StageBuildError, match="host build failed: host scheme crashed"):
				await stages.stage(0)
		with pytest.raises(StageBuildError, match="depends on stage0"):
			await stages.stage(1)

	asyncio.run(run())
	assert len(host.calls) == 1


def test_missing_snapshot_fails_stage0(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {}, snapshot=None)
	stages = StageManager(opts, engine_factory=FakeWorld().engine_factory)
	with pytest.raises(StageBuildError, match="cannot read snapshot"):
		asyncio.run(stages.stage(0))


def test_missing_compiler_source_fails_self_built_stages(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {})
	(tmp_path / "schism" / "compiler.ss").unlink()
	stages = StageManager(opts, engine_factory=FakeWorld().engine_factory)

	async def run() -> None:
		assert (await stages.stage(0)).provenance == "snapshot"
		with pytest.raises(StageBuildError, match="cannot read compiler source"):
			await stages.stage(1)

	asyncio.run(run())


def test_compiler_source_read_once(tmp_path: Path) -> None:
	opts = write_project(tmp_path, {}, snapshot=compiled(b"snap"))
	world = FakeWorld(_generational)
	stages = StageManager(opts, engine_factory=world.engine_factory)

	async def run() -> None:
		await stages.stage(1)
		(tmp_path / "schism" / "compiler.ss").write_bytes(b"edited mid-run")
		await stages.stage(3)

	asyncio.run(run())
	assert {source for _, source in world.compile_calls} == {COMPILER_SOURCE}


def test_stage_ordinal_out_of_range(tmp_path: Path) -> None:
	stages = StageManager(write_project(tmp_path, {}), engine_factory=FakeWorld().engine_factory)
	with pytest.raises(ValueError):
		stages.build(4)


def test_stage_build_lines(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
	opts = write_project(tmp_path, {}, snapshot=compiled(b"snap"))
	stages = StageManager(opts, engine_factory=FakeWorld().engine_factory)
	stage = asyncio.run(stages.stage(0))
	out = capsys.readouterr().out
	assert f"[stage] stage0 snapshot ({len(stage.data)} bytes, sha256:{stage.sha256})" in out


HOST_SCRIPT = """
import sys
from pathlib import Path
src = Path(sys.argv[1])
Path("out.wasm").write_bytes(b"MOD|" + src.read_bytes())
"""


def test_host_stage0_with_relative_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
	(tmp_path / "host.py").write_text(HOST_SCRIPT, encoding="utf-8")
	write_project(tmp_path / "proj", {}, snapshot=None)
	monkeypatch.chdir(tmp_path)
	opts = HarnessOptions(
		root=Path("proj"),
		use_snapshot=False,
		host_command=(sys.executable, str(tmp_path / "host.py")),
	)
	stages = StageManager(opts, engine_factory=FakeWorld().engine_factory)
	stage0 = asyncio.run(stages.stage(0))
	assert stage0.provenance == "host"
	assert stage0.data == compiled(COMPILER_SOURCE)
	assert (tmp_path / "proj" / "out.wasm").exists()

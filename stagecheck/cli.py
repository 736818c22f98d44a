# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import argparse
import asyncio
import json
import shlex
import sys
from pathlib import Path

from stagecheck.errors import ConfigError, HarnessError
from stagecheck.harness import Harness, harness_exit_code
from stagecheck.options import HarnessOptions, load_options_json, with_overrides
from stagecheck.sign import SignOptions, sign_snapshot


def _build_parser() -> argparse.ArgumentParser:
	p = argparse.ArgumentParser(prog="stagecheck", description="Bootstrap a self-hosting compiler and test every stage")
	sub = p.add_subparsers(dest="cmd", required=True)

	run = sub.add_parser("run", help="Build the enabled stages, run the test corpus, check the fixpoint")
	run.add_argument("tests", nargs="*", help="Restrict the run to these test names (default: whole corpus)")
	run.add_argument("--config", type=Path, default=None, help="JSON options file (format stagecheck-options, version 0)")
	run.add_argument("--root", type=Path, default=None, help="Directory relative paths resolve against (default: .)")
	run.add_argument(
		"--use-snapshot",
		action=argparse.BooleanOptionalAction,
		default=None,
		help="Load stage0 from the snapshot instead of building it with the host toolchain",
	)
	for n in range(4):
		run.add_argument(
			f"--stage{n}",
			action=argparse.BooleanOptionalAction,
			default=None,
			help="Build stage3 and check the fixpoint" if n == 3 else f"Run the corpus against stage{n}",
		)
	run.add_argument("--test-dir", type=Path, default=None, help="Test corpus directory (default: test)")
	run.add_argument("--compiler-source", type=Path, default=None, help="Canonical compiler source (default: schism/compiler.ss)")
	run.add_argument("--snapshot", dest="snapshot_path", type=Path, default=None, help="stage0 snapshot (default: schism-stage0.wasm)")
	run.add_argument("--scratch", dest="scratch_path", type=Path, default=None, help="Host compiler output artifact (default: out.wasm)")
	run.add_argument("--host-command", type=str, default=None, help="Host compiler command line; the source path is appended")
	run.add_argument("--trust-store", dest="trust_store_path", type=Path, default=None, help="Require a signed snapshot trusted by this store")
	run.add_argument("--json", action="store_true", help="Emit the run report as JSON on stdout (progress goes to stderr)")

	sign = sub.add_parser("sign-snapshot", help="Write a signature sidecar (<snapshot>.sig) for a stage0 snapshot")
	sign.add_argument("snapshot", type=Path, help="Path to the snapshot module")
	sign.add_argument("--key", type=Path, required=True, help="Path to base64-encoded Ed25519 private seed (32 bytes)")
	sign.add_argument("--out", type=Path, default=None, help="Output sidecar path (default: <snapshot>.sig)")
	sign.add_argument("--include-pubkey", action="store_true", help="Include the public key bytes in the sidecar")
	return p


def _options_from_args(args: argparse.Namespace) -> HarnessOptions:
	base = load_options_json(args.config) if args.config is not None else HarnessOptions()
	overrides = {
		"root": args.root,
		"use_snapshot": args.use_snapshot,
		"stage0": args.stage0,
		"stage1": args.stage1,
		"stage2": args.stage2,
		"stage3": args.stage3,
		"test_dir": args.test_dir,
		"compiler_source": args.compiler_source,
		"snapshot_path": args.snapshot_path,
		"scratch_path": args.scratch_path,
		"host_command": shlex.split(args.host_command) if args.host_command is not None else None,
		"trust_store_path": args.trust_store_path,
		"tests": list(args.tests) if args.tests else None,
	}
	# argparse leaves unset flags as None; those keep the configured value.
	return with_overrides(base, {name: value for name, value in overrides.items() if value is not None})


def _run(args: argparse.Namespace) -> int:
	try:
		opts = _options_from_args(args)
	except ConfigError as err:
		print(f"stagecheck: error: {err}", file=sys.stderr)
		return 2
	progress = sys.stderr if args.json else None
	harness = Harness(opts, out=progress)
	try:
		report = asyncio.run(harness.run())
	except HarnessError as err:
		print(f"[fatal] {err.format_human()}", file=sys.stderr)
		report = harness.report(fatal=err)
	if args.json:
		print(json.dumps(report.to_dict(), sort_keys=True, separators=(",", ":")))
	return harness_exit_code(report)


def main(argv: list[str] | None = None) -> int:
	p = _build_parser()
	args = p.parse_args(argv)

	if args.cmd == "run":
		return _run(args)

	if args.cmd == "sign-snapshot":
		opts = SignOptions(
			snapshot_path=args.snapshot,
			key_seed_path=args.key,
			out_path=args.out,
			include_pubkey=bool(args.include_pubkey),
		)
		try:
			print(sign_snapshot(opts))
			return 0
		except (ValueError, OSError) as err:
			p.error(str(err))
			return 2

	raise AssertionError("unreachable")

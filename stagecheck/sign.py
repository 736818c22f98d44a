# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from stagecheck.crypto import b64_encode, compute_ed25519_kid, decode_ed25519_seed, ed25519_sign_from_seed, sha256_tagged
from stagecheck.snapshot import SIG_FORMAT, sidecar_path


@dataclass(frozen=True)
class SignOptions:
	snapshot_path: Path
	key_seed_path: Path
	out_path: Path | None = None
	include_pubkey: bool = False


def sign_snapshot(opts: SignOptions) -> Path:
	"""Write (or replace) the signature sidecar for a snapshot; returns its path."""
	if not opts.snapshot_path.exists():
		raise ValueError(f"snapshot not found: {opts.snapshot_path}")
	data = opts.snapshot_path.read_bytes()
	seed = decode_ed25519_seed(opts.key_seed_path.read_text(encoding="utf-8"))
	sig_raw, pub_raw = ed25519_sign_from_seed(priv_seed32=seed, message=data)
	entry: dict[str, str] = {
		"algo": "ed25519",
		"kid": compute_ed25519_kid(pub_raw),
		"sig": b64_encode(sig_raw),
	}
	if opts.include_pubkey:
		entry["pubkey"] = b64_encode(pub_raw)
	obj = {
		"format": SIG_FORMAT,
		"version": 0,
		"snapshot_sha256": sha256_tagged(data),
		"signatures": [entry],
	}
	out = opts.out_path if opts.out_path is not None else sidecar_path(opts.snapshot_path)
	out.write_text(json.dumps(obj, sort_keys=True, separators=(",", ":")) + "\n", encoding="utf-8")
	return out

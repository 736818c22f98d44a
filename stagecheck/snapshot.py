# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Stage0 snapshot loading and trust verification.

The snapshot is loaded verbatim. When a trust store is configured the snapshot
must carry a sidecar `<snapshot>.sig` with at least one valid Ed25519
signature, over the exact snapshot bytes, from a non-revoked key in the store.

Sidecar format (pinned, JSON):
{
  "format": "stagecheck-snapshot-sig",
  "version": 0,
  "snapshot_sha256": "sha256:<hex>",
  "signatures": [
    { "algo": "ed25519", "kid": "...", "sig": "<b64>", "pubkey": "<b64>" }
  ]
}

Trust store format (pinned, JSON):
{
  "format": "stagecheck-trust",
  "version": 0,
  "keys": { "<kid>": { "algo": "ed25519", "pubkey": "<base64 raw bytes>" } },
  "revoked": ["<kid>", ...]
}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from stagecheck.crypto import ED25519_PUBKEY_LEN, ED25519_SIG_LEN, b64_decode, parse_sha256_tag, sha256_hex, verify_ed25519
from stagecheck.errors import SnapshotTrustError

SIG_FORMAT = "stagecheck-snapshot-sig"
TRUST_FORMAT = "stagecheck-trust"


@dataclass(frozen=True)
class TrustedKey:
	kid: str
	pubkey_raw: bytes


@dataclass(frozen=True)
class TrustStore:
	keys: dict[str, TrustedKey]
	revoked: frozenset[str] = frozenset()

	def usable_key(self, kid: str) -> TrustedKey | None:
		"""The trusted, non-revoked key for `kid`, if any."""
		if kid in self.revoked:
			return None
		return self.keys.get(kid)


@dataclass(frozen=True)
class SnapshotSignature:
	kid: str
	sig_raw: bytes
	pubkey_raw: Optional[bytes] = None  # informational only; never trusted


@dataclass(frozen=True)
class SignatureSidecar:
	snapshot_sha256_hex: str
	signatures: list[SnapshotSignature]


def sidecar_path(snapshot_path: Path) -> Path:
	return snapshot_path.with_name(snapshot_path.name + ".sig")


def _read_pinned_json(path: Path, what: str, fmt: str) -> dict[str, Any]:
	try:
		text = path.read_text(encoding="utf-8")
	except FileNotFoundError as err:
		raise SnapshotTrustError(f"{what} not found: {path}") from err
	try:
		obj = json.loads(text)
	except json.JSONDecodeError as err:
		raise SnapshotTrustError(f"{what} is not valid JSON: {path}: {err}") from err
	if not isinstance(obj, dict):
		raise SnapshotTrustError(f"{what} must be a JSON object: {path}")
	if (obj.get("format"), obj.get("version")) != (fmt, 0):
		raise SnapshotTrustError(f"unsupported {what} format/version: {path}")
	return obj


def _decode_field(value: Any, expected_len: int, what: str) -> bytes:
	if not isinstance(value, str):
		raise SnapshotTrustError(f"{what} must be a base64 string")
	try:
		raw = b64_decode(value)
	except ValueError as err:
		raise SnapshotTrustError(f"{what} is not valid base64") from err
	if len(raw) != expected_len:
		raise SnapshotTrustError(f"{what} must be {expected_len} bytes, got {len(raw)}")
	return raw


def load_trust_store_json(path: Path) -> TrustStore:
	obj = _read_pinned_json(path, "trust store", TRUST_FORMAT)
	entries = obj.get("keys") or {}
	if not isinstance(entries, dict):
		raise SnapshotTrustError("trust store 'keys' must be a JSON object")
	keys = {
		kid: TrustedKey(kid=kid, pubkey_raw=_decode_field(entry.get("pubkey"), ED25519_PUBKEY_LEN, f"trust store key '{kid}'"))
		for kid, entry in entries.items()
		# Only ed25519 is understood; other algorithms are ignored rather than rejected.
		if isinstance(entry, dict) and entry.get("algo") == "ed25519"
	}
	revoked = obj.get("revoked") or []
	if not isinstance(revoked, list) or not all(isinstance(k, str) for k in revoked):
		raise SnapshotTrustError("trust store 'revoked' must be a list of kids")
	return TrustStore(keys=keys, revoked=frozenset(revoked))


def load_sig_sidecar(path: Path) -> SignatureSidecar:
	obj = _read_pinned_json(path, "signature sidecar", SIG_FORMAT)
	try:
		digest = obj.get("snapshot_sha256")
		digest_hex = parse_sha256_tag(digest if isinstance(digest, str) else "")
	except ValueError as err:
		raise SnapshotTrustError(f"signature sidecar has a missing or malformed snapshot_sha256: {err}") from err
	raw_sigs = obj.get("signatures")
	if not isinstance(raw_sigs, list):
		raise SnapshotTrustError("signature sidecar must carry a 'signatures' list")
	signatures: list[SnapshotSignature] = []
	for entry in raw_sigs:
		if not isinstance(entry, dict) or entry.get("algo") != "ed25519" or not entry.get("kid"):
			continue
		pubkey = entry.get("pubkey")
		signatures.append(
			SnapshotSignature(
				kid=str(entry["kid"]),
				sig_raw=_decode_field(entry.get("sig"), ED25519_SIG_LEN, "signature"),
				pubkey_raw=_decode_field(pubkey, ED25519_PUBKEY_LEN, "embedded pubkey") if pubkey is not None else None,
			)
		)
	if not signatures:
		raise SnapshotTrustError("signature sidecar contains no ed25519 signatures")
	return SignatureSidecar(snapshot_sha256_hex=digest_hex, signatures=signatures)


def verify_snapshot(*, snapshot_path: Path, data: bytes, trust: TrustStore) -> str:
	"""
	Check the sidecar of `snapshot_path` against `data` and return the kid that
	verified. Only trust-store keys are used; a pubkey embedded in the sidecar
	is ignored.
	"""
	sig_path = sidecar_path(snapshot_path)
	if not sig_path.exists():
		raise SnapshotTrustError(f"missing signature sidecar for snapshot '{snapshot_path}'")
	sidecar = load_sig_sidecar(sig_path)
	if sidecar.snapshot_sha256_hex != sha256_hex(data):
		raise SnapshotTrustError("signature sidecar snapshot_sha256 mismatch")

	for sig in sidecar.signatures:
		key = trust.usable_key(sig.kid)
		if key is None:
			continue
		try:
			if verify_ed25519(pubkey_raw=key.pubkey_raw, message=data, signature_raw=sig.sig_raw):
				return sig.kid
		except ValueError as err:
			raise SnapshotTrustError(f"trust store key '{sig.kid}' is unusable: {err}") from err

	revoked = sorted(sig.kid for sig in sidecar.signatures if sig.kid in trust.revoked)
	if len(revoked) == len(sidecar.signatures):
		raise SnapshotTrustError(f"signature key '{revoked[0]}' is revoked")
	raise SnapshotTrustError("no valid signatures for snapshot")


def load_snapshot(path: Path, *, trust_store_path: Path | None = None) -> bytes:
	"""Read the snapshot verbatim, verifying it first when a trust store is given."""
	data = path.read_bytes()
	if trust_store_path is not None:
		verify_snapshot(snapshot_path=path, data=data, trust=load_trust_store_json(trust_store_path))
	return data


__all__ = [
	"TrustedKey",
	"TrustStore",
	"SnapshotSignature",
	"SignatureSidecar",
	"sidecar_path",
	"load_trust_store_json",
	"load_sig_sidecar",
	"verify_snapshot",
	"load_snapshot",
]

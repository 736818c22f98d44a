# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Hashing and Ed25519 helpers shared by snapshot signing and verification.

Digests of module bytes are written as `sha256:<hex>` everywhere they leave
the process (sidecars, JSON reports, console lines).
"""

from __future__ import annotations

import base64
import hashlib

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

SHA256_PREFIX = "sha256:"
ED25519_SEED_LEN = 32
ED25519_PUBKEY_LEN = 32
ED25519_SIG_LEN = 64


def sha256_hex(data: bytes) -> str:
	return hashlib.sha256(data).hexdigest()


def sha256_tagged(data: bytes) -> str:
	return SHA256_PREFIX + sha256_hex(data)


def parse_sha256_tag(text: str) -> str:
	"""Return the hex part of a `sha256:<hex>` string; ValueError otherwise."""
	hex_part = text[len(SHA256_PREFIX) :].lower() if text.startswith(SHA256_PREFIX) else ""
	if len(hex_part) != 64 or any(c not in "0123456789abcdef" for c in hex_part):
		raise ValueError(f"not a sha256 digest: {text!r}")
	return hex_part


def b64_encode(data: bytes) -> str:
	return base64.b64encode(data).decode("ascii")


def b64_decode(text: str) -> bytes:
	return base64.b64decode(text.encode("ascii"), validate=True)


def decode_ed25519_seed(text: str) -> bytes:
	"""Seed files hold base64 of the raw 32-byte seed; surrounding whitespace is ignored."""
	try:
		raw = b64_decode(text.strip())
	except ValueError as err:
		raise ValueError("invalid base64 in key seed file") from err
	if len(raw) != ED25519_SEED_LEN:
		raise ValueError(f"ed25519 private key seed must decode to {ED25519_SEED_LEN} bytes")
	return raw


def compute_ed25519_kid(pubkey_raw: bytes) -> str:
	"""kid = "ed25519:" + base64(sha256(pubkey_raw)); trust stores are keyed by it."""
	return "ed25519:" + b64_encode(hashlib.sha256(pubkey_raw).digest())


def ed25519_sign_from_seed(*, priv_seed32: bytes, message: bytes) -> tuple[bytes, bytes]:
	"""Returns (signature, raw public key)."""
	if len(priv_seed32) != ED25519_SEED_LEN:
		raise ValueError(f"ed25519 private key seed must be {ED25519_SEED_LEN} bytes")
	priv = Ed25519PrivateKey.from_private_bytes(priv_seed32)
	pub_raw = priv.public_key().public_bytes(
		encoding=serialization.Encoding.Raw,
		format=serialization.PublicFormat.Raw,
	)
	return priv.sign(message), pub_raw


def verify_ed25519(*, pubkey_raw: bytes, message: bytes, signature_raw: bytes) -> bool:
	"""False on a bad signature; ValueError on malformed key bytes."""
	try:
		key = Ed25519PublicKey.from_public_bytes(pubkey_raw)
	except ValueError as err:
		raise ValueError("invalid ed25519 public key bytes") from err
	try:
		key.verify(signature_raw, message)
	except InvalidSignature:
		return False
	return True


__all__ = [
	"SHA256_PREFIX",
	"sha256_hex",
	"sha256_tagged",
	"parse_sha256_tag",
	"b64_encode",
	"b64_decode",
	"decode_ed25519_seed",
	"compute_ed25519_kid",
	"ed25519_sign_from_seed",
	"verify_ed25519",
]

"""
Compact signed tokens (JWS, ES256K) used by the sign-in handshake.

A token is ``base64url(header) . base64url(payload) . base64url(signature)``
where the signature is a 64-byte ``r || s`` secp256k1 signature over the
ASCII signing input.  Unsigned tokens use ``alg: none`` and an empty
signature segment.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any

from idwallet_core.crypto_utils import sign, verify


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


@dataclass(frozen=True)
class DecodedToken:
    header: dict[str, Any]
    payload: dict[str, Any]
    signature: bytes
    signing_input: bytes


def _segment(obj: dict) -> str:
    return b64url_encode(json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8"))


def encode_token(payload: dict[str, Any], private_key: bytes | None = None) -> str:
    """Serialise *payload*; signs with *private_key* when given."""
    if private_key is None:
        header = {"typ": "JWT", "alg": "none"}
        return f"{_segment(header)}.{_segment(payload)}."
    header = {"typ": "JWT", "alg": "ES256K"}
    signing_input = f"{_segment(header)}.{_segment(payload)}"
    sig = sign(private_key, signing_input.encode("ascii"))
    return f"{signing_input}.{b64url_encode(sig)}"


def decode_token(token: str) -> DecodedToken:
    """
    Split and parse a compact token without verifying it.

    Raises ValueError on any structural problem.
    """
    if not isinstance(token, str):
        raise ValueError("Token must be a string")
    parts = token.strip().split(".")
    if len(parts) != 3:
        raise ValueError(f"Token must have 3 segments, got {len(parts)}")
    try:
        header = json.loads(b64url_decode(parts[0]))
        payload = json.loads(b64url_decode(parts[1]))
        signature = b64url_decode(parts[2]) if parts[2] else b""
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError(f"Undecodable token: {exc}") from exc
    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise ValueError("Token header and payload must be JSON objects")
    return DecodedToken(
        header=header,
        payload=payload,
        signature=signature,
        signing_input=f"{parts[0]}.{parts[1]}".encode("ascii"),
    )


def verify_token(token: str, public_key: bytes) -> bool:
    """Check an ES256K token signature against *public_key*."""
    try:
        decoded = decode_token(token)
    except ValueError:
        return False
    if decoded.header.get("alg") != "ES256K":
        return False
    return verify(public_key, decoded.signing_input, decoded.signature)

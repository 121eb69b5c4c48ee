"""Proof-of-possession checks for self-certifying token identifiers.

A token id is the hex form of a raw 32-byte Ed25519 public key. Clients prove
they hold the matching private key by signing ``"<scope>:<operand>"`` and
sending the signature as URL-safe base64 without padding.
"""

from __future__ import annotations

import base64
import binascii
import math
import re
import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

PUBLIC_KEY_BYTES = 32
SESSION_ID_BYTES = 16

_URLSAFE_NOPAD = re.compile(r"^[A-Za-z0-9_-]*$")


@dataclass(frozen=True)
class TokenId:
    """A validated Ed25519 public key used as a token's primary key."""

    raw: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.raw, bytes) or len(self.raw) != PUBLIC_KEY_BYTES:
            raise ValueError("token id must be exactly 32 bytes")

    @classmethod
    def from_hex(cls, value: str) -> "TokenId":
        try:
            raw = binascii.unhexlify(value)
        except (binascii.Error, TypeError, ValueError) as exc:
            raise ValueError("token id is not valid hex") from exc
        return cls(raw)

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["TokenId"]:
        """Return a TokenId, or None when ``value`` is not a 32-byte hex key."""
        if not isinstance(value, str):
            return None
        try:
            return cls.from_hex(value)
        except ValueError:
            return None

    @property
    def hex(self) -> str:
        return self.raw.hex()

    def public_key(self) -> Ed25519PublicKey:
        return Ed25519PublicKey.from_public_bytes(self.raw)

    def verify(self, signature: str, scope: str, operand: str) -> bool:
        sig_bytes = decode_signature(signature)
        if sig_bytes is None:
            return False
        try:
            self.public_key().verify(sig_bytes, signed_payload(scope, operand))
        except (InvalidSignature, ValueError):
            return False
        return True

    def __str__(self) -> str:
        return self.hex


def decode_signature(encoded: str) -> Optional[bytes]:
    """Decode URL-safe unpadded base64, rejecting anything non-canonical."""
    if not isinstance(encoded, str) or not _URLSAFE_NOPAD.match(encoded):
        return None
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return None
    # Unused trailing bits must be zero so each signature has one spelling
    if base64.urlsafe_b64encode(decoded).decode("ascii").rstrip("=") != encoded:
        return None
    return decoded


def signed_payload(scope: str, operand: str) -> bytes:
    return (scope + ":" + operand).encode("utf-8")


def verify_op_sig(identifier: str, signature: str, scope: str, operand: str) -> bool:
    """Check that ``signature`` over ``scope:operand`` was made by ``identifier``.

    Never raises: every decoding or verification failure yields False.
    """
    token_id = TokenId.parse(identifier)
    if token_id is None:
        return False
    return token_id.verify(signature, scope, operand)


def format_operand(value: float) -> str:
    """Render a request time the way the client stringified it before signing.

    Clients sign the decimal form of a JavaScript number, so integral values
    carry no fractional part.
    """
    if isinstance(value, bool):
        raise TypeError("request time must be a number")
    if isinstance(value, int):
        return str(value)
    if math.isfinite(value) and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def new_session_id() -> str:
    """Random 128-bit session id, hex encoded."""
    return secrets.token_hex(SESSION_ID_BYTES)

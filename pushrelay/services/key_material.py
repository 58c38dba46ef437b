"""Normalization and validation of Web Push subscription key material.

Browsers hand out ``p256dh`` and ``auth`` as unpadded base64url, but client
libraries frequently re-encode them as standard padded base64 before they
reach us. Both spellings are accepted; only the unpadded base64url form is
ever persisted or passed to the transport.
"""

from __future__ import annotations

import base64
import binascii
import re

from pushrelay.core.errors import InvalidKeyMaterialError


PUBLIC_KEY_FIELD = "keys.p256dh"
AUTH_SECRET_FIELD = "keys.auth"

# Uncompressed P-256 point: 0x04 || X || Y.
PUBLIC_KEY_LENGTH = 65
MIN_AUTH_SECRET_LENGTH = 16

_WHITESPACE = re.compile(r"\s+")
_ALPHABET = re.compile(r"^[A-Za-z0-9+/_-]+={0,2}$")
_TO_URLSAFE = str.maketrans("+/", "-_")


def _decode(value: str) -> bytes | None:
    compact = _WHITESPACE.sub("", value)
    if not compact or not _ALPHABET.match(compact):
        return None
    unpadded = compact.rstrip("=").translate(_TO_URLSAFE)
    padded = unpadded + "=" * (-len(unpadded) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return None
    return decoded or None


def _encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def normalize_key_material(value: str) -> str | None:
    """Return the canonical unpadded base64url form, or None when malformed."""
    decoded = _decode(value)
    if decoded is None:
        return None
    return _encode(decoded)


def renormalize_key_material(value: str) -> str:
    # Tolerant pass for already-stored values: leave anything undecodable untouched.
    normalized = normalize_key_material(value)
    return normalized if normalized is not None else value


def decoded_length(value: str) -> int:
    decoded = _decode(value)
    return len(decoded) if decoded is not None else 0


def validate_public_key(value: str, *, field: str = PUBLIC_KEY_FIELD) -> str:
    decoded = _decode(value)
    if decoded is None:
        raise InvalidKeyMaterialError(field, None)
    if len(decoded) != PUBLIC_KEY_LENGTH:
        raise InvalidKeyMaterialError(
            field,
            len(decoded),
            f"{field} must decode to {PUBLIC_KEY_LENGTH} bytes (got {len(decoded)})",
        )
    return _encode(decoded)


def validate_auth_secret(value: str, *, field: str = AUTH_SECRET_FIELD) -> str:
    decoded = _decode(value)
    if decoded is None:
        raise InvalidKeyMaterialError(field, None)
    if len(decoded) < MIN_AUTH_SECRET_LENGTH:
        raise InvalidKeyMaterialError(
            field,
            len(decoded),
            f"{field} must decode to at least {MIN_AUTH_SECRET_LENGTH} bytes (got {len(decoded)})",
        )
    return _encode(decoded)

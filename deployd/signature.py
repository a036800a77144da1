"""
Webhook signature verification.

GitHub signs the raw request body with HMAC-SHA256 using the shared
secret and sends `X-Hub-Signature-256: sha256=<64 hex>`. The check runs
on the raw bytes, before the body is parsed, and fails closed when no
secret is configured.
"""

import hashlib
import hmac
import re

from deployd.errors import (
    InvalidSignatureLength, InvalidSignaturePrefix, MissingSignature,
    SecretNotConfigured, SignatureMismatch, SignatureNotHex,
)


SIGNATURE_HEADER = "X-Hub-Signature-256"
PREFIX = "sha256="
DIGEST_HEX_LEN = 64

_HEX = re.compile(r"[0-9a-f]{64}")


def _key(secret: str | bytes | None) -> bytes:
    if not secret:
        raise SecretNotConfigured("webhook secret is not configured")
    if isinstance(secret, str):
        return secret.encode()
    return secret


def sign(secret: str | bytes, payload: bytes) -> str:
    """Header value for payload, as GitHub would send it."""
    digest = hmac.new(_key(secret), payload, hashlib.sha256).hexdigest()
    return PREFIX + digest


def parse_signature(header: str | None) -> bytes:
    """Decode a `sha256=<hex>` header value into the raw 32-byte digest."""
    if header is None:
        raise MissingSignature(f"`{SIGNATURE_HEADER}` header isn't found")
    if len(header) != len(PREFIX) + DIGEST_HEX_LEN:
        raise InvalidSignatureLength(
            f"`{SIGNATURE_HEADER}` has invalid length {len(header)}")
    prefix, digest = header[:len(PREFIX)], header[len(PREFIX):]
    if prefix != PREFIX:
        raise InvalidSignaturePrefix(
            f"`{SIGNATURE_HEADER}` must start with `{PREFIX}`")
    if not _HEX.fullmatch(digest):
        raise SignatureNotHex("signature must be 64 lowercase hex digits")
    return bytes.fromhex(digest)


def verify_signature(secret: str | bytes | None, payload: bytes,
                     header: str | None) -> None:
    """
    Raise unless header is a valid signature of payload under secret.
    The secret is checked first so a misconfigured daemon never accepts
    anything, whatever the caller sends.
    """
    key = _key(secret)
    expected = parse_signature(header)
    actual = hmac.new(key, payload, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, actual):
        raise SignatureMismatch("signature doesn't match")

"""
Authenticated encryption of session claims into an opaque cookie value.

The payload is a JSON object encrypted as a compact JWE with direct key
agreement (``alg=dir``). Content is encrypted with A256CBC-HS512; tokens written
with the prior A256GCM content encryption still decrypt, so the algorithm can be
migrated without logging anybody out.

Keys
----
The master secret is never used directly. A key is derived per purpose (the
cookie's logical name) with HKDF-SHA256, so a key leaked for one purpose says
nothing about another. The protected header carries ``kid``, the RFC 7638
thumbprint of the derived key, which lets the verifier pick the right secret
when several are configured during a rotation.

Envelope
--------
``iat`` and ``exp`` bound the token's lifetime independently of any session
fields, and a random ``jti`` makes two encodings of the same claims differ.
Decoding allows 15 seconds of clock skew on both timestamps.

Any failure to decode returns None. Callers must treat that exactly like a
missing session.
"""

import hashlib
import json
import time
import uuid
from collections.abc import Mapping, Sequence
from typing import Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from jose import jwe
from jose.exceptions import JOSEError
from jose.utils import base64url_encode

from session_service.config import logger

KEY_MANAGEMENT_ALGORITHM = "dir"
DEFAULT_CONTENT_ENCRYPTION = "A256CBC-HS512"
LEGACY_CONTENT_ENCRYPTION = "A256GCM"
CONTENT_ENCRYPTION_KEY_LENGTHS = {DEFAULT_CONTENT_ENCRYPTION: 64, LEGACY_CONTENT_ENCRYPTION: 32}
CLOCK_TOLERANCE_SECONDS = 15
KEY_INFO_PREFIX = "CB Generated Encryption Key"

Secret = str | bytes | Sequence[str | bytes]


def _normalize_secrets(secret: Secret) -> list[bytes]:
    candidates = [secret] if isinstance(secret, (str, bytes)) else list(secret)
    secrets = [candidate.encode("utf-8") if isinstance(candidate, str) else bytes(candidate) for candidate in candidates]
    return [candidate for candidate in secrets if candidate]


def derive_encryption_key(secret: str | bytes, salt: str, length: int = CONTENT_ENCRYPTION_KEY_LENGTHS[DEFAULT_CONTENT_ENCRYPTION]) -> bytes:
    """
    Derive a purpose-bound encryption key from the master secret.

    Args:
        secret: Master key material.
        salt: Purpose string, normally the cookie name.
        length: Key length in bytes (64 for A256CBC-HS512, 32 for A256GCM).

    Returns:
        Derived key bytes.
    """
    key_material = secret.encode("utf-8") if isinstance(secret, str) else secret
    info = f"{KEY_INFO_PREFIX} ({salt})" if salt else KEY_INFO_PREFIX
    hkdf = HKDF(algorithm=hashes.SHA256(), length=length, salt=salt.encode("utf-8"), info=info.encode("utf-8"))
    return hkdf.derive(key_material)


def jwk_thumbprint(key: bytes) -> str:
    """
    Return the RFC 7638 thumbprint of a symmetric key.

    The digest width follows the key width (SHA-512 for a 64-byte key).

    Args:
        key: Raw symmetric key.

    Returns:
        Base64url thumbprint without padding.
    """
    digest_name = f"sha{len(key) * 8}" if len(key) * 8 in {256, 384, 512} else "sha256"
    canonical_jwk = json.dumps({"k": base64url_encode(key).decode("ascii"), "kty": "oct"}, separators=(",", ":"), sort_keys=True)
    return base64url_encode(hashlib.new(digest_name, canonical_jwk.encode("utf-8")).digest()).decode("ascii")


def encode(claims: Mapping[str, Any], *, secret: Secret, salt: str, max_age: int, now: int | None = None, encryption: str = DEFAULT_CONTENT_ENCRYPTION) -> str:
    """
    Encrypt claims into a compact JWE string.

    Args:
        claims: JSON-serialisable claims. Any ``iat``, ``exp`` or ``jti`` is overwritten.
        secret: Master secret, or a list whose first entry is the current secret.
        salt: Purpose string used for key derivation.
        max_age: Seconds until the envelope expires.
        now: UNIX time in seconds; defaults to the current time.
        encryption: Content encryption algorithm.

    Returns:
        Compact JWE serialization.

    Raises:
        ValueError: When the secret is empty, ``max_age`` is not positive, or the algorithm is unsupported.
    """
    if max_age <= 0:
        raise ValueError("max_age must be greater than zero.")
    if encryption not in CONTENT_ENCRYPTION_KEY_LENGTHS:
        raise ValueError(f"Unsupported content encryption algorithm: {encryption}")
    secrets = _normalize_secrets(secret)
    if not secrets:
        raise ValueError("A non-empty secret is required.")

    issued_at = int(time.time()) if now is None else int(now)
    key = derive_encryption_key(secrets[0], salt, CONTENT_ENCRYPTION_KEY_LENGTHS[encryption])
    payload = {**claims, "iat": issued_at, "exp": issued_at + max_age, "jti": str(uuid.uuid4())}
    token = jwe.encrypt(json.dumps(payload, separators=(",", ":")), key, encryption=encryption, algorithm=KEY_MANAGEMENT_ALGORITHM, kid=jwk_thumbprint(key))
    return token.decode("ascii") if isinstance(token, bytes) else token


def _candidate_keys(secrets: list[bytes], salt: str, encryption: str, kid: Any) -> list[bytes]:
    keys = [derive_encryption_key(candidate, salt, CONTENT_ENCRYPTION_KEY_LENGTHS[encryption]) for candidate in secrets]
    # Stable sort: the key named by the header goes first, the rest keep their order.
    return sorted(keys, key=lambda key: jwk_thumbprint(key) != kid)


def _timestamps_valid(payload: dict[str, Any], now: int, clock_tolerance: int) -> bool:
    for claim in ("exp", "iat", "nbf"):
        value = payload.get(claim)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
            return False

    expires_at = payload.get("exp")
    if expires_at is not None and now - clock_tolerance >= expires_at:
        return False
    issued_at = payload.get("iat")
    if issued_at is not None and issued_at > now + clock_tolerance:
        return False
    not_before = payload.get("nbf")
    if not_before is not None and not_before > now + clock_tolerance:
        return False
    return True


def decode(token: str | None, *, secret: Secret, salt: str, now: int | None = None, clock_tolerance: int = CLOCK_TOLERANCE_SECONDS) -> dict[str, Any] | None:  # pylint: disable=too-many-return-statements
    """
    Decrypt and validate a compact JWE produced by :func:`encode`.

    Args:
        token: Compact JWE serialization.
        secret: Master secret, or a list of current and superseded secrets.
        salt: Purpose string used for key derivation.
        now: UNIX time in seconds; defaults to the current time.
        clock_tolerance: Allowed skew in seconds for ``exp``, ``iat`` and ``nbf``.

    Returns:
        Decrypted claims including the envelope fields, or None when the token
        is missing, malformed, tampered, encrypted under an unknown key, or expired.
    """
    if not token:
        return None

    secrets = _normalize_secrets(secret)
    if not secrets:
        logger.warning("TokenCipher: no secret configured; cannot decode session token")
        return None

    try:
        header = jwe.get_unverified_header(token)
    except (JOSEError, ValueError, TypeError):
        logger.warning("TokenCipher: malformed session token header", salt=salt)
        return None

    encryption = header.get("enc") if isinstance(header, dict) else None
    if not isinstance(header, dict) or header.get("alg") != KEY_MANAGEMENT_ALGORITHM or encryption not in CONTENT_ENCRYPTION_KEY_LENGTHS:
        logger.warning("TokenCipher: unsupported session token algorithms", salt=salt)
        return None

    plaintext = None
    for key in _candidate_keys(secrets, salt, encryption, header.get("kid")):
        try:
            plaintext = jwe.decrypt(token, key)
        except (JOSEError, ValueError, TypeError):
            continue
        break

    if plaintext is None:
        logger.warning("TokenCipher: failed to decrypt session token (possible tampering, truncation, or key rotation)", salt=salt)
        return None

    try:
        payload = json.loads(plaintext)
    except (UnicodeDecodeError, ValueError):
        logger.warning("TokenCipher: failed to deserialize session token payload", salt=salt)
        return None

    if not isinstance(payload, dict):
        logger.warning("TokenCipher: session token payload is not an object", salt=salt)
        return None

    current_time = int(time.time()) if now is None else int(now)
    if not _timestamps_valid(payload, current_time, clock_tolerance):
        logger.info("TokenCipher: session token expired or not yet valid", salt=salt)
        return None

    return payload

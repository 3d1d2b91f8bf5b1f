"""
auth/tokens.py -- Secret derivation, password hashing, and input checks.

Security design decisions:
  Secrets: every salt, password hash and session token comes out of one
       primitive, derive_secret(). It is HMAC-SHA256 over (data + key) keyed
       by key, base64-encoded with '/', '+' and '=' stripped so the result is
       safe in cookies, headers and URLs without further escaping. The output
       format matches hashes stored by existing deployments of this schema.

  Keys: a supplied key longer than 16 bytes is truncated to 16 bytes before
       use. Salts are generated at exactly 16 characters, so the limit only
       matters for keys derived from free-form input (e.g. a federated
       username) and keeps the digest input bounded.

  Random keys: when no key is supplied, one is built from a nanosecond
       timestamp plus 31 bits from the secrets module. The key itself is
       never stored; only the derived secret is.

  Password pairs: compared with hmac.compare_digest so the check does not
       leak the position of the first differing byte.

  Email / site URL: format checks only, via pydantic's EmailStr and AnyUrl
       validators. Nothing here touches the network.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time

from pydantic import AnyUrl, EmailStr, TypeAdapter, ValidationError

from auth.errors import ErrorCode

MAX_KEY_BYTES = 16
SALT_LENGTH = 16
HASH_LENGTH = 64
MIN_PASSWORD_BYTES = 4
MAX_CONTACT_BYTES = 64

_email_adapter = TypeAdapter(EmailStr)
_url_adapter = TypeAdapter(AnyUrl)


# ---------------------------------------------------------------------------
# Secret derivation
# ---------------------------------------------------------------------------


def _random_key() -> bytes:
    return f"{time.time_ns():x}{secrets.randbelow(2**31)}".encode()


def derive_secret(data: str, key: str | None = None, length: int = HASH_LENGTH) -> str:
    """Return a URL-safe secret derived from data.

    Args:
        data:   Input material (password + username, token seed, ...).
        key:    HMAC key. When empty or None a fresh unpredictable key is
                generated, so the output is not reproducible.
        length: Maximum length of the returned string. Use 16 for salts and
                64 for password hashes and tokens.
    """
    if key:
        bkey = key.encode("utf-8")[:MAX_KEY_BYTES]
    else:
        bkey = _random_key()
    digest = hmac.new(bkey, data.encode("utf-8") + bkey, hashlib.sha256).digest()
    encoded = base64.b64encode(digest).decode("ascii")
    for char in ("/", "+", "="):
        encoded = encoded.replace(char, "")
    return encoded[:length]


def generate_salt(uname: str, upass: str) -> str:
    """Return a fresh 16-character salt for a new local account."""
    return derive_secret(uname + upass, None, SALT_LENGTH)


def generate_nonce() -> str:
    """Return a one-off value used to make passwordless tokens unique."""
    return f"{time.time_ns():x}{secrets.token_hex(8)}"


def hash_password(uname: str, upass: str, usalt: str) -> str:
    """Return the stored form of a password for the given username and salt."""
    return derive_secret(upass + uname, usalt[:SALT_LENGTH], HASH_LENGTH)


# ---------------------------------------------------------------------------
# Input checks
# ---------------------------------------------------------------------------


def verify_password_pair(pass1: str, pass2: str) -> ErrorCode:
    """Check a password and its confirmation.

    Both values are trimmed first. Returns ErrorCode.OK, PASSWORD_MISMATCH
    or PASSWORD_TOO_SHORT. Used by registration and password change.
    """
    b1 = pass1.strip().encode("utf-8")
    b2 = pass2.strip().encode("utf-8")
    if not hmac.compare_digest(b1, b2):
        return ErrorCode.PASSWORD_MISMATCH
    if len(b1) < MIN_PASSWORD_BYTES:
        return ErrorCode.PASSWORD_TOO_SHORT
    return ErrorCode.OK


def verify_email(email: str) -> str | None:
    """Return the normalized email address, or None if it is not well-formed."""
    email = email.strip()
    if not email or len(email.encode("utf-8")) > MAX_CONTACT_BYTES:
        return None
    try:
        return _email_adapter.validate_python(email)
    except ValidationError:
        return None


def verify_site_url(url: str) -> str | None:
    """Return the trimmed URL, or None if it is not an absolute URL with a host."""
    url = url.strip()
    if not url or len(url.encode("utf-8")) > MAX_CONTACT_BYTES:
        return None
    try:
        parsed = _url_adapter.validate_python(url)
    except ValidationError:
        return None
    if not parsed.host:
        return None
    return url

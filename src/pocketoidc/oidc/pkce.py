"""PKCE (RFC 7636) verification for the token endpoint.

Only the S256 method is accepted; ``plain`` offers no protection against an
intercepted authorization request and is rejected at ``/authorize``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re

SUPPORTED_METHODS = ("S256",)

# RFC 7636 4.1: 43-128 unreserved characters
_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
# base64url of a sha256 digest, no padding
_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-_]{43}$")


def s256_challenge(code_verifier: str) -> str:
    """BASE64URL-ENCODE(SHA256(ASCII(code_verifier)))"""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def is_valid_challenge(code_challenge: str) -> bool:
    return bool(_CHALLENGE_RE.match(code_challenge))


def verify_code_verifier(code_verifier: str | None, code_challenge: str, method: str) -> bool:
    """Check *code_verifier* against the challenge stored with the code.

    The comparison is constant-time.
    """
    if method not in SUPPORTED_METHODS:
        return False
    if not code_verifier or not _VERIFIER_RE.match(code_verifier):
        return False
    return hmac.compare_digest(s256_challenge(code_verifier), code_challenge)

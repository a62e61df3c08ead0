"""HMAC-signed session cookies.

Cookie format: ``{sid}.{hex_hmac}``

Only the opaque session id travels to the user agent; the session itself
lives in the provider's SessionStore. Rotating ``cookie_secret`` invalidates
every outstanding cookie at once.
"""

import hashlib
import hmac

__all__ = ["sign_session_id", "unsign_session_id"]


def sign_session_id(sid: str, secret: str) -> str:
    """Return the cookie value for *sid*."""
    return f"{sid}.{_sign(secret, sid)}"


def unsign_session_id(value: str | None, secret: str) -> str | None:
    """Return the session id carried by a cookie, or None if it was tampered with."""
    if not value:
        return None
    sid, sep, sig = value.rpartition(".")
    if not sep or not sid:
        return None
    expected = _sign(secret, sid)
    if not hmac.compare_digest(sig, expected):
        return None
    return sid


def _sign(key: str, message: str) -> str:
    return hmac.new(key.encode(), message.encode(), hashlib.sha256).hexdigest()

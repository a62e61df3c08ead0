# Signing keys, JWS production and the public JWK set.
# Created: 2026-10-12
#
# Keys are loaded once at startup (inline PEM or file) and are read-only
# afterwards. Private material never leaves this module: public_jwks() only
# serializes public components.

from __future__ import annotations

import base64
import hashlib
import json
import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jwt.algorithms import ECAlgorithm, RSAAlgorithm

from pocketoidc.oidc.errors import KeyUnavailable
from pocketoidc.oidc.models import SigningKey

if TYPE_CHECKING:
    from pocketoidc.config import Settings

logger = logging.getLogger(__name__)

RSA_ALGORITHMS = frozenset({"RS256", "PS256"})
EC_ALGORITHMS = {"ES256": "secp256r1"}
SUPPORTED_ALGORITHMS = RSA_ALGORITHMS | frozenset(EC_ALGORITHMS)
MIN_RSA_KEY_SIZE = 2048

_THUMBPRINT_MEMBERS = {"RSA": ("e", "kty", "n"), "EC": ("crv", "kty", "x", "y")}


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_key_pair(key_size: int = 2048) -> tuple[str, str]:
    """Generate an RSA key pair. Returns (private_pem, public_pem), PKCS8 / SPKI."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = (
        key.public_key()
        .public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("ascii")
    )
    return private_pem, public_pem


def jwk_thumbprint(jwk: Mapping[str, Any]) -> str:
    """RFC 7638 SHA-256 thumbprint of a public JWK."""
    members = _THUMBPRINT_MEMBERS[jwk["kty"]]
    canonical = json.dumps(
        {name: jwk[name] for name in members}, separators=(",", ":"), sort_keys=True
    )
    return _b64url(hashlib.sha256(canonical.encode()).digest())


def _infer_algorithm(private_key: Any) -> str:
    if isinstance(private_key, rsa.RSAPrivateKey):
        return "RS256"
    if isinstance(private_key, ec.EllipticCurvePrivateKey) and private_key.curve.name == "secp256r1":
        return "ES256"
    raise KeyUnavailable(f"Unsupported signing key type: {type(private_key).__name__}")


def _check_key(private_key: Any, algorithm: str) -> None:
    if algorithm in RSA_ALGORITHMS:
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise KeyUnavailable(f"{algorithm} requires an RSA key")
        if private_key.key_size < MIN_RSA_KEY_SIZE:
            raise KeyUnavailable(
                f"RSA key is {private_key.key_size} bits, at least {MIN_RSA_KEY_SIZE} required"
            )
    elif algorithm in EC_ALGORITHMS:
        if not (
            isinstance(private_key, ec.EllipticCurvePrivateKey)
            and private_key.curve.name == EC_ALGORITHMS[algorithm]
        ):
            raise KeyUnavailable(f"{algorithm} requires a {EC_ALGORITHMS[algorithm]} key")
    else:
        raise KeyUnavailable(f"Unsupported signing algorithm: {algorithm}")


def _public_jwk(private_key: Any) -> dict[str, Any]:
    public_key = private_key.public_key()
    if isinstance(public_key, rsa.RSAPublicKey):
        jwk = RSAAlgorithm.to_jwk(public_key, as_dict=True)
    else:
        jwk = ECAlgorithm.to_jwk(public_key, as_dict=True)
    jwk = dict(jwk)
    # "use" is published instead
    jwk.pop("key_ops", None)
    return jwk


def load_signing_key(
    pem: str | bytes,
    kid: str | None = None,
    algorithm: str | None = None,
) -> SigningKey:
    """Parse a PEM private key into a SigningKey.

    Raises:
        KeyUnavailable: the PEM is unreadable or unsuitable for *algorithm*
    """
    data = pem.encode() if isinstance(pem, str) else pem
    try:
        private_key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyUnavailable(f"Could not load signing key: {exc}") from exc

    algorithm = algorithm or _infer_algorithm(private_key)
    _check_key(private_key, algorithm)

    jwk = _public_jwk(private_key)
    kid = kid or jwk_thumbprint(jwk)
    jwk.update({"kid": kid, "use": "sig", "alg": algorithm})
    return SigningKey(kid=kid, algorithm=algorithm, private_key=private_key, public_jwk=jwk)


class KeyManager:
    """Holds the provider's signing keys. The first key signs; all keys verify."""

    def __init__(self, keys: Sequence[SigningKey]):
        if not keys:
            raise KeyUnavailable("No signing key configured")
        self._keys = tuple(keys)
        self._by_kid: dict[str, SigningKey] = {}
        for key in self._keys:
            if key.kid in self._by_kid:
                raise KeyUnavailable(f"Duplicate key id: {key.kid}")
            self._by_kid[key.kid] = key

    @classmethod
    def from_pem(
        cls,
        pem: str | bytes,
        kid: str | None = None,
        algorithm: str | None = None,
    ) -> KeyManager:
        return cls([load_signing_key(pem, kid=kid, algorithm=algorithm)])

    @classmethod
    def from_settings(cls, settings: Settings) -> KeyManager:
        """Load the signing key from inline PEM, falling back to the key file."""
        if settings.private_key:
            # Env vars usually carry the PEM with escaped newlines
            pem = settings.private_key.replace("\\n", "\n")
            source = "inline configuration"
        else:
            path = settings.private_key_path or _default_key_path()
            if not path.exists():
                raise KeyUnavailable(
                    f"Signing key not found at {path}. Run `pocketoidc generate-keys` first."
                )
            try:
                pem = path.read_text()
            except OSError as exc:
                raise KeyUnavailable(f"Could not read signing key {path}: {exc}") from exc
            source = str(path)

        key = load_signing_key(pem, kid=settings.signing_key_id, algorithm=settings.signing_alg)
        logger.info("Loaded signing key %s (%s) from %s", key.kid, key.algorithm, source)
        return cls([key])

    @property
    def signing_key(self) -> SigningKey:
        return self._keys[0]

    @property
    def algorithms(self) -> list[str]:
        return sorted({k.algorithm for k in self._keys})

    def sign(self, claims: Mapping[str, Any], header: Mapping[str, Any] | None = None) -> str:
        """Sign *claims* as a compact JWS with the active key."""
        key = self.signing_key
        headers = {"typ": "JWT", **(header or {}), "kid": key.kid}
        return jwt.encode(dict(claims), key.private_key, algorithm=key.algorithm, headers=headers)

    def verify(
        self,
        token: str,
        *,
        audience: str | None = None,
        issuer: str | None = None,
        leeway: float = 0,
        verify_exp: bool = True,
    ) -> dict[str, Any]:
        """Verify a JWT minted by this provider and return its claims.

        ``verify_exp=False`` still checks the signature, issuer and audience; it is
        for logout hints, which stay valid after the token expires.

        Raises:
            jwt.PyJWTError: malformed token, unknown kid, bad signature, expired, ...
        """
        header = jwt.get_unverified_header(token)
        key = self._by_kid.get(header.get("kid", ""))
        if key is None:
            raise jwt.InvalidTokenError("Unknown key id")
        options: dict[str, Any] = {"require": ["exp", "iat"], "verify_exp": verify_exp}
        if audience is None:
            options["verify_aud"] = False
        return jwt.decode(
            token,
            key.private_key.public_key(),
            algorithms=[key.algorithm],
            audience=audience,
            issuer=issuer,
            options=options,
            leeway=leeway,
        )

    def public_jwks(self) -> dict[str, list[dict[str, Any]]]:
        return {"keys": [dict(k.public_jwk) for k in self._keys]}


def _default_key_path() -> Path:
    from pocketoidc.config import get_config_dir

    return get_config_dir() / "keys" / "private.pem"

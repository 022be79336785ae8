"""
Credential binding.

Holds the root signing key, derives role-scoped API keys (JWTs) from it and
binds opaque references to those keys into service configuration. The root
is an asymmetric key pair: its private half never leaves SecretRoot, and
services that verify keys themselves only ever receive a reference to the
public half. Consumers see SecretReference values that the provisioning
engine resolves at deploy time.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from .errors import InvalidDuration, TokenVerificationError
from .models import DEFAULT_NAMESPACE, SecretReference, TokenSpec

logger = logging.getLogger(__name__)

# =============================================================================
# Algorithm Policy
# =============================================================================

# Asymmetric only: verifiers must never hold the signing key.
RSA_ALGORITHMS = frozenset({"RS256", "RS384", "RS512"})
EC_CURVE_ALGORITHMS = {"secp256r1": "ES256", "secp384r1": "ES384", "secp521r1": "ES512"}
ALLOWED_ALGORITHMS = RSA_ALGORITHMS | frozenset(EC_CURVE_ALGORITHMS.values())
BLOCKED_ALGORITHMS = frozenset({"none", "None", "NONE", "nOnE"})

MIN_RSA_KEY_SIZE = 2048

MAX_TOKEN_LENGTH = 16 * 1024

REQUIRED_CLAIMS = ("role", "iss", "iat", "exp")


def _check_algorithm(algorithm: str) -> None:
    if algorithm in BLOCKED_ALGORITHMS:
        raise ValueError(f"Algorithm '{algorithm}' is blocked for security reasons")
    if algorithm not in ALLOWED_ALGORITHMS:
        raise ValueError(
            f"Algorithm '{algorithm}' is not allowed. "
            f"Allowed: {', '.join(sorted(ALLOWED_ALGORITHMS))}"
        )


def _generate_private_key(algorithm: str) -> rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey:
    _check_algorithm(algorithm)
    if algorithm in RSA_ALGORITHMS:
        return rsa.generate_private_key(public_exponent=65537, key_size=MIN_RSA_KEY_SIZE)
    curve = {"ES256": ec.SECP256R1, "ES384": ec.SECP384R1, "ES512": ec.SECP521R1}[algorithm]
    return ec.generate_private_key(curve())


# =============================================================================
# Secret Root
# =============================================================================


class SecretRoot:
    """
    Process-wide root signing key pair.

    Created once on first access via SecretRoot.get(). Replacing it would
    invalidate every key already derived, so the only way to do so is the
    explicit rotate() entry point used by the external rotation job.
    """

    _instance: ClassVar[SecretRoot | None] = None
    _lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self, private_key_pem: str | bytes, generation: int = 1):
        if isinstance(private_key_pem, str):
            private_key_pem = private_key_pem.encode()
        key = serialization.load_pem_private_key(private_key_pem, password=None)

        if isinstance(key, rsa.RSAPrivateKey):
            if key.key_size < MIN_RSA_KEY_SIZE:
                raise ValueError(
                    f"RSA root key must be at least {MIN_RSA_KEY_SIZE} bits. "
                    f"Got {key.key_size} bits."
                )
            self.algorithms = RSA_ALGORITHMS
        elif isinstance(key, ec.EllipticCurvePrivateKey):
            algorithm = EC_CURVE_ALGORITHMS.get(key.curve.name)
            if algorithm is None:
                raise ValueError(f"Unsupported curve for root key: {key.curve.name}")
            self.algorithms = frozenset({algorithm})
        else:
            raise ValueError(f"Unsupported root key type: {type(key).__name__}")

        self._key = key
        self.public_key_pem = (
            key.public_key()
            .public_bytes(
                serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
            )
            .decode()
        )
        self.generation = generation
        self.created_at = datetime.now(UTC)

    def __repr__(self) -> str:
        return f"SecretRoot(generation={self.generation}, key=<redacted>)"

    @property
    def default_algorithm(self) -> str:
        return min(self.algorithms)

    @classmethod
    def generate(cls, algorithm: str = "RS256", generation: int = 1) -> SecretRoot:
        """Create a root with a freshly generated key pair for `algorithm`."""
        pem = _generate_private_key(algorithm).private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        return cls(pem, generation=generation)

    @classmethod
    def get(cls, algorithm: str = "RS256") -> SecretRoot:
        """
        Return the process root, generating it on first access.

        `algorithm` only decides the key type of a root created by this call.
        """
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls.generate(algorithm)
                logger.info("Generated root signing key (%s)", algorithm)
            return cls._instance

    @classmethod
    def rotate(cls, private_key_pem: str | bytes | None = None) -> SecretRoot:
        """
        Replace the process root.

        Without a key a new pair of the same type is generated. Every key
        derived from the previous root stops verifying; callers must re-plan
        and redeploy the services bound to them.
        """
        with cls._lock:
            previous = cls._instance
            generation = previous.generation + 1 if previous else 1
            if private_key_pem is None:
                algorithm = previous.default_algorithm if previous else "RS256"
                cls._instance = cls.generate(algorithm, generation=generation)
            else:
                cls._instance = cls(private_key_pem, generation=generation)
            logger.warning("Root signing key rotated (generation %d)", generation)
            return cls._instance

    def sign(self, payload: dict[str, Any], algorithm: str) -> str:
        return jwt.encode(payload, self._key, algorithm=algorithm)

    def decode(self, token: str, algorithm: str, leeway: int = 0) -> dict[str, Any]:
        return jwt.decode(
            token,
            self._key.public_key(),
            algorithms=[algorithm],
            leeway=timedelta(seconds=leeway),
            options={"require": list(REQUIRED_CLAIMS)},
        )


# =============================================================================
# Tokens and Bindings
# =============================================================================


@dataclass(frozen=True)
class DerivedToken:
    """A role-scoped key signed by the root key."""

    role: str
    issuer: str
    issued_at: int
    expires_at: int
    claims: dict[str, Any]
    reference: SecretReference
    value: str = field(repr=False)


@dataclass(frozen=True)
class TokenBinding:
    """A service receives `reference` under env var `env`."""

    service: str
    env: str
    reference: SecretReference
    kind: str = "token"

    def to_dict(self) -> dict[str, Any]:
        return {"env": self.env, "kind": self.kind, "reference": self.reference.uri}


@dataclass(frozen=True)
class TokenSet:
    """References to every derived key plus every binding. No secret values."""

    tokens: tuple[SecretReference, ...] = ()
    bindings: tuple[TokenBinding, ...] = ()

    def bindings_for(self, service: str) -> list[TokenBinding]:
        return [b for b in self.bindings if b.service == service]

    def consumers_of(self, reference: SecretReference) -> set[str]:
        return {b.service for b in self.bindings if b.reference == reference}


def duration_seconds(expires_in: int | float | timedelta) -> int:
    """
    Token lifetime in whole seconds, rounded up.

    Raises:
        InvalidDuration: If the lifetime is zero or negative
    """
    if isinstance(expires_in, timedelta):
        seconds = expires_in.total_seconds()
    else:
        seconds = expires_in
    if seconds <= 0:
        raise InvalidDuration(f"Token lifetime must be positive, got {seconds}", str(expires_in))
    # exp must land strictly after iat
    return math.ceil(seconds)


class CredentialBinder:
    """
    Derives keys from the root key and records which service gets which.

    Usage:
        binder = CredentialBinder(namespace="fleet.internal")
        anon = binder.derive_token("anon", "fleet", timedelta(days=3650))
        binder.bind("gateway", anon, env="ANON_KEY")
        binder.bind_verification_key("rest", "PGRST_JWT_SECRET")

    Deriving the same (role, issuer, expires_in, claims) twice on one binder
    returns the identical token, so a planning run can re-derive freely.
    """

    def __init__(
        self,
        root: SecretRoot | None = None,
        algorithm: str | None = None,
        namespace: str = DEFAULT_NAMESPACE,
        verification_key_reference: SecretReference | None = None,
        leeway_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        self._root = root or SecretRoot.get(algorithm or "RS256")
        self.algorithm = algorithm or self._root.default_algorithm
        _check_algorithm(self.algorithm)
        if self.algorithm not in self._root.algorithms:
            raise ValueError(
                f"Root key cannot sign {self.algorithm}. "
                f"Supported: {', '.join(sorted(self._root.algorithms))}"
            )
        self.namespace = namespace
        self.leeway_seconds = leeway_seconds
        self.verification_key_reference = verification_key_reference or SecretReference(
            store="ssm", key=f"/{namespace}/jwt-public-key"
        )
        self._clock = clock
        self._tokens: dict[tuple[str, str, int, str], DerivedToken] = {}
        self._bindings: dict[tuple[str, str], TokenBinding] = {}

    # -------------------------------------------------------------------------
    # Derivation
    # -------------------------------------------------------------------------

    def derive_token(
        self,
        role: str,
        issuer: str,
        expires_in: int | float | timedelta,
        extra_claims: dict[str, Any] | None = None,
    ) -> DerivedToken:
        """
        Derive a key for a role.

        Args:
            role: Database role the key maps to (e.g. "anon", "service_role")
            issuer: Token issuer claim
            expires_in: Lifetime in seconds (or a timedelta), rounded up
            extra_claims: Additional claims; they cannot override role/iss/iat/exp

        Raises:
            InvalidDuration: If expires_in is not positive
        """
        seconds = duration_seconds(expires_in)
        extra = dict(extra_claims or {})
        claims_key = json.dumps(extra, sort_keys=True, default=str)
        cache_key = (role, issuer, seconds, claims_key)

        cached = self._tokens.get(cache_key)
        if cached is not None:
            return cached

        issued_at = int(self._clock())
        payload: dict[str, Any] = {
            **extra,
            "role": role,
            "iss": issuer,
            "iat": issued_at,
            "exp": issued_at + seconds,
        }
        digest = hashlib.sha256(json.dumps(cache_key).encode()).hexdigest()[:12]
        token = DerivedToken(
            role=role,
            issuer=issuer,
            issued_at=issued_at,
            expires_at=issued_at + seconds,
            claims=payload,
            reference=SecretReference(store="ssm", key=f"/{self.namespace}/tokens/{role}/{digest}"),
            value=self._root.sign(payload, self.algorithm),
        )
        self._tokens[cache_key] = token
        logger.info("Derived %s key (issuer=%s, expires_in=%ds)", role, issuer, seconds)
        return token

    def derive_tokens(
        self, specs: Iterable[TokenSpec], default_issuer: str = "fleet"
    ) -> dict[str, DerivedToken]:
        """
        Derive every declared key, or none of them.

        All lifetimes are checked before the first key is signed, and keys
        signed by this call are discarded again if a later one fails.

        Returns:
            Token name -> derived key
        """
        specs = list(specs)
        for spec in specs:
            duration_seconds(spec.expires_in)

        before = set(self._tokens)
        try:
            return {
                spec.name: self.derive_token(
                    spec.role, spec.issuer or default_issuer, spec.expires_in, spec.claims
                )
                for spec in specs
            }
        except Exception:
            for key in set(self._tokens) - before:
                del self._tokens[key]
            raise

    def verify(self, token: str | DerivedToken) -> dict[str, Any]:
        """
        Verify a key against the root public key and return its claims.

        Raises:
            TokenVerificationError: If the key is malformed, tampered with,
                signed with another algorithm, or expired.
        """
        raw = token.value if isinstance(token, DerivedToken) else token
        if len(raw) > MAX_TOKEN_LENGTH:
            raise TokenVerificationError(
                f"Token exceeds maximum length ({MAX_TOKEN_LENGTH} bytes)", code="token_too_large"
            )

        try:
            header_alg = jwt.get_unverified_header(raw).get("alg", "")
        except jwt.exceptions.DecodeError:
            raise TokenVerificationError("Malformed token header")
        if header_alg in BLOCKED_ALGORITHMS:
            raise TokenVerificationError(
                f"Algorithm '{header_alg}' is not allowed", code="blocked_algorithm"
            )
        if header_alg != self.algorithm:
            raise TokenVerificationError(
                f"Algorithm '{header_alg}' is not allowed", code="invalid_algorithm"
            )

        try:
            return self._root.decode(raw, self.algorithm, leeway=self.leeway_seconds)
        except jwt.ExpiredSignatureError:
            raise TokenVerificationError("Token has expired", code="token_expired")
        except jwt.InvalidTokenError as e:
            raise TokenVerificationError(f"Invalid token: {e}")

    # -------------------------------------------------------------------------
    # Binding
    # -------------------------------------------------------------------------

    def _record(self, binding: TokenBinding) -> TokenBinding:
        existing = self._bindings.get((binding.service, binding.env))
        if existing is not None and existing != binding:
            logger.warning(
                "Rebinding %s.%s from %s to %s",
                binding.service,
                binding.env,
                existing.reference.uri,
                binding.reference.uri,
            )
        self._bindings[(binding.service, binding.env)] = binding
        return binding

    def bind(self, service: str, token: DerivedToken, env: str | None = None) -> TokenBinding:
        """Bind a derived key to a service. No I/O; returns an opaque reference."""
        env = env or f"{token.role.upper()}_KEY"
        return self._record(TokenBinding(service=service, env=env, reference=token.reference))

    def bind_verification_key(self, service: str, env: str) -> TokenBinding:
        """
        Bind the root public key for services that verify keys themselves.

        The reference resolves to the public half only; no consumer is ever
        bound to the signing key.
        """
        return self._record(
            TokenBinding(
                service=service,
                env=env,
                reference=self.verification_key_reference,
                kind="verification_key",
            )
        )

    def bind_external(self, service: str, env: str, reference: SecretReference) -> TokenBinding:
        """Record a pass-through reference to a secret owned by the secret store."""
        return self._record(
            TokenBinding(service=service, env=env, reference=reference, kind="external")
        )

    def bindings_for(self, service: str) -> list[TokenBinding]:
        return [b for (name, _), b in self._bindings.items() if name == service]

    def token_set(self) -> TokenSet:
        return TokenSet(
            tokens=tuple(t.reference for t in self._tokens.values()),
            bindings=tuple(self._bindings.values()),
        )

    def export_secrets(self) -> dict[str, str]:
        """
        Store key -> value for every derived key, plus the root public key
        once any service is bound to it.

        Only the provisioning engine calls this, to write the values into the
        secret store the references point at. The private key is never
        exported.
        """
        exported = {t.reference.key: t.value for t in self._tokens.values()}
        if any(b.kind == "verification_key" for b in self._bindings.values()):
            exported[self.verification_key_reference.key] = self._root.public_key_pem
        return exported

"""Shared pytest fixtures for fleetplan tests."""

from __future__ import annotations

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from fleetplan.credentials import CredentialBinder, SecretRoot
from fleetplan.models import (
    DependencyEdge,
    SecretRef,
    ServiceDescriptor,
    ServiceFleetSpec,
    TokenSpec,
    TriggerRule,
)


@pytest.fixture(scope="session")
def root_key_pem() -> bytes:
    """RSA root key shared by the whole session."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


@pytest.fixture
def root(root_key_pem: bytes) -> SecretRoot:
    """A root signing key independent of the process root."""
    return SecretRoot(root_key_pem)


@pytest.fixture
def binder(root: SecretRoot) -> CredentialBinder:
    """Credential binder over the test root."""
    return CredentialBinder(root=root, namespace="test.internal")


@pytest.fixture(autouse=True)
def reset_process_root():
    """Keep SecretRoot.get()/rotate() state from leaking between tests."""
    saved = SecretRoot._instance
    yield
    SecretRoot._instance = saved


@pytest.fixture
def small_spec() -> ServiceFleetSpec:
    """Gateway calling auth and rest, with one derived key."""
    return ServiceFleetSpec(
        name="small",
        namespace="test.internal",
        services=(
            ServiceDescriptor(
                name="gateway",
                port=8000,
                secrets=(SecretRef(env="ANON_KEY", ref="anon-key"),),
            ),
            ServiceDescriptor(
                name="auth",
                port=9999,
                secrets=(SecretRef(env="JWT_SECRET", ref="jwt-public-key"),),
            ),
            ServiceDescriptor(name="rest", port=3000),
        ),
        edges=(
            DependencyEdge(source="gateway", target="auth", port=9999, env_var="AUTH_URL", path="/"),
            DependencyEdge(source="gateway", target="rest", port=3000, env_var="REST_URL"),
        ),
        tokens=(TokenSpec(name="anon-key", role="anon", issuer="test", expires_in=3600),),
        triggers=(
            TriggerRule(
                name="auth-changed",
                pattern={"source": ["settings"], "detail": {"service": ["auth"]}},
                services=frozenset({"auth"}),
            ),
        ),
    )

"""
Typed records describing a service fleet.

A ServiceFleetSpec is the single input of every planning component: the
topology deriver, the credential binder, the scaling mapper and the redeploy
coordinator all read it and none of them mutate it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_NAMESPACE = "fleet.internal"

# Secret reference name that resolves to the root public (verification) key
VERIFICATION_KEY_REF = "jwt-public-key"


class CpuArchitecture(StrEnum):
    """Container CPU architectures."""

    ARM64 = "ARM64"
    X86_64 = "X86_64"


# =============================================================================
# Service Descriptors
# =============================================================================


class HealthCheckSpec(BaseModel):
    """
    Container health probe.

    Either a probe command (run inside the container) or an HTTP path is
    given; the hosting platform does the actual probing.
    """

    model_config = ConfigDict(frozen=True)

    command: tuple[str, ...] | None = None
    path: str | None = None
    port: int | None = None
    interval: int = Field(default=10, gt=0, description="Seconds between probes")
    timeout: int = Field(default=10, gt=0, description="Seconds before a probe fails")
    retries: int = Field(default=3, ge=0)

    @model_validator(mode="after")
    def _require_probe(self) -> HealthCheckSpec:
        if not self.command and not self.path:
            raise ValueError("health check needs a command or a path")
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "command": list(self.command) if self.command else None,
            "path": self.path,
            "port": self.port,
            "interval": self.interval,
            "timeout": self.timeout,
            "retries": self.retries,
        }


class SecretRef(BaseModel):
    """A named secret reference and the env var a service receives it under."""

    model_config = ConfigDict(frozen=True)

    env: str
    ref: str


class ServiceDescriptor(BaseModel):
    """One service of the fleet. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    port: int = Field(gt=0, lt=65536)
    image: str = ""
    description: str = ""
    environment: dict[str, str] = Field(default_factory=dict)
    secrets: tuple[SecretRef, ...] = ()
    health_check: HealthCheckSpec | None = None
    command: tuple[str, ...] | None = None
    size: str = "medium"
    min_instances: int = 1
    max_instances: int = 20
    cpu_architecture: CpuArchitecture = CpuArchitecture.ARM64
    connects_database: bool = False

    @property
    def disabled(self) -> bool:
        """Declared and provisioned but never scheduled."""
        return self.max_instances == 0

    @model_validator(mode="after")
    def _unique_secret_envs(self) -> ServiceDescriptor:
        seen: set[str] = set()
        for secret in self.secrets:
            if secret.env in seen:
                raise ValueError(f"duplicate secret env var {secret.env!r} on {self.name}")
            seen.add(secret.env)
        return self


class DependencyEdge(BaseModel):
    """
    "source must reach target on port".

    label, env_var and path are presentation details: edges sharing
    (source, target, port) are the same edge for rule derivation. When env_var
    is set the source service receives the target's endpoint URL (plus path)
    under that name.
    """

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    port: int = Field(gt=0, lt=65536)
    label: str | None = None
    env_var: str | None = None
    path: str = ""

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.source, self.target, self.port)


# =============================================================================
# Shared Resources
# =============================================================================


class DatabaseSpec(BaseModel):
    """The shared relational database."""

    model_config = ConfigDict(frozen=True)

    name: str = "database"
    port: int = 5432


class LoadBalancerSpec(BaseModel):
    """Internet-facing load balancer in front of the entry service."""

    model_config = ConfigDict(frozen=True)

    name: str = "load-balancer"
    listener_port: int = 80
    target: str = "gateway"
    health_check_port: int | None = 8100
    health_check_path: str = "/status"
    origin: str = "cdn"
    origin_label: str = "CloudFront"


class SecretReference(BaseModel):
    """
    Opaque pointer into the external secret store.

    Only the provisioning engine dereferences it at deploy time.
    """

    model_config = ConfigDict(frozen=True)

    store: str = "ssm"
    key: str
    field: str | None = None

    @property
    def uri(self) -> str:
        uri = f"{self.store}:{self.key}"
        if self.field:
            uri += f"#{self.field}"
        return uri


class TokenSpec(BaseModel):
    """A role-scoped key derived from the root signing key."""

    model_config = ConfigDict(frozen=True)

    name: str
    role: str
    issuer: str | None = Field(default=None, description="Planner default issuer when unset")
    expires_in: float = Field(description="Lifetime in seconds")
    claims: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Triggers and Events
# =============================================================================


class TriggerRule(BaseModel):
    """Redeploy the given services whenever an event matches the pattern."""

    model_config = ConfigDict(frozen=True)

    name: str
    pattern: dict[str, Any]
    services: frozenset[str]
    description: str = ""

    @model_validator(mode="after")
    def _require_services(self) -> TriggerRule:
        if not self.services:
            raise ValueError(f"trigger rule {self.name!r} affects no services")
        return self


class ChangeEvent(BaseModel):
    """An external change notification (settings update, secret rotation)."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RedeployRequest(BaseModel):
    """
    Force a new deployment of a set of services.

    request_id is stable across resends so the provisioning engine can treat
    a duplicate delivery as a no-op.
    """

    model_config = ConfigDict(frozen=True)

    request_id: str
    services: frozenset[str]
    cause_event_ids: tuple[str, ...]
    rules: tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "request_id": self.request_id,
            "services": sorted(self.services),
            "cause_event_ids": list(self.cause_event_ids),
            "rules": list(self.rules),
            "created_at": self.created_at.isoformat(),
        }


# =============================================================================
# Fleet Spec
# =============================================================================


class ServiceFleetSpec(BaseModel):
    """Static description of the whole fleet."""

    model_config = ConfigDict(frozen=True)

    name: str = "fleet"
    namespace: str = DEFAULT_NAMESPACE
    services: tuple[ServiceDescriptor, ...] = ()
    edges: tuple[DependencyEdge, ...] = ()
    triggers: tuple[TriggerRule, ...] = ()
    tokens: tuple[TokenSpec, ...] = ()
    external_secrets: dict[str, SecretReference] = Field(default_factory=dict)
    database: DatabaseSpec | None = None
    load_balancer: LoadBalancerSpec | None = None

    @property
    def service_names(self) -> list[str]:
        return [s.name for s in self.services]

    def service(self, name: str) -> ServiceDescriptor | None:
        """Look up a descriptor by name."""
        for descriptor in self.services:
            if descriptor.name == name:
                return descriptor
        return None

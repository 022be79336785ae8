"""
Fleet planner for producing a deployment plan.

The FleetPlanner runs one planning pass over a ServiceFleetSpec: it resolves
scaling profiles, derives the network plan, derives role keys, binds secret
references and merges everything into one runtime configuration per service.
Planning is all-or-nothing; the first planning error propagates and no plan
is returned.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import PlannerSettings
from .credentials import CredentialBinder, DerivedToken, TokenBinding, TokenSet
from .errors import InvalidTopology, PlanningError, UnknownSecretReference
from .models import (
    VERIFICATION_KEY_REF,
    HealthCheckSpec,
    ServiceDescriptor,
    ServiceFleetSpec,
    TriggerRule,
)
from .scaling import ScalingProfile, profile_for
from .topology import EndpointBinding, NetworkPlan, derive_network_plan

logger = logging.getLogger(__name__)

PLAN_FORMAT_VERSION = "1"


# =============================================================================
# Plan Records
# =============================================================================


@dataclass
class ServiceRuntimeConfig:
    """Everything the provisioning engine needs to run one service."""

    name: str
    port: int
    image: str
    environment: dict[str, str]
    secrets: list[TokenBinding]
    scaling: ScalingProfile
    health_check: HealthCheckSpec | None = None
    endpoint: EndpointBinding | None = None
    command: tuple[str, ...] | None = None
    cpu_architecture: str = "ARM64"
    dependencies: list[str] = field(default_factory=list)

    @property
    def disabled(self) -> bool:
        return self.scaling.disabled

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "port": self.port,
            "image": self.image,
            "command": list(self.command) if self.command else None,
            "cpu_architecture": self.cpu_architecture,
            "environment": dict(sorted(self.environment.items())),
            "secrets": {b.env: b.to_dict() for b in sorted(self.secrets, key=lambda b: b.env)},
            "scaling": self.scaling.to_dict(),
            "health_check": self.health_check.to_dict() if self.health_check else None,
            "endpoint": self.endpoint.url if self.endpoint else None,
            "dependencies": sorted(self.dependencies),
        }


@dataclass
class DeploymentPlan:
    """Result of a planning pass. Holds references only, never secret values."""

    fleet: str
    environment: str
    network: NetworkPlan
    services: dict[str, ServiceRuntimeConfig]
    tokens: TokenSet
    triggers: tuple[TriggerRule, ...] = ()
    generated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def service(self, name: str) -> ServiceRuntimeConfig:
        return self.services[name]

    def summary(self) -> dict[str, Any]:
        """Get a summary of the plan."""
        return {
            "fleet": self.fleet,
            "environment": self.environment,
            "services": len(self.services),
            "disabled": sorted(n for n, s in self.services.items() if s.disabled),
            "network_rules": len(self.network.rules),
            "endpoints": sorted(self.network.endpoints),
            "derived_keys": len(self.tokens.tokens),
            "secret_bindings": len(self.tokens.bindings),
            "triggers": [t.name for t in self.triggers],
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": PLAN_FORMAT_VERSION,
            "fleet": self.fleet,
            "environment": self.environment,
            "generated_at": self.generated_at.isoformat(),
            "network": self.network.to_dict(),
            "services": {name: self.services[name].to_dict() for name in sorted(self.services)},
            "triggers": [
                {
                    "name": t.name,
                    "pattern": t.pattern,
                    "services": sorted(t.services),
                    "description": t.description,
                }
                for t in self.triggers
            ],
        }

    def write(self, path: Path) -> Path:
        """Write the plan as JSON for the provisioning engine."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n")
        logger.info("Wrote deployment plan to %s", path)
        return path


# =============================================================================
# Fleet Planner
# =============================================================================


class FleetPlanner:
    """
    Orchestrates a planning pass.

    Usage:
        planner = FleetPlanner(spec)
        plan = planner.plan()
        secrets = planner.binder.export_secrets()  # for the provisioning engine
    """

    def __init__(
        self,
        spec: ServiceFleetSpec,
        settings: PlannerSettings | None = None,
        binder: CredentialBinder | None = None,
    ):
        self.spec = spec
        self.settings = settings or PlannerSettings()
        self.binder = binder or CredentialBinder(
            algorithm=self.settings.credentials.algorithm,
            namespace=spec.namespace,
            leeway_seconds=self.settings.credentials.leeway_seconds,
        )

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _check_triggers(self) -> None:
        known = set(self.spec.service_names)
        for rule in self.spec.triggers:
            for name in sorted(rule.services - known):
                raise InvalidTopology(f"Trigger rule {rule.name!r} affects unknown service", name)

    def _check_secret_refs(self) -> None:
        tokens = {t.name for t in self.spec.tokens}
        if len(tokens) != len(self.spec.tokens):
            raise PlanningError("Duplicate token names in fleet spec")
        known = tokens | set(self.spec.external_secrets) | {VERIFICATION_KEY_REF}
        for descriptor in self.spec.services:
            for secret in descriptor.secrets:
                if secret.ref not in known:
                    raise UnknownSecretReference(
                        f"Service {descriptor.name!r} references undeclared secret",
                        secret.ref,
                    )

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def _derive_tokens(self) -> dict[str, DerivedToken]:
        return self.binder.derive_tokens(
            self.spec.tokens, default_issuer=self.settings.credentials.default_issuer
        )

    def _bind_secrets(
        self, descriptor: ServiceDescriptor, tokens: dict[str, DerivedToken]
    ) -> list[TokenBinding]:
        bindings = []
        for secret in descriptor.secrets:
            if secret.ref in tokens:
                binding = self.binder.bind(descriptor.name, tokens[secret.ref], env=secret.env)
            elif secret.ref == VERIFICATION_KEY_REF:
                binding = self.binder.bind_verification_key(descriptor.name, secret.env)
            else:
                binding = self.binder.bind_external(
                    descriptor.name, secret.env, self.spec.external_secrets[secret.ref]
                )
            bindings.append(binding)
        return bindings

    def _endpoint_environment(self, network: NetworkPlan) -> dict[str, dict[str, str]]:
        env: dict[str, dict[str, str]] = {d.name: {} for d in self.spec.services}
        for edge in self.spec.edges:
            if edge.env_var:
                env[edge.source][edge.env_var] = network.endpoints[edge.target].url + edge.path
        return env

    def _assemble(
        self,
        descriptor: ServiceDescriptor,
        profile: ScalingProfile,
        bindings: list[TokenBinding],
        endpoint_env: dict[str, str],
        network: NetworkPlan,
    ) -> ServiceRuntimeConfig:
        environment = dict(descriptor.environment)
        for key, value in endpoint_env.items():
            if key in environment and environment[key] != value:
                logger.warning(
                    "%s: endpoint binding overrides declared %s", descriptor.name, key
                )
            environment[key] = value

        return ServiceRuntimeConfig(
            name=descriptor.name,
            port=descriptor.port,
            image=descriptor.image,
            environment=environment,
            secrets=bindings,
            scaling=profile,
            health_check=descriptor.health_check,
            endpoint=network.endpoints.get(descriptor.name),
            command=descriptor.command,
            cpu_architecture=descriptor.cpu_architecture.value,
            dependencies=sorted(network.dependencies_of(descriptor.name)),
        )

    def plan(self) -> DeploymentPlan:
        """
        Run the planning pass.

        Raises:
            PlanningError: Any InvalidTopology, InvalidDuration,
                InvalidScalingBounds, UnknownSizeTag or
                UnknownSecretReference; no plan is produced.
        """
        spec = self.spec
        logger.info("Planning fleet %s (%d services)", spec.name, len(spec.services))

        target = self.settings.scaling.target_cpu_utilization
        profiles = {d.name: profile_for(d, target) for d in spec.services}
        network = derive_network_plan(spec)
        self._check_triggers()
        self._check_secret_refs()

        tokens = self._derive_tokens()
        bindings = {d.name: self._bind_secrets(d, tokens) for d in spec.services}
        endpoint_env = self._endpoint_environment(network)

        def assemble(descriptor: ServiceDescriptor) -> ServiceRuntimeConfig:
            return self._assemble(
                descriptor,
                profiles[descriptor.name],
                bindings[descriptor.name],
                endpoint_env[descriptor.name],
                network,
            )

        if self.settings.parallel:
            with ThreadPoolExecutor(max_workers=self.settings.max_workers) as pool:
                configs = list(pool.map(assemble, spec.services))
        else:
            configs = [assemble(d) for d in spec.services]

        for config in configs:
            if config.disabled:
                logger.info("%s is disabled (max_instances=0); rules and secrets still bound", config.name)

        plan = DeploymentPlan(
            fleet=spec.name,
            environment=self.settings.environment,
            network=network,
            services={c.name: c for c in configs},
            tokens=self.binder.token_set(),
            triggers=spec.triggers,
        )
        logger.info(
            "Planned %d services, %d network rules, %d secret bindings",
            len(plan.services),
            len(network.rules),
            len(plan.tokens.bindings),
        )
        return plan


def plan_fleet(spec: ServiceFleetSpec, settings: PlannerSettings | None = None) -> DeploymentPlan:
    """Plan a fleet with a fresh binder over the process root key."""
    return FleetPlanner(spec, settings).plan()

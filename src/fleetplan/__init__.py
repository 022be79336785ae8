"""
Fleetplan - service-fleet planning for a containerized backend.

Derives, from one static fleet definition:
- Network allow rules and service endpoint bindings
- Role-scoped API keys and the secret references each service receives
- Fargate CPU/memory and autoscaling bounds per service
- Coalesced redeploy requests when settings or secrets change

Usage:
    from fleetplan import default_fleet, plan_fleet

    plan = plan_fleet(default_fleet(site_url="https://app.example.com"))
    plan.write(Path("build/plan.json"))
"""

from .config import PlannerSettings, load_fleet_spec, load_settings
from .coordinator import QueueSink, RedeployCoordinator, RedeploySink
from .credentials import CredentialBinder, DerivedToken, SecretRoot, TokenBinding, TokenSet
from .errors import (
    ConfigError,
    FleetError,
    InvalidDuration,
    InvalidScalingBounds,
    InvalidTopology,
    PlanningError,
    TokenVerificationError,
    UnknownSecretReference,
    UnknownSizeTag,
)
from .fleet import default_fleet
from .logging import configure_logging, setup_logging
from .models import (
    ChangeEvent,
    DependencyEdge,
    RedeployRequest,
    SecretRef,
    SecretReference,
    ServiceDescriptor,
    ServiceFleetSpec,
    TokenSpec,
    TriggerRule,
)
from .planner import DeploymentPlan, FleetPlanner, ServiceRuntimeConfig, plan_fleet
from .scaling import ScalingProfile, SizeTag, profile_for, resolve
from .topology import EndpointBinding, NetworkPlan, NetworkRule, TopologyGraph, derive_network_plan

__version__ = "0.1.0"

__all__ = [
    # Models
    "ServiceFleetSpec",
    "ServiceDescriptor",
    "DependencyEdge",
    "SecretRef",
    "SecretReference",
    "TokenSpec",
    "TriggerRule",
    "ChangeEvent",
    "RedeployRequest",
    "default_fleet",
    # Configuration
    "PlannerSettings",
    "load_settings",
    "load_fleet_spec",
    "setup_logging",
    "configure_logging",
    # Topology
    "TopologyGraph",
    "NetworkPlan",
    "NetworkRule",
    "EndpointBinding",
    "derive_network_plan",
    # Credentials
    "SecretRoot",
    "CredentialBinder",
    "DerivedToken",
    "TokenBinding",
    "TokenSet",
    # Scaling
    "SizeTag",
    "ScalingProfile",
    "resolve",
    "profile_for",
    # Redeploy coordination
    "RedeployCoordinator",
    "RedeploySink",
    "QueueSink",
    # Planning
    "FleetPlanner",
    "DeploymentPlan",
    "ServiceRuntimeConfig",
    "plan_fleet",
    # Errors
    "FleetError",
    "ConfigError",
    "PlanningError",
    "InvalidTopology",
    "InvalidDuration",
    "InvalidScalingBounds",
    "UnknownSizeTag",
    "UnknownSecretReference",
    "TokenVerificationError",
]

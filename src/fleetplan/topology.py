"""
Service topology and network policy derivation.

Turns the declared "service X may call service Y on port P" edges into the
smallest set of allow rules (one per source/destination/port triple) and into
one endpoint binding per called service.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .errors import InvalidTopology
from .models import (
    DEFAULT_NAMESPACE,
    DatabaseSpec,
    DependencyEdge,
    LoadBalancerSpec,
    ServiceDescriptor,
    ServiceFleetSpec,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Derived Records
# =============================================================================


@dataclass(frozen=True)
class NetworkRule:
    """Allow source to reach destination on port."""

    source: str
    destination: str
    port: int
    label: str

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.source, self.destination, self.port)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "destination": self.destination,
            "port": self.port,
            "label": self.label,
        }


@dataclass(frozen=True)
class EndpointBinding:
    """Resolvable address of a service, shared by all of its callers."""

    service: str
    host: str
    port: int

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        return {"service": self.service, "host": self.host, "port": self.port, "url": self.url}


@dataclass
class NetworkPlan:
    """Rules plus endpoint bindings. Enumeration order is not significant."""

    rules: frozenset[NetworkRule] = field(default_factory=frozenset)
    endpoints: dict[str, EndpointBinding] = field(default_factory=dict)

    def rules_from(self, source: str) -> set[NetworkRule]:
        return {r for r in self.rules if r.source == source}

    def rules_to(self, destination: str) -> set[NetworkRule]:
        return {r for r in self.rules if r.destination == destination}

    def dependencies_of(self, source: str) -> dict[str, EndpointBinding]:
        """Endpoints of every service the source is allowed to call."""
        return {
            r.destination: self.endpoints[r.destination]
            for r in self.rules_from(source)
            if r.destination in self.endpoints
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization (sorted for stable output)."""
        return {
            "rules": [r.to_dict() for r in sorted(self.rules, key=lambda r: r.key)],
            "endpoints": {name: self.endpoints[name].to_dict() for name in sorted(self.endpoints)},
        }


# =============================================================================
# Topology Graph
# =============================================================================


class TopologyGraph:
    """
    Graph of declared call permissions.

    Usage:
        graph = TopologyGraph(services, edges, namespace="fleet.internal")
        plan = graph.derive()

    The graph performs no reachability or cycle analysis beyond rejecting
    self-edges: mutual calls between distinct services are steady-state
    traffic, not bring-up order.
    """

    def __init__(
        self,
        services: Iterable[ServiceDescriptor],
        edges: Iterable[DependencyEdge],
        namespace: str = DEFAULT_NAMESPACE,
        database: DatabaseSpec | None = None,
        load_balancer: LoadBalancerSpec | None = None,
    ):
        self.services: dict[str, ServiceDescriptor] = {}
        for descriptor in services:
            if descriptor.name in self.services:
                raise InvalidTopology("Duplicate service name", descriptor.name)
            self.services[descriptor.name] = descriptor
        self.edges = list(edges)
        self.namespace = namespace
        self.database = database
        self.load_balancer = load_balancer

    @classmethod
    def from_spec(cls, spec: ServiceFleetSpec) -> TopologyGraph:
        return cls(
            spec.services,
            spec.edges,
            namespace=spec.namespace,
            database=spec.database,
            load_balancer=spec.load_balancer,
        )

    def _check_edge(self, edge: DependencyEdge) -> None:
        if edge.source == edge.target:
            raise InvalidTopology("Service cannot depend on itself", edge.source)
        for name in (edge.source, edge.target):
            if name not in self.services:
                raise InvalidTopology("Edge references unknown service", name)

    def _endpoint(self, name: str) -> EndpointBinding:
        descriptor = self.services[name]
        return EndpointBinding(service=name, host=f"{name}.{self.namespace}", port=descriptor.port)

    def derive(self) -> NetworkPlan:
        """
        Derive the deduplicated rule set and the endpoint bindings.

        Raises:
            InvalidTopology: On a self-edge or an unknown service reference.
        """
        # (source, destination) -> port -> rule
        adjacency: dict[tuple[str, str], dict[int, NetworkRule]] = defaultdict(dict)
        endpoints: dict[str, EndpointBinding] = {}

        def add(source: str, destination: str, port: int, label: str) -> None:
            ports = adjacency[(source, destination)]
            if port not in ports:
                ports[port] = NetworkRule(source, destination, port, label)

        for edge in self.edges:
            self._check_edge(edge)
            add(edge.source, edge.target, edge.port, edge.label or f"{edge.source} to {edge.target}")
            if edge.target not in endpoints:
                endpoints[edge.target] = self._endpoint(edge.target)

        if self.database is not None:
            for descriptor in self.services.values():
                if descriptor.connects_database:
                    add(descriptor.name, self.database.name, self.database.port, "database")

        lb = self.load_balancer
        if lb is not None:
            if lb.target not in self.services:
                raise InvalidTopology("Load balancer targets unknown service", lb.target)
            entry = self.services[lb.target]
            add(lb.origin, lb.name, lb.listener_port, lb.origin_label)
            add(lb.name, entry.name, entry.port, "load balancer")
            if lb.health_check_port is not None:
                add(lb.name, entry.name, lb.health_check_port, "ALB healthcheck")

        rules = frozenset(rule for ports in adjacency.values() for rule in ports.values())
        logger.debug(
            "Derived %d network rules and %d endpoint bindings from %d edges",
            len(rules),
            len(endpoints),
            len(self.edges),
        )
        return NetworkPlan(rules=rules, endpoints=endpoints)


def derive_network_plan(spec: ServiceFleetSpec) -> NetworkPlan:
    """Derive the network plan for a fleet spec."""
    return TopologyGraph.from_spec(spec).derive()

"""
Unit tests for topology and network policy derivation.
"""

from __future__ import annotations

import pytest

from fleetplan.errors import InvalidTopology
from fleetplan.models import DatabaseSpec, DependencyEdge, LoadBalancerSpec, ServiceDescriptor
from fleetplan.topology import NetworkRule, TopologyGraph, derive_network_plan


def _services(*names_ports: tuple[str, int], **kwargs) -> list[ServiceDescriptor]:
    return [ServiceDescriptor(name=name, port=port, **kwargs) for name, port in names_ports]


# =============================================================================
# Rule Derivation
# =============================================================================


class TestDerive:
    """Tests for TopologyGraph.derive()."""

    def test_gateway_calls_auth_and_rest(self, small_spec) -> None:
        """Two edges yield two rules and an endpoint for each callee."""
        plan = derive_network_plan(small_spec)

        assert {r.key for r in plan.rules} == {
            ("gateway", "auth", 9999),
            ("gateway", "rest", 3000),
        }
        assert set(plan.endpoints) == {"auth", "rest"}
        assert plan.endpoints["auth"].host == "auth.test.internal"
        assert plan.endpoints["auth"].url == "http://auth.test.internal:9999"
        assert set(plan.dependencies_of("gateway")) == {"auth", "rest"}

    def test_duplicate_edges_collapse(self) -> None:
        """Edges on the same (source, target, port) produce one rule."""
        graph = TopologyGraph(
            _services(("a", 80), ("b", 81)),
            [
                DependencyEdge(source="a", target="b", port=81, label="first"),
                DependencyEdge(source="a", target="b", port=81, label="second"),
            ],
        )

        plan = graph.derive()

        assert len(plan.rules) == 1
        assert next(iter(plan.rules)).label == "first"

    def test_distinct_ports_kept(self) -> None:
        """Same pair on two ports is two rules."""
        graph = TopologyGraph(
            _services(("a", 80), ("b", 81)),
            [
                DependencyEdge(source="a", target="b", port=81),
                DependencyEdge(source="a", target="b", port=82),
            ],
        )

        assert {r.port for r in graph.derive().rules} == {81, 82}

    def test_default_label(self) -> None:
        """Unlabelled edges get a source-to-target label."""
        graph = TopologyGraph(_services(("a", 80), ("b", 81)), [DependencyEdge(source="a", target="b", port=81)])

        assert next(iter(graph.derive().rules)).label == "a to b"

    def test_mutual_calls_allowed(self) -> None:
        """Cycles between distinct services are not rejected."""
        graph = TopologyGraph(
            _services(("a", 80), ("b", 81)),
            [
                DependencyEdge(source="a", target="b", port=81),
                DependencyEdge(source="b", target="a", port=80),
            ],
        )

        plan = graph.derive()

        assert len(plan.rules) == 2
        assert set(plan.endpoints) == {"a", "b"}

    def test_edge_order_does_not_matter(self) -> None:
        """Rule sets compare equal regardless of declaration order."""
        services = _services(("a", 80), ("b", 81), ("c", 82))
        edges = [
            DependencyEdge(source="a", target="b", port=81),
            DependencyEdge(source="a", target="c", port=82),
            DependencyEdge(source="b", target="c", port=82),
        ]

        forward = TopologyGraph(services, edges).derive()
        backward = TopologyGraph(services, list(reversed(edges))).derive()

        assert forward.rules == backward.rules
        assert forward.to_dict() == backward.to_dict()

    def test_uncalled_service_has_no_endpoint(self) -> None:
        """Only services that are called get an endpoint binding."""
        graph = TopologyGraph(_services(("a", 80), ("b", 81)), [DependencyEdge(source="a", target="b", port=81)])

        assert "a" not in graph.derive().endpoints


class TestInvalidTopology:
    """Tests for rejected graphs."""

    def test_self_edge(self) -> None:
        """A service depending on itself is rejected."""
        graph = TopologyGraph(_services(("a", 80)), [DependencyEdge(source="a", target="a", port=80)])

        with pytest.raises(InvalidTopology) as exc_info:
            graph.derive()

        assert exc_info.value.identifier == "a"

    def test_unknown_target(self) -> None:
        """An edge to an undeclared service is rejected."""
        graph = TopologyGraph(_services(("a", 80)), [DependencyEdge(source="a", target="ghost", port=80)])

        with pytest.raises(InvalidTopology, match="ghost"):
            graph.derive()

    def test_unknown_source(self) -> None:
        """An edge from an undeclared service is rejected."""
        graph = TopologyGraph(_services(("a", 80)), [DependencyEdge(source="ghost", target="a", port=80)])

        with pytest.raises(InvalidTopology):
            graph.derive()

    def test_duplicate_service_name(self) -> None:
        """Two descriptors with the same name are rejected."""
        with pytest.raises(InvalidTopology, match="Duplicate"):
            TopologyGraph(_services(("a", 80), ("a", 81)), [])


# =============================================================================
# Shared Resources
# =============================================================================


class TestSharedResources:
    """Tests for database and load balancer rules."""

    def test_database_rules(self) -> None:
        """Only database-connected services may reach the database."""
        services = [
            ServiceDescriptor(name="rest", port=3000, connects_database=True),
            ServiceDescriptor(name="imgproxy", port=5001),
        ]
        graph = TopologyGraph(services, [], database=DatabaseSpec())

        plan = graph.derive()

        assert plan.rules == frozenset({NetworkRule("rest", "database", 5432, "database")})
        assert "database" not in plan.endpoints

    def test_load_balancer_rules(self) -> None:
        """The origin reaches the load balancer, which reaches the entry service."""
        graph = TopologyGraph(
            _services(("gateway", 8000)),
            [],
            load_balancer=LoadBalancerSpec(target="gateway", health_check_port=8100),
        )

        keys = {r.key for r in graph.derive().rules}

        assert keys == {
            ("cdn", "load-balancer", 80),
            ("load-balancer", "gateway", 8000),
            ("load-balancer", "gateway", 8100),
        }

    def test_load_balancer_unknown_target(self) -> None:
        """A load balancer in front of an undeclared service is rejected."""
        graph = TopologyGraph(_services(("a", 80)), [], load_balancer=LoadBalancerSpec(target="gateway"))

        with pytest.raises(InvalidTopology):
            graph.derive()

"""Unit tests for dependency_resolver module.

Tests cover:
- Deterministic topological ordering with (priority, name) tie-break
- Unknown dependencies
- Cycle detection reporting a concrete closed walk
- Dependencies pointing at a later phase
- Reverse order and dependents queries
- Markdown graph rendering
"""

from datetime import datetime

import pytest
from fakes import make_service, services_map

from swarmlab.dependency_resolver import (
    CircularDependencyError,
    DependencyError,
    DependencyResolver,
    PhaseOrderError,
    UnknownDependencyError,
)
from swarmlab.models import ServicePhase


class TestResolve:
    """Test startup ordering."""

    def test_linear_chain(self):
        """a <- b <- c resolves to [a, b, c]."""
        services = services_map(
            make_service("a"),
            make_service("b", ("a",)),
            make_service("c", ("b",)),
        )

        assert DependencyResolver.resolve(services) == ["a", "b", "c"]

    def test_priority_breaks_ties_within_round(self):
        """Lower startup priority starts earlier within a round."""
        services = services_map(
            make_service("zeta", priority=1),
            make_service("alpha", priority=20),
            make_service("mid", priority=10),
        )

        assert DependencyResolver.resolve(services) == ["zeta", "mid", "alpha"]

    def test_name_breaks_priority_ties(self):
        """Equal priorities are ordered by name."""
        services = services_map(make_service("b"), make_service("c"), make_service("a"))

        assert DependencyResolver.resolve(services) == ["a", "b", "c"]

    def test_priority_never_overrides_dependencies(self):
        """A low-priority dependent still starts after its dependency."""
        services = services_map(
            make_service("db", priority=50),
            make_service("app", ("db",), priority=1),
        )

        assert DependencyResolver.resolve(services) == ["db", "app"]

    def test_order_is_topologically_valid(self, sample_fleet):
        """Every service appears after all of its dependencies."""
        order = DependencyResolver.resolve(sample_fleet.services)
        position = {name: index for index, name in enumerate(order)}

        assert sorted(order) == sorted(sample_fleet.services)
        for name, service in sample_fleet.services.items():
            for dep in service.depends_on:
                assert position[dep] < position[name]

    def test_resolve_is_deterministic_across_insertion_order(self, sample_fleet):
        """Identical services in a different dict order resolve identically."""
        reordered = dict(reversed(list(sample_fleet.services.items())))

        assert DependencyResolver.resolve(reordered) == DependencyResolver.resolve(
            sample_fleet.services
        )

    def test_waves_group_independent_services(self, sample_fleet):
        """Services whose dependencies are resolved share a wave."""
        waves = DependencyResolver.waves(sample_fleet.services)

        assert waves == [["traefik"], ["redis", "grafana", "postgres"], ["nextcloud"]]

    def test_empty_services(self):
        assert DependencyResolver.resolve({}) == []


class TestErrors:
    """Test resolver failure modes."""

    def test_unknown_dependency(self):
        """A dependency on an undeclared service is rejected."""
        services = services_map(make_service("app", ("ghost",)))

        with pytest.raises(UnknownDependencyError) as exc_info:
            DependencyResolver.resolve(services)

        assert exc_info.value.service == "app"
        assert exc_info.value.dependency == "ghost"

    def test_two_node_cycle(self):
        """x <-> y reports the closed walk."""
        services = services_map(make_service("x", ("y",)), make_service("y", ("x",)))

        with pytest.raises(CircularDependencyError) as exc_info:
            DependencyResolver.resolve(services)

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"x", "y"}
        assert "x -> y -> x" in str(exc_info.value)

    def test_self_dependency_is_a_cycle(self):
        services = services_map(make_service("loop", ("loop",)))

        with pytest.raises(CircularDependencyError) as exc_info:
            DependencyResolver.resolve(services)

        assert exc_info.value.cycle == ["loop", "loop"]

    def test_cycle_behind_acyclic_prefix(self):
        """Only the cyclic part of the path is reported."""
        services = services_map(
            make_service("entry", ("b",)),
            make_service("b", ("c",)),
            make_service("c", ("d",)),
            make_service("d", ("b",)),
        )

        cycle = DependencyResolver.find_cycle(services)

        assert cycle == ["b", "c", "d", "b"]

    def test_every_cycle_edge_exists(self):
        """Consecutive cycle members are real dependency edges."""
        services = services_map(
            make_service("a", ("b",)),
            make_service("b", ("c",)),
            make_service("c", ("a",)),
            make_service("d"),
        )

        cycle = DependencyResolver.find_cycle(services)

        assert cycle is not None
        for current, nxt in zip(cycle, cycle[1:]):
            assert nxt in services[current].depends_on

    def test_acyclic_graph_has_no_cycle(self, sample_fleet):
        assert DependencyResolver.find_cycle(sample_fleet.services) is None

    def test_dependency_on_later_phase(self):
        """A phase runs before the phases after it, so it cannot wait on them."""
        services = services_map(
            make_service("proxy", ("db",), phase=ServicePhase.INFRASTRUCTURE),
            make_service("db", phase=ServicePhase.APPLICATIONS),
        )

        with pytest.raises(PhaseOrderError) as exc_info:
            DependencyResolver.check_phases(services)

        assert exc_info.value.service == "proxy"
        assert exc_info.value.dependency == "db"
        assert "later phase applications" in str(exc_info.value)
        assert isinstance(exc_info.value, DependencyError)

    def test_same_or_earlier_phase_is_allowed(self, sample_fleet):
        services = services_map(
            make_service("a", phase=ServicePhase.CORE),
            make_service("b", ("a",), phase=ServicePhase.CORE),
            make_service("c", ("a", "ghost"), phase=ServicePhase.MONITORING),
        )

        DependencyResolver.check_phases(services)
        DependencyResolver.check_phases(sample_fleet.services)


class TestQueries:
    """Test reverse order, dependents and graph rendering."""

    def test_reverse_order(self):
        assert DependencyResolver.reverse_order(["a", "b", "c"]) == ["c", "b", "a"]

    def test_dependents(self, sample_fleet):
        dependents = DependencyResolver.dependents(sample_fleet.services, "traefik")

        assert sorted(dependents) == ["grafana", "postgres", "redis"]

    def test_dependents_of_leaf(self, sample_fleet):
        assert DependencyResolver.dependents(sample_fleet.services, "nextcloud") == []

    def test_render_dependency_graph(self, sample_fleet):
        markdown = DependencyResolver.render_dependency_graph(
            sample_fleet.services, generated_at=datetime(2024, 1, 2, 3, 4, 5)
        )

        assert "# Service Dependency Graph" in markdown
        assert "Generated: 2024-01-02T03:04:05" in markdown
        assert "| nextcloud | postgres, redis | none | 10 |" in markdown
        assert "1. traefik (priority: 1)" in markdown

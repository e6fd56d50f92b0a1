"""Service dependency resolution module.

This module turns service declarations into a deterministic startup order:
- Referential integrity checks (every dependency must be declared)
- Cycle detection that reports the offending chain
- Topological sort in rounds ("waves"), tie-broken by (priority, name)
- Reverse order for shutdown and reverse-dependency queries
- Markdown dependency graph report

Philosophy:
- Single responsibility: Ordering only, no side effects
- Deterministic: identical input always yields identical output
- Fail fast: any ordering error aborts before cluster actions run
"""

import logging
from collections.abc import Mapping
from datetime import datetime

from swarmlab.models import ServicePhase, ServiceSpec

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Base class for dependency resolution failures."""

    pass


class UnknownDependencyError(DependencyError):
    """Raised when a service depends on an undeclared service."""

    def __init__(self, service: str, dependency: str):
        self.service = service
        self.dependency = dependency
        super().__init__(f"Service '{service}' depends on non-existent service '{dependency}'")


class CircularDependencyError(DependencyError):
    """Raised when the dependency graph contains a cycle.

    Attributes:
        cycle: Closed walk through the graph, first element repeated last
            (e.g. ['x', 'y', 'x'])
    """

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class UnresolvableDependenciesError(DependencyError):
    """Raised when a sort round makes no progress without a detected cycle."""

    def __init__(self, remaining: list[str]):
        self.remaining = remaining
        super().__init__(f"Unresolvable dependencies for services: {', '.join(remaining)}")


class PhaseOrderError(DependencyError):
    """Raised when a service depends on a service of a later phase.

    Phases deploy one after another, so such an edge could never be honored.
    """

    def __init__(self, service: str, phase: str, dependency: str, dependency_phase: str):
        self.service = service
        self.dependency = dependency
        super().__init__(
            f"Service '{service}' ({phase}) depends on '{dependency}' "
            f"from the later phase {dependency_phase}"
        )


class DependencyResolver:
    """Resolve service startup and shutdown ordering.

    All methods are static; the resolver owns no state.

    Example:
        >>> order = DependencyResolver.resolve(fleet.services)
        >>> DependencyResolver.reverse_order(order)
    """

    @staticmethod
    def validate(services: Mapping[str, ServiceSpec]) -> None:
        """Check that every dependency names a declared service.

        Raises:
            UnknownDependencyError: On the first dangling reference
        """
        for name in sorted(services):
            for dep in sorted(services[name].depends_on):
                if dep not in services:
                    raise UnknownDependencyError(name, dep)

    @staticmethod
    def check_phases(services: Mapping[str, ServiceSpec]) -> None:
        """Check that no service depends on a service deployed in a later phase.

        Undeclared dependencies are left to `validate`.

        Raises:
            PhaseOrderError: On the first dependency pointing forward
        """
        rank = {phase: index for index, phase in enumerate(ServicePhase.ordered())}
        for name in sorted(services):
            spec = services[name]
            for dep in sorted(spec.depends_on):
                dep_spec = services.get(dep)
                if dep_spec is not None and rank[dep_spec.phase] > rank[spec.phase]:
                    raise PhaseOrderError(name, spec.phase.value, dep, dep_spec.phase.value)

    @staticmethod
    def find_cycle(services: Mapping[str, ServiceSpec]) -> list[str] | None:
        """Find one dependency cycle, if any.

        Depth-first traversal keeping the current path; a dependency that is
        already on the path closes a cycle. Nodes fully explored without
        finding a cycle are not revisited.

        Returns:
            Closed walk (first node repeated at the end) or None
        """
        finished: set[str] = set()

        def visit(name: str, path: list[str], on_path: set[str]) -> list[str] | None:
            path.append(name)
            on_path.add(name)
            for dep in sorted(services[name].depends_on):
                if dep not in services or dep in finished:
                    continue
                if dep in on_path:
                    return path[path.index(dep) :] + [dep]
                cycle = visit(dep, path, on_path)
                if cycle:
                    return cycle
            path.pop()
            on_path.discard(name)
            finished.add(name)
            return None

        for name in sorted(services):
            if name in finished:
                continue
            cycle = visit(name, [], set())
            if cycle:
                return cycle
        return None

    @classmethod
    def waves(cls, services: Mapping[str, ServiceSpec]) -> list[list[str]]:
        """Group services into rounds whose dependencies are all resolved.

        Each round is sorted by (startup_priority, name).

        Raises:
            UnknownDependencyError: Dangling dependency
            CircularDependencyError: Cycle in the graph
            UnresolvableDependenciesError: No progress without a cycle
        """
        cls.validate(services)

        cycle = cls.find_cycle(services)
        if cycle:
            raise CircularDependencyError(cycle)

        resolved: set[str] = set()
        remaining = set(services)
        rounds: list[list[str]] = []

        while remaining:
            ready = [
                name for name in remaining if services[name].depends_on <= resolved
            ]
            if not ready:
                raise UnresolvableDependenciesError(sorted(remaining))

            ready.sort(key=lambda n: (services[n].startup_priority, n))
            rounds.append(ready)
            resolved.update(ready)
            remaining.difference_update(ready)
            logger.debug(f"Resolved wave {len(rounds)}: {', '.join(ready)}")

        return rounds

    @classmethod
    def resolve(cls, services: Mapping[str, ServiceSpec]) -> list[str]:
        """Return every service in dependency-respecting startup order."""
        order = [name for wave in cls.waves(services) for name in wave]
        logger.debug(f"Startup order: {' -> '.join(order)}")
        return order

    @staticmethod
    def reverse_order(order: list[str]) -> list[str]:
        """Shutdown order: the startup order reversed."""
        return list(reversed(order))

    @staticmethod
    def dependents(services: Mapping[str, ServiceSpec], name: str) -> list[str]:
        """Services that directly depend on `name`."""
        return [svc for svc, spec in services.items() if name in spec.depends_on]

    @classmethod
    def render_dependency_graph(
        cls, services: Mapping[str, ServiceSpec], generated_at: datetime | None = None
    ) -> str:
        """Render the dependency graph and startup order as Markdown.

        Args:
            services: Service declarations
            generated_at: Timestamp for the header (default: now)

        Returns:
            Markdown document

        Raises:
            DependencyError: If the graph cannot be ordered
        """
        order = cls.resolve(services)
        timestamp = (generated_at or datetime.now()).isoformat(timespec="seconds")

        lines = [
            "# Service Dependency Graph",
            "",
            f"Generated: {timestamp}",
            "",
            "## Services Overview",
            "",
            "| Service | Dependencies | Dependents | Priority |",
            "|---------|--------------|------------|----------|",
        ]
        for name in sorted(services):
            spec = services[name]
            deps = ", ".join(sorted(spec.depends_on)) or "none"
            dependents = ", ".join(sorted(cls.dependents(services, name))) or "none"
            lines.append(f"| {name} | {deps} | {dependents} | {spec.startup_priority} |")

        lines.extend(["", "## Startup Order", "", "```"])
        for position, name in enumerate(order, 1):
            lines.append(
                f"{position}. {name} (priority: {services[name].startup_priority})"
            )
        lines.extend(["```", ""])
        return "\n".join(lines)


__all__ = [
    "CircularDependencyError",
    "DependencyError",
    "DependencyResolver",
    "PhaseOrderError",
    "UnknownDependencyError",
    "UnresolvableDependenciesError",
]

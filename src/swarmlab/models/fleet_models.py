"""
Fleet Data Models

Typed representation of the declared fleet (machines + services) and of the
observed swarm state.

Philosophy:
- Single responsibility: Fleet data structures only
- Zero dependencies: No imports from other swarmlab modules
- Parsed once: later logic never re-queries the fleet document
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

DEFAULT_STARTUP_PRIORITY = 10

# Identity labels added to every machine by the fleet loader
MACHINE_ID_LABEL = "machine.id"
MACHINE_ROLE_LABEL = "machine.role"


class ServicePhase(str, Enum):
    """Deployment phase a service belongs to, in execution order."""

    INFRASTRUCTURE = "infrastructure"
    CORE = "core"
    APPLICATIONS = "applications"
    MONITORING = "monitoring"

    @classmethod
    def ordered(cls) -> list["ServicePhase"]:
        """Phases in the order the driver runs them."""
        return [cls.INFRASTRUCTURE, cls.CORE, cls.APPLICATIONS, cls.MONITORING]


class MachineRole(str, Enum):
    """Swarm role of a fleet machine."""

    MANAGER = "manager"
    WORKER = "worker"


class NodeStatus(str, Enum):
    """Node state as reported by the swarm."""

    READY = "ready"
    DOWN = "down"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "NodeStatus":
        """Map a docker status string ("Ready", "Down", ...) to the enum."""
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


def parse_label(label: str) -> tuple[str, str]:
    """Split a 'key=value' label on the first '='.

    Raises:
        ValueError: If the label has no '=' or an empty key
    """
    if "=" not in label:
        raise ValueError(f"Invalid label '{label}'. Expected 'key=value'")
    key, value = label.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError(f"Invalid label '{label}'. Key cannot be empty")
    return key, value.strip()


@dataclass(frozen=True)
class HealthCheckSpec:
    """HTTP health check for a service.

    Attributes:
        enabled: Whether the check runs at all
        endpoint: Absolute URL probed by the health gate
        timeout_seconds: Per-probe request timeout
    """

    enabled: bool = False
    endpoint: str = "/health"
    timeout_seconds: int = 30


@dataclass(frozen=True)
class ServiceSpec:
    """One deployable unit (a swarm stack).

    Placement (`placement`, which machine) and ordering (`depends_on` and
    `startup_priority`, when) are independent fields.
    """

    name: str
    depends_on: frozenset[str] = frozenset()
    startup_priority: int = DEFAULT_STARTUP_PRIORITY
    health_check: HealthCheckSpec = field(default_factory=HealthCheckSpec)
    phase: ServicePhase = ServicePhase.APPLICATIONS
    stack_file: Path | None = None
    placement: str | None = None
    domain: str | None = None
    port: int | None = None

    @property
    def artifact(self) -> Path | str:
        """Deployable artifact handed to validate/apply."""
        return self.stack_file if self.stack_file is not None else self.name


@dataclass(frozen=True)
class MachineSpec:
    """One fleet member as declared in the fleet file."""

    id: str
    host: str
    ssh_user: str
    role: MachineRole = MachineRole.WORKER
    labels: frozenset[str] = frozenset()

    @property
    def is_manager(self) -> bool:
        return self.role == MachineRole.MANAGER

    def label_map(self) -> dict[str, str]:
        """Desired labels as a key -> value mapping."""
        return dict(parse_label(label) for label in self.labels)


@dataclass(frozen=True)
class ObservedNode:
    """Node fact pulled from the live swarm. Never cached across runs."""

    hostname: str
    role: MachineRole
    current_labels: frozenset[str] = frozenset()
    status: NodeStatus = NodeStatus.UNKNOWN
    node_id: str = ""
    address: str = ""

    @property
    def ref(self) -> str:
        """Identifier used to address the node in swarm commands."""
        return self.node_id or self.hostname

    def label_map(self) -> dict[str, str]:
        result = {}
        for label in self.current_labels:
            key, _, value = label.partition("=")
            result[key] = value
        return result


@dataclass
class FleetSpec:
    """The full declared fleet."""

    machines: dict[str, MachineSpec] = field(default_factory=dict)
    services: dict[str, ServiceSpec] = field(default_factory=dict)
    source: Path | None = None


__all__ = [
    "DEFAULT_STARTUP_PRIORITY",
    "FleetSpec",
    "MACHINE_ID_LABEL",
    "MACHINE_ROLE_LABEL",
    "HealthCheckSpec",
    "MachineRole",
    "MachineSpec",
    "NodeStatus",
    "ObservedNode",
    "ServicePhase",
    "ServiceSpec",
    "parse_label",
]

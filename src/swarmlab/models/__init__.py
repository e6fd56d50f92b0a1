"""
swarmlab Data Models

Shared dataclasses and enums to avoid circular dependencies.

Philosophy:
- Zero dependencies on other swarmlab modules
- Self-contained data definitions
- Built once from the fleet file, immutable afterwards
"""

from .deployment_models import (
    AttemptRecord,
    DeployFailure,
    DeploymentUnit,
    DeployOutcome,
)
from .fleet_models import (
    DEFAULT_STARTUP_PRIORITY,
    MACHINE_ID_LABEL,
    MACHINE_ROLE_LABEL,
    FleetSpec,
    HealthCheckSpec,
    MachineRole,
    MachineSpec,
    NodeStatus,
    ObservedNode,
    ServicePhase,
    ServiceSpec,
    parse_label,
)

__all__ = [
    "DEFAULT_STARTUP_PRIORITY",
    "MACHINE_ID_LABEL",
    "MACHINE_ROLE_LABEL",
    "AttemptRecord",
    "DeployFailure",
    "DeployOutcome",
    "DeploymentUnit",
    "FleetSpec",
    "HealthCheckSpec",
    "MachineRole",
    "MachineSpec",
    "NodeStatus",
    "ObservedNode",
    "ServicePhase",
    "ServiceSpec",
    "parse_label",
]

"""Fleet deployment orchestration module.

Composes the resolver, reconciler, executor and health gate into a run:
- Resolve the service graph and check phase order (fail-fast, before any
  cluster action)
- Reconcile machines and ensure the overlay network (unless skipped)
- Deploy phase by phase: infrastructure -> core -> applications -> monitoring
- Final verification and advisory health wait per phase
- Teardown: stacks in reverse order, overlay networks, stack volumes on
  every machine, then node removal

Philosophy:
- Thin: retries, ordering and reconciliation live in their own modules
- Clear contracts: DeployOptions in, RunReport out
- Exit status distinguishes healthy, degraded and fatal runs
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from swarmlab.cluster_actions import ClusterActionError, ClusterActions
from swarmlab.cluster_reconciler import (
    ClusterReconciler,
    MachineOutcome,
    ManagerBootstrapError,
    ReconcilePlan,
    ReconcileReport,
)
from swarmlab.dependency_resolver import DependencyError, DependencyResolver
from swarmlab.deployment_executor import DeploymentExecutor, DeployRequest, StackHealth
from swarmlab.health_gate import HealthGate
from swarmlab.models import (
    DeploymentUnit,
    FleetSpec,
    MachineSpec,
    ServicePhase,
    ServiceSpec,
)
from swarmlab.remote_exec import RemoteExecError

logger = logging.getLogger(__name__)


class RunStatus(int, Enum):
    """Overall run result, used as the process exit code."""

    HEALTHY = 0
    DEGRADED = 1
    FATAL = 2


@dataclass
class DeployOptions:
    """Operator overrides for a deploy run."""

    skip_infrastructure: bool = False
    only: frozenset[str] = frozenset()
    exclude: frozenset[str] = frozenset()
    max_parallel: int = 4
    health_budget: float = 300.0


@dataclass
class PhaseReport:
    """Results of one deployment phase."""

    phase: ServicePhase
    units: list[DeploymentUnit] = field(default_factory=list)
    health: list[StackHealth] = field(default_factory=list)
    readiness: dict[str, bool] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return all(u.succeeded for u in self.units) and all(h.healthy for h in self.health)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "stacks": [u.to_dict() for u in self.units],
            "health": [h.to_dict() for h in self.health],
            "readiness": dict(self.readiness),
        }


@dataclass
class RunReport:
    """Structured result of a deploy or teardown run."""

    phases: list[PhaseReport] = field(default_factory=list)
    machines: ReconcileReport | None = None
    fatal_error: str | None = None
    removed_stacks: list[str] = field(default_factory=list)
    failed_removals: list[str] = field(default_factory=list)
    removed_networks: list[str] = field(default_factory=list)
    # "machine:volume" entries
    removed_volumes: list[str] = field(default_factory=list)
    # Cleanup problems that do not degrade the run
    warnings: list[str] = field(default_factory=list)

    @property
    def status(self) -> RunStatus:
        if self.fatal_error:
            return RunStatus.FATAL
        if not all(phase.healthy for phase in self.phases):
            return RunStatus.DEGRADED
        if self.machines is not None and not self.machines.all_succeeded:
            return RunStatus.DEGRADED
        if self.failed_removals:
            return RunStatus.DEGRADED
        return RunStatus.HEALTHY

    @property
    def units(self) -> list[DeploymentUnit]:
        return [unit for phase in self.phases for unit in phase.units]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.name.lower(),
            "fatal_error": self.fatal_error,
            "machines": self.machines.to_dict() if self.machines else None,
            "phases": [phase.to_dict() for phase in self.phases],
            "removed_stacks": list(self.removed_stacks),
            "failed_removals": list(self.failed_removals),
            "removed_networks": list(self.removed_networks),
            "removed_volumes": list(self.removed_volumes),
            "warnings": list(self.warnings),
        }


@dataclass
class TeardownPlan:
    """What a teardown would remove (dry run)."""

    stacks: list[str] = field(default_factory=list)
    networks: list[str] = field(default_factory=list)
    # machine id -> volume names
    volumes: dict[str, list[str]] = field(default_factory=dict)
    remove_nodes: bool = False
    warnings: list[str] = field(default_factory=list)


class DeploymentOrchestrator:
    """Run a full fleet deployment or teardown.

    Example:
        >>> orchestrator = DeploymentOrchestrator(actions, executor, reconciler, HealthGate())
        >>> report = orchestrator.deploy(fleet, DeployOptions(skip_infrastructure=True))
        >>> sys.exit(report.status.value)
    """

    def __init__(
        self,
        actions: ClusterActions,
        executor: DeploymentExecutor,
        reconciler: ClusterReconciler,
        health_gate: HealthGate,
        network_name: str = "traefik-public",
    ):
        self.actions = actions
        self.executor = executor
        self.reconciler = reconciler
        self.health_gate = health_gate
        self.network_name = network_name

    @staticmethod
    def select_services(
        fleet: FleetSpec, order: list[str], options: DeployOptions
    ) -> list[ServiceSpec]:
        """Services to deploy, in resolved order, after include/exclude.

        Raises:
            ValueError: If `only` or `exclude` name unknown services
        """
        unknown = sorted((options.only | options.exclude) - set(fleet.services))
        if unknown:
            raise ValueError(f"Unknown service(s): {', '.join(unknown)}")

        selected = []
        for name in order:
            if options.only and name not in options.only:
                continue
            if name in options.exclude:
                continue
            service = fleet.services[name]
            if options.skip_infrastructure and service.phase == ServicePhase.INFRASTRUCTURE:
                continue
            selected.append(service)
        return selected

    def deploy(self, fleet: FleetSpec, options: DeployOptions | None = None) -> RunReport:
        """Deploy the fleet.

        Args:
            fleet: Declared fleet
            options: Operator overrides

        Returns:
            RunReport; fatal conditions are recorded, not raised
        """
        options = options or DeployOptions()
        report = RunReport()

        try:
            order = DependencyResolver.resolve(fleet.services)
            DependencyResolver.check_phases(fleet.services)
            selected = self.select_services(fleet, order, options)
        except (DependencyError, ValueError) as e:
            report.fatal_error = str(e)
            logger.error(f"Cannot order services: {e}")
            return report

        logger.info(f"Deployment order: {' -> '.join(s.name for s in selected) or '(none)'}")

        if options.skip_infrastructure:
            logger.info("Skipping infrastructure (cluster reconciliation and network)")
        else:
            try:
                report.machines = self.reconciler.reconcile(list(fleet.machines.values()))
            except (ManagerBootstrapError, ClusterActionError) as e:
                report.fatal_error = str(e)
                logger.error(f"Fatal: {e}")
                return report

            try:
                if self.actions.ensure_network(self.network_name):
                    logger.info(f"Created overlay network: {self.network_name}")
            except ClusterActionError as e:
                report.fatal_error = f"Failed to create network {self.network_name}: {e}"
                logger.error(f"Fatal: {report.fatal_error}")
                return report

        selected_names = {s.name for s in selected}
        for phase in ServicePhase.ordered():
            services = [s for s in selected if s.phase == phase]
            if not services:
                continue
            report.phases.append(
                self._run_phase(phase, services, options, fleet, selected_names)
            )

        logger.info(f"Deployment finished: {report.status.name.lower()}")
        return report

    def _run_phase(
        self,
        phase: ServicePhase,
        services: list[ServiceSpec],
        options: DeployOptions,
        fleet: FleetSpec,
        selected_names: set[str],
    ) -> PhaseReport:
        logger.info(f"Phase {phase.value}: {', '.join(s.name for s in services)}")
        readiness: dict[str, bool] = {}

        # Dependencies outside this run (--only, --skip-infra) must already be live
        for service in services:
            readiness.update(
                self.health_gate.await_dependencies(
                    service, fleet.services, options.health_budget, skip=selected_names
                )
            )

        requests = [
            DeployRequest(
                stack_name=service.name,
                artifact=service.artifact,
                depends_on=service.depends_on,
                health_check=service.health_check,
            )
            for service in services
        ]
        units = self.executor.deploy_all(requests, options.max_parallel)
        deployed = [unit.stack_name for unit in units if unit.succeeded]
        # A failed deploy may still have left replicas running
        phase_report = PhaseReport(
            phase=phase,
            units=units,
            health=self.executor.verify_stacks([unit.stack_name for unit in units]),
            readiness=readiness,
        )

        # Advisory wait so the next phase starts against live services
        for service in services:
            if service.name in deployed and service.health_check.enabled:
                phase_report.readiness[service.name] = self.health_gate.await_healthy(
                    service.health_check, options.health_budget
                )
        return phase_report

    def _teardown_order(self, fleet: FleetSpec, stacks: list[str] | None) -> list[str]:
        """Stacks to remove, in reverse dependency order.

        Raises:
            DependencyError: If the service graph cannot be ordered
            ValueError: If `stacks` names unknown services
        """
        order = DependencyResolver.reverse_order(DependencyResolver.resolve(fleet.services))
        if stacks is None:
            return order
        unknown = sorted(set(stacks) - set(fleet.services))
        if unknown:
            raise ValueError(f"Unknown service(s): {', '.join(unknown)}")
        return [name for name in order if name in stacks]

    def plan_teardown(
        self,
        fleet: FleetSpec,
        remove_nodes: bool = True,
        stacks: list[str] | None = None,
    ) -> TeardownPlan:
        """List what a teardown would remove without changing anything.

        Raises:
            DependencyError: If the service graph cannot be ordered
            ValueError: If `stacks` names unknown services
        """
        order = self._teardown_order(fleet, stacks)
        plan = TeardownPlan(stacks=order, remove_nodes=remove_nodes and stacks is None)

        if stacks is None:
            try:
                plan.networks = self.actions.list_overlay_networks()
            except ClusterActionError as e:
                plan.warnings.append(f"Could not list overlay networks: {e}")

        for machine in fleet.machines.values():
            volumes, warnings = self._find_volumes(machine, order)
            plan.warnings.extend(warnings)
            if volumes:
                plan.volumes[machine.id] = volumes
        return plan

    def teardown(
        self,
        fleet: FleetSpec,
        remove_nodes: bool = True,
        stacks: list[str] | None = None,
    ) -> RunReport:
        """Remove stacks in reverse dependency order, then what they leave behind.

        A full teardown (no `stacks`) also removes every overlay network but
        ingress and dismantles the swarm. Stack volumes are removed on every
        machine in both cases.

        Args:
            fleet: Declared fleet
            remove_nodes: Also drain, unjoin and remove every other worker
            stacks: Restrict removal to these stacks

        Returns:
            RunReport with removed stacks, networks, volumes and per-node outcomes
        """
        report = RunReport()
        try:
            order = self._teardown_order(fleet, stacks)
        except (DependencyError, ValueError) as e:
            report.fatal_error = str(e)
            logger.error(f"Cannot order services: {e}")
            return report

        for name in order:
            try:
                exists = self.actions.stack_exists(name)
            except ClusterActionError as e:
                logger.error(f"Could not query stack '{name}': {e}")
                report.failed_removals.append(name)
                continue
            if not exists:
                logger.debug(f"Stack '{name}' not deployed, skipping")
                continue
            if self.executor.remove_stack(name):
                report.removed_stacks.append(name)
            else:
                report.failed_removals.append(name)

        if stacks is None:
            self._remove_networks(report)
        self._remove_volumes(fleet, order, report)

        if remove_nodes and stacks is None:
            try:
                report.machines = self.reconciler.dismantle(list(fleet.machines.values()))
            except ClusterActionError as e:
                logger.error(f"Could not list swarm nodes: {e}")
                report.machines = ReconcileReport(
                    plan=ReconcilePlan(),
                    outcomes=[MachineOutcome(machine_id="swarm", success=False, error=str(e))],
                )

        logger.info(
            f"Teardown finished: {len(report.removed_stacks)} stacks removed, "
            f"{len(report.failed_removals)} failed"
        )
        return report

    def _remove_networks(self, report: RunReport) -> None:
        try:
            networks = self.actions.list_overlay_networks()
        except ClusterActionError as e:
            report.warnings.append(f"Could not list overlay networks: {e}")
            logger.warning(report.warnings[-1])
            return

        for name in networks:
            try:
                self.actions.remove_network(name)
            except ClusterActionError as e:
                report.warnings.append(str(e))
                logger.warning(f"Network {name} not removed: {e}")
                continue
            report.removed_networks.append(name)
            logger.info(f"Removed network: {name}")

    def _find_volumes(
        self, machine: MachineSpec, stacks: list[str]
    ) -> tuple[list[str], list[str]]:
        """Volumes of `stacks` on one machine, plus warnings."""
        volumes: list[str] = []
        for stack in stacks:
            try:
                volumes.extend(self.actions.list_volumes(machine, stack))
            except (ClusterActionError, RemoteExecError) as e:
                # Unreachable machine: do not retry ssh for every stack
                return volumes, [f"{machine.id}: could not list volumes: {e}"]
        return volumes, []

    def _clean_machine(
        self, machine: MachineSpec, stacks: list[str]
    ) -> tuple[list[str], list[str]]:
        volumes, warnings = self._find_volumes(machine, stacks)
        removed = []
        for volume in volumes:
            try:
                self.actions.remove_volume(machine, volume)
            except (ClusterActionError, RemoteExecError) as e:
                warnings.append(f"{machine.id}: {volume} not removed (may be in use): {e}")
                continue
            removed.append(f"{machine.id}:{volume}")
        return removed, warnings

    def _remove_volumes(self, fleet: FleetSpec, stacks: list[str], report: RunReport) -> None:
        """Remove the named stacks' volumes on every machine, machines in parallel."""
        machines = list(fleet.machines.values())
        if not machines or not stacks:
            return
        workers = min(self.reconciler.max_workers, len(machines))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self._clean_machine, m, stacks) for m in machines]
            for future in futures:
                removed, warnings = future.result()
                report.removed_volumes.extend(removed)
                report.warnings.extend(warnings)
                for warning in warnings:
                    logger.warning(warning)

        if report.removed_volumes:
            logger.info(f"Removed {len(report.removed_volumes)} volumes")


__all__ = [
    "DeployOptions",
    "DeploymentOrchestrator",
    "PhaseReport",
    "RunReport",
    "RunStatus",
    "TeardownPlan",
]

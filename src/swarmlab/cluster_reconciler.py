"""Cluster state reconciliation module.

Converges swarm membership and node labels to the declared machine roster:
- Preflight: ssh and docker checked on every machine before any change
- Pure planning: set difference between desired machines and observed nodes
- One-time manager bootstrap when no manager exists
- Joins for missing machines, drain/leave/remove for undeclared nodes
- Label deltas only (never re-adds present labels, never leaves stale ones)
- Per-machine failure isolation, machines processed in parallel
- Dismantle: the same removal path with an empty roster (teardown)

Philosophy:
- Idempotent: a converged cluster plans zero actions
- Fresh state: observed nodes are read once per pass, never cached
- Fail-isolated: only a failed manager bootstrap aborts the pass
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from swarmlab.cluster_actions import ClusterActionError, ClusterActions
from swarmlab.log_sanitizer import LogSanitizer
from swarmlab.models import (
    MACHINE_ID_LABEL,
    MachineRole,
    MachineSpec,
    NodeStatus,
    ObservedNode,
)
from swarmlab.remote_exec import RemoteExecError

logger = logging.getLogger(__name__)


class ManagerBootstrapError(Exception):
    """Raised when the swarm manager cannot be initialized."""

    pass


class MachineAction(str, Enum):
    """Single idempotent step against one machine."""

    BOOTSTRAP = "bootstrap"
    JOIN = "join"
    DRAIN = "drain"
    LEAVE = "leave"
    REMOVE = "remove"
    ADD_LABEL = "add_label"
    REMOVE_LABEL = "remove_label"


@dataclass
class PlannedAction:
    """A planned step. Empty node_ref means "the node this machine became"."""

    action: MachineAction
    node_ref: str = ""
    key: str = ""
    value: str = ""
    role: MachineRole = MachineRole.WORKER

    def describe(self) -> str:
        if self.action == MachineAction.ADD_LABEL:
            return f"add_label {self.key}={self.value}"
        if self.action == MachineAction.REMOVE_LABEL:
            return f"remove_label {self.key}"
        if self.action == MachineAction.JOIN:
            return f"join as {self.role.value}"
        return self.action.value


@dataclass
class MachinePlan:
    """Planned steps for one desired machine or undeclared node."""

    machine_id: str
    machine: MachineSpec | None = None
    node: ObservedNode | None = None
    actions: list[PlannedAction] = field(default_factory=list)
    skip_reason: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class ReconcilePlan:
    """Everything a reconciliation pass would do."""

    bootstrap: MachineSpec | None = None
    machines: list[MachinePlan] = field(default_factory=list)

    @property
    def action_count(self) -> int:
        count = sum(len(p.actions) for p in self.machines)
        return count + (1 if self.bootstrap else 0)

    @property
    def is_converged(self) -> bool:
        return self.action_count == 0

    def needs_join(self, role: MachineRole) -> bool:
        return any(
            a.action == MachineAction.JOIN and a.role == role
            for p in self.machines
            for a in p.actions
        )


@dataclass
class MachineOutcome:
    """What happened to one machine."""

    machine_id: str
    actions_taken: list[str] = field(default_factory=list)
    success: bool = True
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    skipped: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.machine_id,
            "actions": list(self.actions_taken),
            "outcome": "success" if self.success else "failed",
            "error": self.error,
            "warnings": list(self.warnings),
            "skipped": self.skipped,
        }


@dataclass
class ReconcileReport:
    """Aggregated per-machine outcomes of a reconciliation pass."""

    plan: ReconcilePlan
    outcomes: list[MachineOutcome] = field(default_factory=list)
    join_token: str | None = None

    @property
    def action_count(self) -> int:
        return sum(len(o.actions_taken) for o in self.outcomes)

    @property
    def failed(self) -> list[MachineOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    def format_summary(self) -> str:
        return (
            f"Machines: {len(self.outcomes)}, Actions: {self.action_count}, "
            f"Failed: {len(self.failed)}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "machines": [o.to_dict() for o in self.outcomes],
            "action_count": self.action_count,
            "join_token": LogSanitizer.mask_token(self.join_token),
        }


def _label_delta(desired: MachineSpec, current: Iterable[str]) -> list[PlannedAction]:
    """Label additions and removals needed to turn `current` into `desired`."""
    wanted = desired.label_map()
    present = {}
    for label in current:
        key, _, value = label.partition("=")
        present[key] = value

    actions = [
        PlannedAction(MachineAction.ADD_LABEL, key=key, value=value)
        for key, value in sorted(wanted.items())
        if present.get(key) != value
    ]
    # A stale value whose key is still wanted is overwritten by the add above
    actions.extend(
        PlannedAction(MachineAction.REMOVE_LABEL, key=key)
        for key in sorted(present)
        if key not in wanted
    )
    return actions


def _match_nodes(
    desired: list[MachineSpec], observed: list[ObservedNode]
) -> dict[str, ObservedNode]:
    """Map desired machine ids to observed nodes.

    Match order: machine.id label, hostname == id, hostname == host,
    node address == host. Each node is matched at most once.
    """
    matched: dict[str, ObservedNode] = {}
    used: set[int] = set()

    matchers: list[Callable[[MachineSpec, ObservedNode], bool]] = [
        lambda m, n: n.label_map().get(MACHINE_ID_LABEL) == m.id,
        lambda m, n: n.hostname == m.id,
        lambda m, n: n.hostname == m.host,
        lambda m, n: bool(n.address) and n.address == m.host,
    ]
    for matcher in matchers:
        for machine in desired:
            if machine.id in matched:
                continue
            for index, node in enumerate(observed):
                if index not in used and matcher(machine, node):
                    matched[machine.id] = node
                    used.add(index)
                    break
    return matched


def plan_reconciliation(
    desired: list[MachineSpec], observed: list[ObservedNode], current_node_id: str = ""
) -> ReconcilePlan:
    """Compute the actions converging `observed` to `desired`.

    Pure function: no cluster access.

    Args:
        desired: Declared machines
        observed: Snapshot of swarm nodes
        current_node_id: Node the reconciler runs on (never removed)

    Returns:
        ReconcilePlan
    """
    plan = ReconcilePlan()
    matched = _match_nodes(desired, observed)
    has_manager = any(node.role == MachineRole.MANAGER for node in observed)

    if not has_manager:
        managers = [m for m in desired if m.is_manager]
        if managers:
            plan.bootstrap = managers[0]

    for machine in desired:
        machine_plan = MachinePlan(machine_id=machine.id, machine=machine)
        node = matched.get(machine.id)

        if node is not None:
            machine_plan.node = node
            if node.status == NodeStatus.DOWN:
                machine_plan.warnings.append(f"node {node.hostname} reported down")
            for action in _label_delta(machine, node.current_labels):
                action.node_ref = node.ref
                machine_plan.actions.append(action)
        elif plan.bootstrap is not None and machine.id == plan.bootstrap.id:
            # Bootstrapped node starts without labels
            machine_plan.actions.extend(_label_delta(machine, ()))
        else:
            machine_plan.actions.append(PlannedAction(MachineAction.JOIN, role=machine.role))
            machine_plan.actions.extend(_label_delta(machine, ()))

        plan.machines.append(machine_plan)

    matched_refs = {id(node) for node in matched.values()}
    for node in observed:
        if id(node) in matched_refs:
            continue
        machine_plan = MachinePlan(machine_id=node.hostname, node=node)
        if current_node_id and current_node_id in (node.node_id, node.hostname):
            machine_plan.skip_reason = "current node is never removed"
        elif node.role == MachineRole.MANAGER:
            machine_plan.skip_reason = "undeclared manager must be demoted manually"
        else:
            machine_plan.actions.append(PlannedAction(MachineAction.DRAIN, node_ref=node.ref))
            if node.address:
                machine_plan.actions.append(PlannedAction(MachineAction.LEAVE, node_ref=node.ref))
            machine_plan.actions.append(PlannedAction(MachineAction.REMOVE, node_ref=node.ref))
        plan.machines.append(machine_plan)

    return plan


class ClusterReconciler:
    """Converge swarm membership and labels to the declared roster.

    Example:
        >>> reconciler = ClusterReconciler(DockerSwarmActions())
        >>> report = reconciler.reconcile(list(fleet.machines.values()))
        >>> print(report.format_summary())
    """

    def __init__(
        self,
        actions: ClusterActions,
        max_workers: int = 4,
        default_ssh_user: str = "root",
        preflight: bool = False,
        fallback_token: str | None = None,
    ):
        """Initialize reconciler.

        Args:
            actions: Cluster operations
            max_workers: Machines processed concurrently
            default_ssh_user: SSH user for undeclared nodes told to leave
            preflight: Check ssh and docker on every machine before reconciling
            fallback_token: Cached worker join token, used when the manager
                cannot hand one out
        """
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.actions = actions
        self.max_workers = max_workers
        self.default_ssh_user = default_ssh_user
        self.preflight = preflight
        self.fallback_token = fallback_token

    def plan(
        self,
        desired: list[MachineSpec],
        observe: Callable[[], list[ObservedNode]] | None = None,
    ) -> ReconcilePlan:
        """Plan without executing (dry run)."""
        observed = (observe or self.actions.list_nodes)()
        return plan_reconciliation(desired, observed, self.actions.current_node_id())

    def reconcile(
        self,
        desired: list[MachineSpec],
        observe: Callable[[], list[ObservedNode]] | None = None,
    ) -> ReconcileReport:
        """Run one reconciliation pass.

        Args:
            desired: Declared machines
            observe: Snapshot provider (default: actions.list_nodes)

        Returns:
            ReconcileReport with per-machine outcomes

        Raises:
            ManagerBootstrapError: If the swarm has no manager and cannot be
                initialized
        """
        plan = self.plan(desired, observe)
        report = ReconcileReport(plan=plan)

        if plan.is_converged:
            logger.info("Cluster already converged, no actions needed")

        unreachable = self.check_machines(desired) if self.preflight else {}
        if plan.bootstrap is not None and plan.bootstrap.id in unreachable:
            raise ManagerBootstrapError(
                f"Cannot bootstrap swarm manager on {plan.bootstrap.id}: "
                f"{unreachable[plan.bootstrap.id]}"
            )

        bootstrap_outcome = None
        manager_addr = self._manager_address(desired, plan)
        if plan.bootstrap is not None:
            bootstrap_outcome = self._bootstrap(plan.bootstrap, report)
            manager_addr = plan.bootstrap.host

        tokens, token_error = self._fetch_tokens(plan, report)

        outcomes = self._execute_all(plan.machines, tokens, token_error, manager_addr, unreachable)

        if bootstrap_outcome is not None:
            for outcome in outcomes:
                if outcome.machine_id == bootstrap_outcome.machine_id:
                    outcome.actions_taken.insert(0, MachineAction.BOOTSTRAP.value)
                    break

        report.outcomes = outcomes
        logger.info(f"Reconciliation complete. {report.format_summary()}")
        return report

    def dismantle(
        self,
        machines: list[MachineSpec],
        observe: Callable[[], list[ObservedNode]] | None = None,
    ) -> ReconcileReport:
        """Drain, unjoin and remove every removable node.

        Plans against an empty roster, so the current node and managers are
        skipped exactly as in a normal pass. Nodes belonging to a declared
        machine are reported under its id and told to leave through its
        own ssh login.

        Args:
            machines: Declared machines, used to name nodes and reach them
            observe: Snapshot provider (default: actions.list_nodes)

        Raises:
            ClusterActionError: If the swarm cannot be listed
        """
        observed = (observe or self.actions.list_nodes)()
        plan = plan_reconciliation([], observed, self.actions.current_node_id())

        by_id = {machine.id: machine for machine in machines}
        owners = {
            id(node): by_id[machine_id]
            for machine_id, node in _match_nodes(machines, observed).items()
        }
        for machine_plan in plan.machines:
            machine = owners.get(id(machine_plan.node))
            if machine is None:
                continue
            machine_plan.machine = machine
            machine_plan.machine_id = machine.id
            leaves = any(a.action == MachineAction.LEAVE for a in machine_plan.actions)
            if machine_plan.actions and not leaves:
                # Known machine: reachable even when the node reports no address
                machine_plan.actions.insert(
                    1, PlannedAction(MachineAction.LEAVE, node_ref=machine_plan.node.ref)
                )

        report = ReconcileReport(plan=plan)
        report.outcomes = self._execute_all(plan.machines, {}, None, "", {})
        logger.info(f"Swarm dismantled. {report.format_summary()}")
        return report

    def check_machines(self, machines: list[MachineSpec]) -> dict[str, str]:
        """Check ssh reachability and docker on every machine in parallel.

        Returns:
            Mapping machine id -> error for each machine that failed
        """
        if not machines:
            return {}
        workers = min(self.max_workers, len(machines))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                machine.id: executor.submit(self.actions.check_machine, machine)
                for machine in machines
            }
            failures: dict[str, str] = {}
            for machine_id, future in futures.items():
                try:
                    future.result()
                except (ClusterActionError, RemoteExecError) as e:
                    failures[machine_id] = LogSanitizer.sanitize(str(e))
                    logger.error(f"Preflight failed for {machine_id}: {failures[machine_id]}")

        if not failures:
            logger.info(f"Preflight passed for {len(machines)} machines")
        return failures

    def _execute_all(
        self,
        machine_plans: list[MachinePlan],
        tokens: dict[MachineRole, str],
        token_error: str | None,
        manager_addr: str,
        unreachable: Mapping[str, str],
    ) -> list[MachineOutcome]:
        """Fan the machine plans out over the worker pool, keeping plan order."""
        if not machine_plans:
            return []
        workers = min(self.max_workers, len(machine_plans))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(
                    self._execute_machine,
                    machine_plan,
                    tokens,
                    token_error,
                    manager_addr,
                    unreachable.get(machine_plan.machine_id),
                )
                for machine_plan in machine_plans
            ]
            return [future.result() for future in futures]

    def _manager_address(self, desired: list[MachineSpec], plan: ReconcilePlan) -> str:
        for machine in desired:
            if machine.is_manager:
                return machine.host
        for machine_plan in plan.machines:
            node = machine_plan.node
            if node is not None and node.role == MachineRole.MANAGER and node.address:
                return node.address
        return ""

    def _bootstrap(self, manager: MachineSpec, report: ReconcileReport) -> MachineOutcome:
        logger.info(f"No swarm manager found, bootstrapping on {manager.id} ({manager.host})")
        try:
            token = self.actions.bootstrap_manager(manager.host)
        except (ClusterActionError, RemoteExecError) as e:
            raise ManagerBootstrapError(
                f"Failed to bootstrap swarm manager on {manager.id}: {e}"
            ) from e
        if not token:
            raise ManagerBootstrapError(f"Swarm bootstrap on {manager.id} returned no join token")

        report.join_token = token
        return MachineOutcome(machine_id=manager.id)

    def _fetch_tokens(
        self, plan: ReconcilePlan, report: ReconcileReport
    ) -> tuple[dict[MachineRole, str], str | None]:
        """Fetch join tokens once, before fan-out."""
        tokens: dict[MachineRole, str] = {}
        if report.join_token:
            tokens[MachineRole.WORKER] = report.join_token
        for role in (MachineRole.WORKER, MachineRole.MANAGER):
            if role in tokens or not plan.needs_join(role):
                continue
            try:
                tokens[role] = self.actions.get_join_token(role)
            except (ClusterActionError, RemoteExecError) as e:
                if role == MachineRole.WORKER and self.fallback_token:
                    logger.warning(f"Could not fetch worker join token, using cached token: {e}")
                    tokens[role] = self.fallback_token
                    continue
                logger.error(f"Could not fetch join token: {e}")
                return tokens, str(e)
        if report.join_token is None:
            report.join_token = tokens.get(MachineRole.WORKER)
        return tokens, None

    def _execute_machine(
        self,
        machine_plan: MachinePlan,
        tokens: dict[MachineRole, str],
        token_error: str | None,
        manager_addr: str,
        preflight_error: str | None = None,
    ) -> MachineOutcome:
        """Run one machine's actions serially."""
        outcome = MachineOutcome(
            machine_id=machine_plan.machine_id, warnings=list(machine_plan.warnings)
        )
        if machine_plan.skip_reason:
            outcome.skipped = machine_plan.skip_reason
            logger.info(f"Skipping {machine_plan.machine_id}: {machine_plan.skip_reason}")
            return outcome
        if preflight_error:
            outcome.success = False
            outcome.error = f"preflight failed: {preflight_error}"
            return outcome

        node_ref = machine_plan.node.ref if machine_plan.node else ""
        joins = any(a.action == MachineAction.JOIN for a in machine_plan.actions)
        if not node_ref and not joins and machine_plan.actions:
            # Freshly bootstrapped manager: the node these actions run on
            node_ref = self.actions.current_node_id()

        for planned in machine_plan.actions:
            target = planned.node_ref or node_ref
            try:
                if planned.action == MachineAction.JOIN:
                    token = tokens.get(planned.role)
                    if not token:
                        raise ClusterActionError(
                            f"no {planned.role.value} join token available"
                            + (f": {token_error}" if token_error else "")
                        )
                    node_ref = self.actions.join(machine_plan.machine, token, manager_addr)
                    if not node_ref:
                        raise ClusterActionError("joined node did not report a node id")
                elif planned.action == MachineAction.ADD_LABEL:
                    self.actions.add_label(target, planned.key, planned.value)
                elif planned.action == MachineAction.REMOVE_LABEL:
                    self.actions.remove_label(target, planned.key)
                elif planned.action == MachineAction.DRAIN:
                    self.actions.drain_node(target)
                elif planned.action == MachineAction.LEAVE:
                    if machine_plan.machine is not None:
                        host, user = machine_plan.machine.host, machine_plan.machine.ssh_user
                    else:
                        host, user = machine_plan.node.address, self.default_ssh_user
                    try:
                        self.actions.leave(host, user)
                    except (ClusterActionError, RemoteExecError) as e:
                        # The forced remove below still evicts the node
                        outcome.warnings.append(f"leave failed: {e}")
                        logger.warning(f"{machine_plan.machine_id}: leave failed: {e}")
                        continue
                elif planned.action == MachineAction.REMOVE:
                    self.actions.remove_node(target)
            except (ClusterActionError, RemoteExecError) as e:
                outcome.success = False
                outcome.error = LogSanitizer.sanitize(f"{planned.describe()} failed: {e}")
                logger.error(f"{machine_plan.machine_id}: {outcome.error}")
                return outcome

            outcome.actions_taken.append(planned.describe())
            logger.info(f"{machine_plan.machine_id}: {planned.describe()}")

        return outcome


__all__ = [
    "ClusterReconciler",
    "MachineAction",
    "MachineOutcome",
    "MachinePlan",
    "ManagerBootstrapError",
    "PlannedAction",
    "ReconcilePlan",
    "ReconcileReport",
    "plan_reconciliation",
]

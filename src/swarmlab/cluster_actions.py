"""Cluster actions module.

Abstracts every side effect the reconciler and executor perform against the
swarm behind one interface, with a Docker CLI implementation:
- Membership: preflight check, bootstrap manager, join, drain, leave, remove
- Node labels: add, remove
- Networks: ensure, list overlays, remove
- Stacks: validate, apply, existence, running units, task errors, replicas
- Per-machine stack volumes: list, remove

Security:
- No shell=True in subprocess calls
- Timeout enforcement on every docker call
- Join tokens redacted from logs and errors

Philosophy:
- Single responsibility: Translate intent into docker commands only
- Clear contracts: ClusterActions ABC, fakes in tests implement the same
- Idempotent where docker allows it (join/leave on converged nodes succeed)
"""

import json
import logging
import os
import re
import shlex
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from swarmlab.log_sanitizer import LogSanitizer
from swarmlab.models import MachineRole, MachineSpec, NodeStatus, ObservedNode
from swarmlab.remote_exec import ConnectivityError, RemoteExecutor
from swarmlab.retry_handler import retry_with_exponential_backoff

logger = logging.getLogger(__name__)

SWARM_PORT = 2377

_NOT_A_MANAGER = ("not a swarm manager", "this node is not part of a swarm")
_ALREADY_IN_SWARM = "already part of a swarm"
_NOT_IN_SWARM = "not part of a swarm"
_REPLICAS_PATTERN = re.compile(r"^(\d+)/(\d+)")

# Swarm-managed overlay network that must survive teardown
INGRESS_NETWORK = "ingress"


class ClusterActionError(Exception):
    """Raised when a cluster action fails."""

    pass


@dataclass
class CommandResult:
    """Outcome of a docker CLI call."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def get_output(self) -> str:
        """Get combined output."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


@dataclass
class ServiceReplicas:
    """Replica state of one service in a stack."""

    name: str
    running: int
    desired: int

    @property
    def healthy(self) -> bool:
        return self.desired > 0 and self.running >= self.desired

    @classmethod
    def parse(cls, name: str, replicas: str) -> "ServiceReplicas":
        """Parse docker's Replicas column ("2/3", "1/1 (max 1 per node)")."""
        match = _REPLICAS_PATTERN.match(replicas.strip())
        if not match:
            return cls(name=name, running=0, desired=0)
        return cls(name=name, running=int(match.group(1)), desired=int(match.group(2)))

    def __str__(self) -> str:
        return f"{self.name}: {self.running}/{self.desired}"


class ClusterActions(ABC):
    """Operations on the cluster used by the reconciler and executor."""

    # Membership

    @abstractmethod
    def list_nodes(self) -> list[ObservedNode]:
        """Current swarm nodes; empty when no swarm is active."""

    @abstractmethod
    def current_node_id(self) -> str:
        """Node id (or hostname) of the node these actions execute on."""

    @abstractmethod
    def check_machine(self, machine: MachineSpec) -> None:
        """Verify `machine` is reachable and its docker engine answers.

        Raises ConnectivityError when unreachable, ClusterActionError when
        docker is not available.
        """

    @abstractmethod
    def bootstrap_manager(self, advertise_addr: str) -> str:
        """Initialize the swarm and return the worker join token."""

    @abstractmethod
    def get_join_token(self, role: MachineRole = MachineRole.WORKER) -> str:
        """Join token for the given role."""

    @abstractmethod
    def join(self, machine: MachineSpec, token: str, manager_addr: str) -> str:
        """Have `machine` join the swarm and return its node id."""

    @abstractmethod
    def drain_node(self, node_ref: str) -> None:
        """Mark a node unavailable so its tasks relocate."""

    @abstractmethod
    def leave(self, host: str, user: str) -> None:
        """Instruct a node, over remote execution, to leave the swarm."""

    @abstractmethod
    def remove_node(self, node_ref: str) -> None:
        """Remove a node from the swarm."""

    @abstractmethod
    def add_label(self, node_ref: str, key: str, value: str) -> None:
        """Add or overwrite a node label."""

    @abstractmethod
    def remove_label(self, node_ref: str, key: str) -> None:
        """Remove a node label."""

    @abstractmethod
    def ensure_network(self, name: str) -> bool:
        """Create an attachable overlay network if missing. True if created."""

    @abstractmethod
    def list_overlay_networks(self) -> list[str]:
        """Names of the custom overlay networks (ingress excluded)."""

    @abstractmethod
    def remove_network(self, name: str) -> None:
        """Remove a network."""

    # Stacks

    @abstractmethod
    def validate(self, artifact: Path | str, timeout: int) -> CommandResult:
        """Render/check an artifact without applying it."""

    @abstractmethod
    def apply(
        self, stack: str, artifact: Path | str, timeout: int, rendered: str | None = None
    ) -> CommandResult:
        """Submit an artifact as a stack."""

    @abstractmethod
    def stack_exists(self, stack: str) -> bool:
        """Whether the stack is known to the swarm."""

    @abstractmethod
    def list_stack_units(self, stack: str) -> int:
        """Number of running units (tasks) of the stack."""

    @abstractmethod
    def list_task_errors(self, stack: str) -> list[str]:
        """Error strings of recently failed tasks of the stack."""

    @abstractmethod
    def list_service_replicas(self, stack: str) -> list[ServiceReplicas]:
        """Replica state of every service of the stack."""

    @abstractmethod
    def remove_stack(self, stack: str) -> None:
        """Remove a stack."""

    # Volumes

    @abstractmethod
    def list_volumes(self, machine: MachineSpec, stack: str) -> list[str]:
        """Volumes of `stack` present on `machine` (named "<stack>_...")."""

    @abstractmethod
    def remove_volume(self, machine: MachineSpec, volume: str) -> None:
        """Remove one volume on `machine`."""


class DockerSwarmActions(ClusterActions):
    """ClusterActions backed by the docker CLI.

    Manager-side commands run through the local docker CLI, optionally
    against a remote engine (`docker_host`, e.g. "ssh://admin@10.0.0.1").
    Node-side join/leave, preflight checks and volume cleanup run over ssh
    via RemoteExecutor.
    """

    def __init__(
        self,
        remote: RemoteExecutor | None = None,
        docker_host: str | None = None,
        command_timeout: int = 60,
        env: Mapping[str, str] | None = None,
    ):
        """Initialize docker actions.

        Args:
            remote: Executor for node-side commands
            docker_host: Docker engine to talk to (default: local engine)
            command_timeout: Timeout for short docker queries in seconds
            env: Extra environment for docker calls (stack file interpolation)
        """
        self.remote = remote or RemoteExecutor()
        self.docker_host = docker_host
        self.command_timeout = command_timeout
        self.env = dict(env or {})

    def _docker(
        self, args: list[str], timeout: int | None = None, input_text: str | None = None
    ) -> CommandResult:
        cmd = ["docker"]
        if self.docker_host:
            cmd.extend(["-H", self.docker_host])
        cmd.extend(args)
        timeout = timeout or self.command_timeout

        logger.debug(f"Running: {LogSanitizer.sanitize(' '.join(cmd))}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input_text,
                env={**os.environ, **self.env} if self.env else None,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            stdout = e.stdout.decode(errors="replace") if isinstance(e.stdout, bytes) else e.stdout
            return CommandResult(
                returncode=-1,
                stdout=stdout or "",
                stderr=f"docker {args[0]} timed out after {timeout}s",
                timed_out=True,
            )
        except FileNotFoundError as e:
            raise ClusterActionError("docker CLI not found on PATH") from e

        return CommandResult(
            returncode=result.returncode, stdout=result.stdout, stderr=result.stderr
        )

    def _checked(self, args: list[str], what: str, timeout: int | None = None) -> CommandResult:
        result = self._docker(args, timeout=timeout)
        if not result.success:
            raise ClusterActionError(
                f"Failed to {what}: {LogSanitizer.sanitize(result.stderr.strip())}"
            )
        return result

    # Membership

    def list_nodes(self) -> list[ObservedNode]:
        result = self._docker(["node", "ls", "-q"])
        if not result.success:
            if any(marker in result.stderr.lower() for marker in _NOT_A_MANAGER):
                logger.debug("No active swarm on this engine")
                return []
            raise ClusterActionError(f"Failed to list nodes: {result.stderr.strip()}")

        node_ids = result.stdout.split()
        if not node_ids:
            return []

        inspected = self._checked(["node", "inspect", *node_ids], "inspect nodes")
        try:
            documents = json.loads(inspected.stdout)
        except json.JSONDecodeError as e:
            raise ClusterActionError(f"Unexpected node inspect output: {e}") from e

        return [self._parse_node(doc) for doc in documents]

    @staticmethod
    def _parse_node(doc: dict) -> ObservedNode:
        spec = doc.get("Spec") or {}
        status = doc.get("Status") or {}
        labels = spec.get("Labels") or {}
        role = MachineRole.MANAGER if spec.get("Role") == "manager" else MachineRole.WORKER
        return ObservedNode(
            hostname=(doc.get("Description") or {}).get("Hostname", ""),
            role=role,
            current_labels=frozenset(f"{k}={v}" for k, v in labels.items()),
            status=NodeStatus.parse(status.get("State")),
            node_id=doc.get("ID", ""),
            address=status.get("Addr", ""),
        )

    def current_node_id(self) -> str:
        result = self._docker(["info", "--format", "{{.Swarm.NodeID}}"])
        return result.stdout.strip() if result.success else ""

    @retry_with_exponential_backoff(
        max_attempts=2, initial_delay=2.0, retryable_exceptions=(ConnectivityError,)
    )
    def check_machine(self, machine: MachineSpec) -> None:
        result = self.remote.execute_command(
            machine.host, machine.ssh_user, "docker info --format '{{.ServerVersion}}'", timeout=30
        )
        if not result.success:
            raise ClusterActionError(
                f"Docker is not available on {machine.ssh_user}@{machine.host}: "
                f"{result.get_output().strip() or f'exit code {result.exit_code}'}"
            )
        logger.debug(f"{machine.id}: docker {result.stdout.strip()} reachable")

    def bootstrap_manager(self, advertise_addr: str) -> str:
        self._checked(
            ["swarm", "init", "--advertise-addr", advertise_addr], "initialize swarm"
        )
        logger.info(f"Swarm initialized with manager at {advertise_addr}")
        return self.get_join_token(MachineRole.WORKER)

    def get_join_token(self, role: MachineRole = MachineRole.WORKER) -> str:
        result = self._checked(["swarm", "join-token", "-q", role.value], "fetch join token")
        return result.stdout.strip()

    @retry_with_exponential_backoff(
        max_attempts=3, initial_delay=2.0, retryable_exceptions=(ConnectivityError,)
    )
    def join(self, machine: MachineSpec, token: str, manager_addr: str) -> str:
        command = f"docker swarm join --token {token} {manager_addr}:{SWARM_PORT}"
        result = self.remote.execute_command(machine.host, machine.ssh_user, command, timeout=60)
        if not (result.success or _ALREADY_IN_SWARM in result.stderr.lower()):
            raise ClusterActionError(
                f"Failed to join {machine.id}: {LogSanitizer.sanitize(result.stderr.strip())}"
            )

        info = self.remote.execute_command(
            machine.host, machine.ssh_user, "docker info --format '{{.Swarm.NodeID}}'", timeout=30
        )
        return info.stdout.strip() if info.success else ""

    def drain_node(self, node_ref: str) -> None:
        self._checked(["node", "update", "--availability", "drain", node_ref], f"drain {node_ref}")

    @retry_with_exponential_backoff(
        max_attempts=3, initial_delay=2.0, retryable_exceptions=(ConnectivityError,)
    )
    def leave(self, host: str, user: str) -> None:
        result = self.remote.execute_command(host, user, "docker swarm leave --force", timeout=60)
        if result.success or _NOT_IN_SWARM in result.stderr.lower():
            return
        raise ClusterActionError(f"Failed to leave swarm on {host}: {result.stderr.strip()}")

    def remove_node(self, node_ref: str) -> None:
        self._checked(["node", "rm", "--force", node_ref], f"remove node {node_ref}")

    def add_label(self, node_ref: str, key: str, value: str) -> None:
        self._checked(
            ["node", "update", "--label-add", f"{key}={value}", node_ref],
            f"add label {key} to {node_ref}",
        )

    def remove_label(self, node_ref: str, key: str) -> None:
        self._checked(
            ["node", "update", "--label-rm", key, node_ref], f"remove label {key} from {node_ref}"
        )

    def ensure_network(self, name: str) -> bool:
        result = self._checked(["network", "ls", "--format", "{{.Name}}"], "list networks")
        if name in result.stdout.split():
            logger.info(f"Network '{name}' already exists, skipping creation")
            return False
        self._checked(
            ["network", "create", "--driver=overlay", "--attachable", name],
            f"create network {name}",
        )
        logger.info(f"Network '{name}' created")
        return True

    def list_overlay_networks(self) -> list[str]:
        result = self._checked(
            ["network", "ls", "--filter", "driver=overlay", "--format", "{{.Name}}"],
            "list overlay networks",
        )
        return [name for name in result.stdout.split() if name != INGRESS_NETWORK]

    def remove_network(self, name: str) -> None:
        self._checked(["network", "rm", name], f"remove network {name}")

    # Stacks

    def validate(self, artifact: Path | str, timeout: int) -> CommandResult:
        return self._docker(["stack", "config", "-c", str(artifact)], timeout=timeout)

    def apply(
        self, stack: str, artifact: Path | str, timeout: int, rendered: str | None = None
    ) -> CommandResult:
        source = "-" if rendered is not None else str(artifact)
        return self._docker(
            [
                "stack",
                "deploy",
                "--detach=false",
                "--resolve-image",
                "never",
                "-c",
                source,
                stack,
            ],
            timeout=timeout,
            input_text=rendered,
        )

    def stack_exists(self, stack: str) -> bool:
        result = self._docker(["stack", "ls", "--format", "{{.Name}}"])
        return result.success and stack in result.stdout.split()

    def list_stack_units(self, stack: str) -> int:
        result = self._docker(
            ["stack", "ps", stack, "--filter", "desired-state=running", "--format", "{{.ID}}"]
        )
        if not result.success:
            return 0
        return len(result.stdout.split())

    def list_task_errors(self, stack: str) -> list[str]:
        result = self._docker(
            [
                "stack",
                "ps",
                stack,
                "--no-trunc",
                "--filter",
                "desired-state=shutdown",
                "--format",
                "{{.Error}}",
            ]
        )
        if not result.success:
            return []
        return result.stdout.splitlines()

    def list_service_replicas(self, stack: str) -> list[ServiceReplicas]:
        result = self._docker(["stack", "services", stack, "--format", "{{.Name}}\t{{.Replicas}}"])
        if not result.success:
            return []
        replicas = []
        for line in result.stdout.splitlines():
            if "\t" not in line:
                continue
            name, value = line.split("\t", 1)
            replicas.append(ServiceReplicas.parse(name, value))
        return replicas

    def remove_stack(self, stack: str) -> None:
        self._checked(["stack", "rm", stack], f"remove stack {stack}")

    # Volumes

    def list_volumes(self, machine: MachineSpec, stack: str) -> list[str]:
        prefix = f"{stack}_"
        command = (
            f"docker volume ls --filter name={shlex.quote(prefix)} --format '{{{{.Name}}}}'"
        )
        result = self.remote.execute_command(machine.host, machine.ssh_user, command, timeout=30)
        if not result.success:
            raise ClusterActionError(
                f"Failed to list volumes on {machine.id}: {result.stderr.strip()}"
            )
        # The name filter matches substrings; keep only this stack's volumes
        return [name for name in result.stdout.split() if name.startswith(prefix)]

    def remove_volume(self, machine: MachineSpec, volume: str) -> None:
        result = self.remote.execute_command(
            machine.host, machine.ssh_user, f"docker volume rm {shlex.quote(volume)}", timeout=60
        )
        if not result.success:
            raise ClusterActionError(
                f"Failed to remove volume {volume} on {machine.id}: {result.stderr.strip()}"
            )


__all__ = [
    "ClusterActionError",
    "ClusterActions",
    "CommandResult",
    "DockerSwarmActions",
    "INGRESS_NETWORK",
    "ServiceReplicas",
    "SWARM_PORT",
]

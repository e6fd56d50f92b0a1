"""Unit tests for cluster_actions module (docker CLI backend)."""

import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

import pytest

from swarmlab.cluster_actions import (
    ClusterActionError,
    CommandResult,
    DockerSwarmActions,
    ServiceReplicas,
)
from swarmlab.models import MachineRole, MachineSpec, NodeStatus
from swarmlab.remote_exec import ConnectivityError, RemoteResult

NODE_INSPECT = [
    {
        "ID": "abc123",
        "Description": {"Hostname": "pi-manager"},
        "Spec": {"Role": "manager", "Labels": {"machine.id": "pi-manager"}},
        "Status": {"State": "ready", "Addr": "192.168.1.10"},
    },
    {
        "ID": "def456",
        "Description": {"Hostname": "pi-worker-1"},
        "Spec": {"Role": "worker", "Labels": {}},
        "Status": {"State": "down", "Addr": "192.168.1.11"},
    },
]


def completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


def remote_result(success=True, stdout="", stderr=""):
    return RemoteResult(
        host="192.168.1.11",
        success=success,
        stdout=stdout,
        stderr=stderr,
        exit_code=0 if success else 1,
    )


WORKER = MachineSpec(id="pi-worker-1", host="192.168.1.11", ssh_user="pi")


class TestCommandResult:
    """Tests for CommandResult and ServiceReplicas."""

    def test_timed_out_is_not_success(self):
        assert not CommandResult(returncode=0, timed_out=True).success

    @pytest.mark.parametrize(
        "value,running,desired",
        [("2/3", 2, 3), ("1/1 (max 1 per node)", 1, 1), ("global", 0, 0)],
    )
    def test_parse_replicas(self, value, running, desired):
        replicas = ServiceReplicas.parse("web_app", value)

        assert (replicas.running, replicas.desired) == (running, desired)

    def test_zero_desired_is_unhealthy(self):
        assert not ServiceReplicas("web_app", running=0, desired=0).healthy


class TestDockerCommands:
    """Tests for manager-side docker calls."""

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_list_nodes(self, mock_run):
        mock_run.side_effect = [
            completed(stdout="abc123\ndef456\n"),
            completed(stdout=json.dumps(NODE_INSPECT)),
        ]

        nodes = DockerSwarmActions().list_nodes()

        assert [n.hostname for n in nodes] == ["pi-manager", "pi-worker-1"]
        assert nodes[0].role == MachineRole.MANAGER
        assert nodes[0].current_labels == frozenset({"machine.id=pi-manager"})
        assert nodes[1].status == NodeStatus.DOWN
        assert nodes[1].address == "192.168.1.11"
        assert mock_run.call_args_list[1].args[0] == [
            "docker",
            "node",
            "inspect",
            "abc123",
            "def456",
        ]

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_list_nodes_without_swarm(self, mock_run):
        mock_run.return_value = completed(
            returncode=1,
            stderr="Error response from daemon: This node is not a swarm manager.",
        )

        assert DockerSwarmActions().list_nodes() == []

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_docker_host(self, mock_run):
        mock_run.return_value = completed(stdout="node-1\n")

        DockerSwarmActions(docker_host="ssh://admin@10.0.0.1").current_node_id()

        assert mock_run.call_args.args[0][:3] == ["docker", "-H", "ssh://admin@10.0.0.1"]

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_docker_missing(self, mock_run):
        mock_run.side_effect = FileNotFoundError("docker")

        with pytest.raises(ClusterActionError, match="docker CLI not found"):
            DockerSwarmActions().validate(Path("stack.yml"), timeout=60)

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_timeout_becomes_result(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="docker", timeout=120)

        result = DockerSwarmActions().apply("web", Path("web.yml"), timeout=120)

        assert result.timed_out
        assert not result.success

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_apply_rendered_config_on_stdin(self, mock_run):
        mock_run.return_value = completed()

        DockerSwarmActions().apply("web", Path("web.yml"), timeout=90, rendered="services: {}\n")

        args = mock_run.call_args.args[0]
        assert args[-3:] == ["-c", "-", "web"]
        assert mock_run.call_args.kwargs["input"] == "services: {}\n"
        assert mock_run.call_args.kwargs["timeout"] == 90

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_apply_from_file(self, mock_run):
        mock_run.return_value = completed()

        DockerSwarmActions().apply("web", Path("web.yml"), timeout=90)

        assert mock_run.call_args.args[0][-3:] == ["-c", "web.yml", "web"]

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_stack_queries(self, mock_run):
        actions = DockerSwarmActions()

        mock_run.return_value = completed(stdout="traefik\nweb\n")
        assert actions.stack_exists("web")
        assert not actions.stack_exists("db")

        mock_run.return_value = completed(stdout="t1\nt2\n")
        assert actions.list_stack_units("web") == 2

        mock_run.return_value = completed(stdout="web_app\t2/2\nweb_worker\t0/1\n")
        replicas = actions.list_service_replicas("web")
        assert [str(r) for r in replicas] == ["web_app: 2/2", "web_worker: 0/1"]

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_ensure_network_existing(self, mock_run):
        mock_run.return_value = completed(stdout="bridge\ntraefik-public\n")

        assert DockerSwarmActions().ensure_network("traefik-public") is False
        assert mock_run.call_count == 1

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_ensure_network_created(self, mock_run):
        mock_run.side_effect = [completed(stdout="bridge\n"), completed()]

        assert DockerSwarmActions().ensure_network("traefik-public") is True
        assert mock_run.call_args.args[0] == [
            "docker",
            "network",
            "create",
            "--driver=overlay",
            "--attachable",
            "traefik-public",
        ]

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_failed_command_raises(self, mock_run):
        mock_run.return_value = completed(returncode=1, stderr="node not found")

        with pytest.raises(ClusterActionError, match="drain node-9: node not found"):
            DockerSwarmActions().drain_node("node-9")

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_dotenv_variables_reach_docker(self, mock_run):
        mock_run.return_value = completed()

        DockerSwarmActions(env={"BASE_DOMAIN": "lab.example"}).validate(Path("web.yml"), 60)

        env = mock_run.call_args.kwargs["env"]
        assert env["BASE_DOMAIN"] == "lab.example"
        assert "PATH" in env

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_no_env_inherits_environment(self, mock_run):
        mock_run.return_value = completed()

        DockerSwarmActions().validate(Path("web.yml"), 60)

        assert mock_run.call_args.kwargs["env"] is None

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_list_overlay_networks_excludes_ingress(self, mock_run):
        mock_run.return_value = completed(stdout="ingress\ntraefik-public\nmonitoring\n")

        assert DockerSwarmActions().list_overlay_networks() == ["traefik-public", "monitoring"]
        assert mock_run.call_args.args[0][1:5] == ["network", "ls", "--filter", "driver=overlay"]

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_remove_network_failure_raises(self, mock_run):
        mock_run.return_value = completed(returncode=1, stderr="network has active endpoints")

        with pytest.raises(ClusterActionError, match="remove network traefik-public"):
            DockerSwarmActions().remove_network("traefik-public")

    @patch("swarmlab.cluster_actions.subprocess.run")
    def test_bootstrap_returns_worker_token(self, mock_run):
        mock_run.side_effect = [completed(), completed(stdout="SWMTKN-1-worker\n")]

        token = DockerSwarmActions().bootstrap_manager("10.0.0.1")

        assert token == "SWMTKN-1-worker"
        assert mock_run.call_args_list[0].args[0][-2:] == ["--advertise-addr", "10.0.0.1"]


class TestNodeSideCommands:
    """Tests for join/leave over remote execution."""

    def test_join(self):
        remote = Mock()
        remote.execute_command.side_effect = [remote_result(), remote_result(stdout="def456\n")]

        node_id = DockerSwarmActions(remote=remote).join(WORKER, "SWMTKN-1-x", "10.0.0.1")

        assert node_id == "def456"
        command = remote.execute_command.call_args_list[0].args[2]
        assert command == "docker swarm join --token SWMTKN-1-x 10.0.0.1:2377"

    def test_join_already_member(self):
        remote = Mock()
        remote.execute_command.side_effect = [
            remote_result(False, stderr="This node is already part of a swarm."),
            remote_result(stdout="def456\n"),
        ]

        assert DockerSwarmActions(remote=remote).join(WORKER, "t", "10.0.0.1") == "def456"

    def test_join_failure_redacts_token(self):
        remote = Mock()
        remote.execute_command.return_value = remote_result(
            False, stderr="invalid join token SWMTKN-1-secret"
        )

        with pytest.raises(ClusterActionError) as exc_info:
            DockerSwarmActions(remote=remote).join(WORKER, "SWMTKN-1-secret", "10.0.0.1")

        assert "SWMTKN-1-secret" not in str(exc_info.value)

    def test_join_retried_on_connectivity_error(self):
        remote = Mock()
        remote.execute_command.side_effect = [
            ConnectivityError("Cannot reach pi@192.168.1.11"),
            remote_result(),
            remote_result(stdout="def456\n"),
        ]

        with patch("swarmlab.retry_handler.time.sleep"):
            node_id = DockerSwarmActions(remote=remote).join(WORKER, "t", "10.0.0.1")

        assert node_id == "def456"

    def test_leave_tolerates_non_member(self):
        remote = Mock()
        remote.execute_command.return_value = remote_result(
            False, stderr="Error: This node is not part of a swarm"
        )

        DockerSwarmActions(remote=remote).leave("192.168.1.11", "pi")

        remote.execute_command.assert_called_once_with(
            "192.168.1.11", "pi", "docker swarm leave --force", timeout=60
        )


class TestPreflightAndVolumes:
    """Tests for machine checks and per-node volume cleanup."""

    def test_check_machine_runs_docker_info(self):
        remote = Mock()
        remote.execute_command.return_value = remote_result(stdout="24.0.7\n")

        DockerSwarmActions(remote=remote).check_machine(WORKER)

        host, user, command = remote.execute_command.call_args.args
        assert (host, user) == ("192.168.1.11", "pi")
        assert command.startswith("docker info")

    def test_check_machine_without_docker(self):
        remote = Mock()
        remote.execute_command.return_value = remote_result(
            False, stdout="", stderr="bash: docker: command not found"
        )

        with pytest.raises(ClusterActionError, match="docker: command not found"):
            DockerSwarmActions(remote=remote).check_machine(WORKER)

    def test_check_machine_unreachable(self):
        remote = Mock()
        remote.execute_command.side_effect = ConnectivityError("Cannot reach pi@192.168.1.11")

        with patch("swarmlab.retry_handler.time.sleep"):
            with pytest.raises(ConnectivityError):
                DockerSwarmActions(remote=remote).check_machine(WORKER)

        assert remote.execute_command.call_count == 2

    def test_list_volumes_keeps_only_stack_prefix(self):
        remote = Mock()
        remote.execute_command.return_value = remote_result(
            stdout="postgres_data\nmy_postgres_data\npostgresql_old\npostgres_wal\n"
        )

        volumes = DockerSwarmActions(remote=remote).list_volumes(WORKER, "postgres")

        assert volumes == ["postgres_data", "postgres_wal"]
        command = remote.execute_command.call_args.args[2]
        assert "docker volume ls --filter name=postgres_" in command

    def test_list_volumes_failure_raises(self):
        remote = Mock()
        remote.execute_command.return_value = remote_result(False, stderr="permission denied")

        with pytest.raises(ClusterActionError, match="list volumes on pi-worker-1"):
            DockerSwarmActions(remote=remote).list_volumes(WORKER, "postgres")

    def test_remove_volume(self):
        remote = Mock()
        remote.execute_command.return_value = remote_result()

        DockerSwarmActions(remote=remote).remove_volume(WORKER, "postgres_data")

        remote.execute_command.assert_called_once_with(
            "192.168.1.11", "pi", "docker volume rm postgres_data", timeout=60
        )

    def test_remove_volume_in_use_raises(self):
        remote = Mock()
        remote.execute_command.return_value = remote_result(
            False, stderr="volume is in use - [abc123]"
        )

        with pytest.raises(ClusterActionError, match="postgres_data on pi-worker-1"):
            DockerSwarmActions(remote=remote).remove_volume(WORKER, "postgres_data")

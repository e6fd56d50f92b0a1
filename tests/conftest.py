"""
Shared test fixtures for swarmlab tests.

This module provides:
- An empty in-memory swarm (FakeClusterActions)
- A recording sleep so no test waits on backoff
- A small sample fleet spanning several phases
- Protection of the real ~/.swarmlab settings
"""

import pytest
from fakes import FakeClusterActions, make_machine, make_service, services_map

from swarmlab.config_manager import ConfigManager
from swarmlab.models import FleetSpec, MachineRole, ServicePhase


@pytest.fixture(autouse=True)
def isolated_config_dir(tmp_path, monkeypatch):
    """Point the default settings directory at a temp dir.

    Tests must never touch the real ~/.swarmlab/config.toml or join token.
    """
    config_dir = tmp_path / ".swarmlab"
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_DIR", config_dir)
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_FILE", config_dir / "config.toml")
    monkeypatch.setattr(ConfigManager, "DEFAULT_TOKEN_FILE", config_dir / "swarm_token")
    return config_dir


@pytest.fixture
def fake_actions():
    """Empty in-memory swarm."""
    return FakeClusterActions()


@pytest.fixture
def sleeps():
    """Recording replacement for time.sleep."""
    recorded: list[float] = []

    def _sleep(seconds: float) -> None:
        recorded.append(seconds)

    _sleep.calls = recorded
    return _sleep


@pytest.fixture
def sample_fleet():
    """Small fleet: one manager, two workers, services in three phases."""
    machines = {
        "m1": make_machine("m1", MachineRole.MANAGER, host="10.0.0.1"),
        "w1": make_machine("w1", labels=("storage=ssd",), host="10.0.0.2"),
        "w2": make_machine("w2", host="10.0.0.3"),
    }
    services = services_map(
        make_service("traefik", phase=ServicePhase.INFRASTRUCTURE, priority=1),
        make_service("postgres", ("traefik",), phase=ServicePhase.CORE),
        make_service("redis", ("traefik",), phase=ServicePhase.CORE, priority=5),
        make_service("nextcloud", ("postgres", "redis")),
        make_service("grafana", ("traefik",), phase=ServicePhase.MONITORING),
    )
    return FleetSpec(machines=machines, services=services)

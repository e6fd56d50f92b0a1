"""Unit tests for health_gate module."""

from unittest.mock import Mock, patch

import pytest
import requests
from fakes import make_service, services_map

from swarmlab.health_gate import MIN_PROBE_TIMEOUT, HealthGate, http_probe
from swarmlab.models import HealthCheckSpec

CHECK = HealthCheckSpec(enabled=True, endpoint="http://10.0.0.1:8080/health", timeout_seconds=3)


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def make_gate(clock, probe, interval=5.0):
    return HealthGate(interval=interval, probe=probe, sleep=clock.sleep, clock=clock)


class TestAwaitHealthy:
    """Test polling a single endpoint."""

    def test_disabled_check_is_ready_immediately(self, clock):
        probe = Mock()

        assert make_gate(clock, probe).await_healthy(HealthCheckSpec(), budget=60) is True
        probe.assert_not_called()

    def test_healthy_on_first_probe(self, clock):
        gate = make_gate(clock, Mock(return_value=True))

        assert gate.await_healthy(CHECK, budget=60) is True
        assert clock.sleeps == []

    def test_becomes_healthy_after_retries(self, clock):
        probe = Mock(side_effect=[False, False, True])

        assert make_gate(clock, probe).await_healthy(CHECK, budget=60) is True
        assert probe.call_count == 3
        assert clock.sleeps == [5.0, 5.0]

    def test_timeout_returns_false(self, clock):
        """Budget exhaustion is advisory: False, never an exception."""
        probe = Mock(return_value=False)

        assert make_gate(clock, probe).await_healthy(CHECK, budget=12) is False
        assert clock.sleeps == [5.0, 5.0, 2.0]
        assert clock.now == 12.0

    def test_probe_timeout_shrinks_with_budget(self, clock):
        """A single slow request cannot outlast the remaining budget."""
        probe = Mock(return_value=False)

        make_gate(clock, probe).await_healthy(CHECK, budget=12)

        timeouts = [call.args[1] for call in probe.call_args_list]
        assert timeouts == [12.0, 7.0, 2.0, MIN_PROBE_TIMEOUT]

    def test_zero_budget_probes_once(self, clock):
        probe = Mock(return_value=False)

        assert make_gate(clock, probe).await_healthy(CHECK, budget=0) is False
        assert probe.call_count == 1

    def test_probe_exception_counts_as_not_ready(self, clock):
        probe = Mock(side_effect=[RuntimeError("boom"), True])

        assert make_gate(clock, probe).await_healthy(CHECK, budget=30) is True

    def test_rejects_non_positive_interval(self, clock):
        with pytest.raises(ValueError):
            HealthGate(interval=0)


class TestAwaitDependencies:
    """Test waiting for a service's dependencies."""

    def test_no_dependencies(self, clock):
        gate = make_gate(clock, Mock())

        assert gate.await_dependencies(make_service("app"), {}, budget=30) == {}

    def test_reports_each_dependency(self, clock):
        services = services_map(
            make_service("db", health_check=CHECK),
            make_service("cache"),
            make_service("app", ("db", "cache", "ghost")),
        )
        gate = make_gate(clock, Mock(return_value=True))

        results = gate.await_dependencies(services["app"], services, budget=30)

        assert results == {"cache": True, "db": True, "ghost": False}

    def test_budget_is_shared(self, clock):
        """A dependency that times out consumes the budget of later ones."""
        slow = HealthCheckSpec(enabled=True, endpoint="http://a/health")
        services = services_map(
            make_service("a", health_check=slow),
            make_service("b", health_check=slow),
            make_service("app", ("a", "b")),
        )
        gate = make_gate(clock, Mock(return_value=False))

        results = gate.await_dependencies(services["app"], services, budget=10)

        assert results == {"a": False, "b": False}
        assert clock.now == 10.0

    def test_skips_dependencies_handled_by_caller(self, clock):
        services = services_map(
            make_service("db", health_check=CHECK),
            make_service("cache", health_check=CHECK),
            make_service("app", ("db", "cache")),
        )
        probe = Mock(return_value=True)

        results = make_gate(clock, probe).await_dependencies(
            services["app"], services, budget=30, skip={"db"}
        )

        assert results == {"cache": True}
        assert probe.call_count == 1

    def test_all_skipped_waits_for_nothing(self, clock):
        services = services_map(
            make_service("db", health_check=CHECK), make_service("app", ("db",))
        )
        probe = Mock()

        results = make_gate(clock, probe).await_dependencies(
            services["app"], services, budget=30, skip={"db"}
        )

        assert results == {}
        probe.assert_not_called()


class TestHttpProbe:
    """Test the default HTTP probe."""

    @patch("swarmlab.health_gate.requests.get")
    def test_success_status(self, mock_get):
        mock_get.return_value = Mock(status_code=204)

        assert http_probe(CHECK) is True
        mock_get.assert_called_once_with("http://10.0.0.1:8080/health", timeout=3)

    @patch("swarmlab.health_gate.requests.get")
    def test_redirect_counts_as_healthy(self, mock_get):
        mock_get.return_value = Mock(status_code=302)

        assert http_probe(CHECK) is True

    @patch("swarmlab.health_gate.requests.get")
    def test_error_status(self, mock_get):
        mock_get.return_value = Mock(status_code=503)

        assert http_probe(CHECK) is False

    @patch("swarmlab.health_gate.requests.get")
    def test_connection_error(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("refused")

        assert http_probe(CHECK) is False

    @patch("swarmlab.health_gate.requests.get")
    def test_timeout_capped_by_caller(self, mock_get):
        mock_get.return_value = Mock(status_code=200)

        http_probe(CHECK, timeout=1.5)

        assert mock_get.call_args.kwargs["timeout"] == 1.5

    @patch("swarmlab.health_gate.requests.get")
    def test_check_timeout_is_upper_bound(self, mock_get):
        mock_get.return_value = Mock(status_code=200)

        http_probe(CHECK, timeout=10)

        assert mock_get.call_args.kwargs["timeout"] == 3

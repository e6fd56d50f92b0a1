"""Health Gate - bounded readiness polling for services.

Philosophy:
- Advisory, not blocking: timeouts return False, never raise
- Single responsibility: Polling only, the caller decides what to do
- Disabled checks are a no-op policy (ready immediately)

Public API (Studs):
    HealthGate - Polls a service health endpoint within a time budget
    http_probe - Default probe (HTTP GET via requests)
"""

import logging
import time
from collections.abc import Callable, Collection, Mapping

import requests

from swarmlab.models import HealthCheckSpec, ServiceSpec

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0

# Floor for the per-probe request timeout near the end of a budget
MIN_PROBE_TIMEOUT = 1.0

# Log progress every N polls
_PROGRESS_EVERY = 6


def http_probe(target: HealthCheckSpec, timeout: float | None = None) -> bool:
    """Return True if the endpoint answers with a non-error status.

    Args:
        target: Health check to probe
        timeout: Upper bound for this request; never exceeds the check's own timeout
    """
    request_timeout = float(target.timeout_seconds)
    if timeout is not None:
        request_timeout = min(request_timeout, timeout)
    try:
        response = requests.get(target.endpoint, timeout=request_timeout)
    except requests.RequestException as e:
        logger.debug(f"Health probe {target.endpoint} failed: {e}")
        return False
    return response.status_code < 400


class HealthGate:
    """Poll health endpoints until ready or out of budget.

    Example:
        >>> gate = HealthGate(interval=5)
        >>> if not gate.await_healthy(service.health_check, budget=120):
        ...     logger.warning("proceeding anyway")
    """

    def __init__(
        self,
        interval: float = DEFAULT_POLL_INTERVAL,
        probe: Callable[[HealthCheckSpec, float], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize health gate.

        Args:
            interval: Seconds between probes
            probe: Probe function taking the check and a request timeout
                (default: HTTP GET)
            sleep: Sleep function
            clock: Monotonic clock
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.probe = probe or http_probe
        self.sleep = sleep
        self.clock = clock

    def _probe(self, target: HealthCheckSpec, timeout: float) -> bool:
        try:
            return bool(self.probe(target, timeout))
        except Exception as e:
            # A broken probe counts as "not ready yet"
            logger.debug(f"Health probe raised for {target.endpoint}: {e}")
            return False

    def await_healthy(self, target: HealthCheckSpec, budget: float) -> bool:
        """Wait until `target` is healthy or `budget` seconds elapse.

        Args:
            target: Health check to poll
            budget: Total seconds to wait

        Returns:
            True when healthy (or check disabled), False on timeout
        """
        if not target.enabled:
            return True

        deadline = self.clock() + max(budget, 0)
        polls = 0
        while True:
            # One slow request must not overrun the budget
            probe_timeout = max(deadline - self.clock(), MIN_PROBE_TIMEOUT)
            if self._probe(target, probe_timeout):
                if polls:
                    logger.info(f"{target.endpoint} healthy after {polls} retries")
                return True

            remaining = deadline - self.clock()
            if remaining <= 0:
                logger.warning(f"Health check timed out after {budget}s: {target.endpoint}")
                return False

            polls += 1
            if polls % _PROGRESS_EVERY == 0:
                logger.info(f"Still waiting for {target.endpoint}...")
            self.sleep(min(self.interval, remaining))

    def await_dependencies(
        self,
        service: ServiceSpec,
        services: Mapping[str, ServiceSpec],
        budget: float,
        skip: Collection[str] = (),
    ) -> dict[str, bool]:
        """Wait for every dependency of `service` within one shared budget.

        Args:
            service: Service whose dependencies are awaited
            services: All declared services
            budget: Total seconds for all dependencies together
            skip: Dependencies the caller already waits for itself

        Returns:
            Mapping dependency name -> ready
        """
        results: dict[str, bool] = {}
        pending = sorted(service.depends_on - set(skip))
        if not pending:
            return results

        deadline = self.clock() + max(budget, 0)
        for dep in pending:
            spec = services.get(dep)
            if spec is None:
                results[dep] = False
                continue
            remaining = max(deadline - self.clock(), 0)
            results[dep] = self.await_healthy(spec.health_check, remaining)
            if results[dep]:
                logger.debug(f"Dependency {dep} of {service.name} is ready")
            else:
                logger.warning(f"Dependency {dep} of {service.name} not ready, continuing")
        return results


__all__ = ["DEFAULT_POLL_INTERVAL", "MIN_PROBE_TIMEOUT", "HealthGate", "http_probe"]

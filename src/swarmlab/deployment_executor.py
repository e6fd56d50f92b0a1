"""Stack deployment executor.

Applies stacks to the swarm with bounded retries and failure diagnosis:
- Validate -> apply -> settle -> confirm, per attempt
- Diagnostics per failed attempt: deduplicated task errors
  (most common first) and the filtered tail of the apply output
- Fan-out/fan-in deployment of many stacks, results in request order
- Final verification pass over replica health, separate from apply success

Security:
- Timeout enforcement on validate and apply
- Join tokens and secrets redacted from diagnostics

Philosophy:
- Never raises for a failed stack: the caller decides what a failure means
- The only component that mutates deployed stacks
"""

import logging
import re
import time
from collections import Counter
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from swarmlab.cluster_actions import (
    ClusterActionError,
    ClusterActions,
    CommandResult,
    ServiceReplicas,
)
from swarmlab.health_gate import HealthGate
from swarmlab.log_sanitizer import LogSanitizer
from swarmlab.models import (
    AttemptRecord,
    DeployFailure,
    DeploymentUnit,
    DeployOutcome,
    HealthCheckSpec,
)
from swarmlab.retry_handler import RetryPolicy

logger = logging.getLogger(__name__)

MAX_TASK_ERRORS = 10
MAX_OUTPUT_ISSUES = 5
OUTPUT_TAIL_LINES = 10

_GENERIC_TASK_ERROR = "task: non-zero exit"
_ISSUE_PATTERN = re.compile(r"failed|error|invalid|denied|timeout", re.IGNORECASE)
_BOILERPLATE_PATTERNS = [
    re.compile(r"^overall progress:", re.IGNORECASE),
    re.compile(r"^verify:", re.IGNORECASE),
    re.compile(r"^\d+/\d+:"),
    re.compile(r"^(Creating|Updating|Waiting for|Since) ", re.IGNORECASE),
    re.compile(r"\[=*>?\s*\]"),
]


class DeploymentError(Exception):
    """Failure of one deployment stage.

    Attributes:
        stage: Stage that failed
        causes: Human-readable causes
        output: Raw command output for diagnosis
    """

    stage = DeployFailure.APPLY_FAILED

    def __init__(self, message: str, causes: list[str] | None = None, output: str = ""):
        super().__init__(message)
        self.causes = causes if causes is not None else [message]
        self.output = output


class ValidationFailedError(DeploymentError):
    """Raised when the artifact does not validate."""

    stage = DeployFailure.VALIDATION_FAILED


class ApplyFailedError(DeploymentError):
    """Raised when submitting the artifact fails or times out."""

    stage = DeployFailure.APPLY_FAILED


class HealthVerificationFailedError(DeploymentError):
    """Raised when an applied stack is missing or has no running units."""

    stage = DeployFailure.HEALTH_VERIFICATION_FAILED


@dataclass
class DeployRequest:
    """One stack to deploy as part of a batch."""

    stack_name: str
    artifact: Path | str
    depends_on: frozenset[str] = frozenset()
    health_check: HealthCheckSpec | None = None
    policy: RetryPolicy | None = None


@dataclass
class StackHealth:
    """Post-settle health of one stack."""

    stack_name: str
    services: list[ServiceReplicas] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return bool(self.services) and all(s.healthy for s in self.services)

    def problems(self) -> list[str]:
        if not self.services:
            return ["stack has no services running"]
        return [f"{s} replicas running" for s in self.services if not s.healthy]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.stack_name,
            "healthy": self.healthy,
            "services": [str(s) for s in self.services],
            "problems": self.problems(),
        }


class DeploymentExecutor:
    """Deploy stacks with retries, diagnosis and verification.

    Example:
        >>> executor = DeploymentExecutor(DockerSwarmActions(), RetryPolicy(max_attempts=3))
        >>> unit = executor.deploy("traefik", Path("stacks/traefik.yml"))
        >>> unit.outcome, unit.attempt
    """

    def __init__(
        self,
        actions: ClusterActions,
        policy: RetryPolicy | None = None,
        settle_delay: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
        health_gate: HealthGate | None = None,
        health_budget: float = 300.0,
    ):
        """Initialize executor.

        Args:
            actions: Cluster operations
            policy: Default retry policy
            settle_delay: Seconds to wait after apply before confirming
            sleep: Sleep function (backoff and settle)
            health_gate: Advisory gate consulted between dependent waves
            health_budget: Seconds the gate may wait per dependency
        """
        self.actions = actions
        self.policy = policy or RetryPolicy()
        self.settle_delay = settle_delay
        self.sleep = sleep
        self.health_gate = health_gate
        self.health_budget = health_budget

    # Single stack

    def deploy(
        self, stack_name: str, artifact: Path | str, policy: RetryPolicy | None = None
    ) -> DeploymentUnit:
        """Deploy one stack, retrying per policy.

        Args:
            stack_name: Stack name
            artifact: Stack file handed to validate/apply
            policy: Retry policy (default: executor policy)

        Returns:
            DeploymentUnit; never raises for deployment failures
        """
        policy = policy or self.policy
        unit = DeploymentUnit(stack_name=stack_name)
        start_time = time.time()

        logger.info(f"Deploying stack: {stack_name}")

        for attempt in range(1, policy.max_attempts + 1):
            unit.attempt = attempt
            try:
                self._attempt(stack_name, artifact, policy)
            except DeploymentError as e:
                causes = LogSanitizer.sanitize_lines(
                    e.causes + self.collect_diagnostics(stack_name, e.output)
                )
                unit.record_failure(AttemptRecord(number=attempt, stage=e.stage, causes=causes))

                if attempt < policy.max_attempts:
                    delay = policy.delay_for(attempt)
                    logger.warning(
                        f"Deployment of '{stack_name}' failed ({e.stage.value}). "
                        f"Retrying in {delay:.0f}s... (Attempt {attempt}/{policy.max_attempts})"
                    )
                    self.sleep(delay)
                else:
                    logger.error(
                        f"Failed to deploy stack '{stack_name}' after "
                        f"{policy.max_attempts} attempts"
                    )
                continue

            unit.outcome = DeployOutcome.SUCCESS
            unit.failure = None
            logger.info(f"Stack '{stack_name}' deployed successfully (attempt {attempt})")
            break

        unit.duration = time.time() - start_time
        return unit

    def _attempt(self, stack_name: str, artifact: Path | str, policy: RetryPolicy) -> None:
        rendered = self._validate(artifact, policy)
        result = self._apply(stack_name, artifact, policy, rendered)
        self._confirm(stack_name, result.get_output())

    def _validate(self, artifact: Path | str, policy: RetryPolicy) -> str | None:
        try:
            result = self.actions.validate(artifact, policy.validate_timeout)
        except ClusterActionError as e:
            raise ValidationFailedError(f"validation could not run: {e}") from e

        if result.timed_out:
            raise ValidationFailedError(f"validation timed out after {policy.validate_timeout}s")
        if not result.success:
            lines = [line.strip() for line in result.stderr.splitlines() if line.strip()]
            causes = ["validation failed"] + lines[:MAX_OUTPUT_ISSUES]
            raise ValidationFailedError("validation failed", causes=causes)
        return result.stdout or None

    def _apply(
        self, stack_name: str, artifact: Path | str, policy: RetryPolicy, rendered: str | None
    ) -> CommandResult:
        try:
            result = self.actions.apply(stack_name, artifact, policy.timeout, rendered=rendered)
        except ClusterActionError as e:
            raise ApplyFailedError(f"apply could not run: {e}") from e

        if result.timed_out:
            raise ApplyFailedError(
                f"apply timed out after {policy.timeout}s", output=result.get_output()
            )
        if not result.success:
            raise ApplyFailedError(
                f"apply exited with code {result.returncode}", output=result.get_output()
            )
        return result

    def _confirm(self, stack_name: str, output: str) -> None:
        if self.settle_delay > 0:
            self.sleep(self.settle_delay)

        try:
            exists = self.actions.stack_exists(stack_name)
            units = self.actions.list_stack_units(stack_name) if exists else 0
        except ClusterActionError as e:
            raise HealthVerificationFailedError(f"could not query stack: {e}", output=output) from e

        if not exists or units < 1:
            raise HealthVerificationFailedError(
                f"apply succeeded but stack_exists={exists}, running_units={units}",
                output=output,
            )

    # Diagnosis

    def collect_diagnostics(self, stack_name: str, output: str = "") -> list[str]:
        """Task errors plus filtered apply output for a failed attempt."""
        diagnostics: list[str] = []
        try:
            if self.actions.stack_exists(stack_name):
                errors = self.summarize_task_errors(self.actions.list_task_errors(stack_name))
                diagnostics.extend(f"task error: {line}" for line in errors)
        except ClusterActionError as e:
            logger.debug(f"Could not collect task errors for {stack_name}: {e}")

        diagnostics.extend(f"output: {line}" for line in self.filter_output(output))
        return diagnostics

    @staticmethod
    def summarize_task_errors(errors: list[str]) -> list[str]:
        """Deduplicate task errors, most common first.

        Generic exit-code errors are only reported when nothing more specific
        is available.
        """
        cleaned = [e.strip() for e in errors if e.strip()]
        specific = [e for e in cleaned if not e.startswith(_GENERIC_TASK_ERROR)]
        chosen = specific or cleaned

        summary = []
        for error, count in Counter(chosen).most_common(MAX_TASK_ERRORS):
            summary.append(f"{error} (x{count})" if count > 1 else error)
        return summary

    @staticmethod
    def filter_output(output: str) -> list[str]:
        """Meaningful lines from raw apply output.

        Drops progress and boilerplate lines, then prefers lines that look
        like failures; falls back to the tail of what remains.
        """
        lines = [line.strip() for line in output.splitlines()]
        lines = [
            line
            for line in lines
            if line and not any(p.search(line) for p in _BOILERPLATE_PATTERNS)
        ]
        tail = lines[-OUTPUT_TAIL_LINES:]

        issues: list[str] = []
        for line in tail:
            if _ISSUE_PATTERN.search(line) and line not in issues:
                issues.append(line)
        if issues:
            return issues[:MAX_OUTPUT_ISSUES]
        return tail[-MAX_OUTPUT_ISSUES:]

    # Batches

    def deploy_all(
        self, requests: list[DeployRequest], max_parallel: int = 1
    ) -> list[DeploymentUnit]:
        """Deploy many stacks, returning outcomes in request order.

        With max_parallel == 1 stacks deploy strictly in list order.
        Otherwise requests are grouped into waves by their in-batch
        dependencies; each wave fans out to at most `max_parallel` workers
        and completes before the next wave is submitted.

        Args:
            requests: Stacks to deploy, dependencies first
            max_parallel: Maximum concurrent deployments

        Returns:
            One DeploymentUnit per request, same order as `requests`

        Raises:
            ValueError: If max_parallel < 1 or in-batch dependencies cycle
        """
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        if not requests:
            return []

        if max_parallel == 1:
            waves = [[index] for index in range(len(requests))]
        else:
            waves = self._waves(requests)

        results: list[DeploymentUnit | None] = [None] * len(requests)
        units_by_name: dict[str, DeploymentUnit] = {}
        readiness: dict[str, bool] = {}

        for wave in waves:
            self._await_wave_dependencies(wave, requests, units_by_name, readiness)

            if len(wave) == 1:
                index = wave[0]
                results[index] = self._deploy_request(requests[index])
            else:
                workers = min(max_parallel, len(wave))
                with ThreadPoolExecutor(max_workers=workers) as executor:
                    futures = {
                        index: executor.submit(self._deploy_request, requests[index])
                        for index in wave
                    }
                    for index, future in futures.items():
                        results[index] = future.result()

            for index in wave:
                units_by_name[requests[index].stack_name] = results[index]

        return [unit for unit in results if unit is not None]

    def _deploy_request(self, request: DeployRequest) -> DeploymentUnit:
        try:
            return self.deploy(request.stack_name, request.artifact, request.policy)
        except Exception as e:
            logger.exception(f"Unexpected error deploying {request.stack_name}")
            unit = DeploymentUnit(stack_name=request.stack_name, attempt=1)
            unit.record_failure(
                AttemptRecord(
                    number=1,
                    stage=DeployFailure.APPLY_FAILED,
                    causes=[LogSanitizer.sanitize(f"unexpected error: {e}")],
                )
            )
            return unit

    @staticmethod
    def _waves(requests: list[DeployRequest]) -> list[list[int]]:
        """Group request indexes into dependency waves, keeping list order."""
        names = {request.stack_name for request in requests}
        done: set[str] = set()
        remaining = list(range(len(requests)))
        waves: list[list[int]] = []

        while remaining:
            wave = [
                index
                for index in remaining
                if (requests[index].depends_on & names) <= done
            ]
            if not wave:
                stuck = ", ".join(requests[i].stack_name for i in remaining)
                raise ValueError(f"Circular in-batch dependencies: {stuck}")
            waves.append(wave)
            done.update(requests[index].stack_name for index in wave)
            remaining = [index for index in remaining if index not in wave]

        return waves

    def _await_wave_dependencies(
        self,
        wave: list[int],
        requests: list[DeployRequest],
        units_by_name: dict[str, DeploymentUnit],
        readiness: dict[str, bool],
    ) -> None:
        """Advisory health gate on dependencies deployed earlier in the batch."""
        if self.health_gate is None:
            return

        checks = {request.stack_name: request.health_check for request in requests}
        for index in wave:
            for dep in sorted(requests[index].depends_on):
                if dep in readiness or dep not in units_by_name:
                    continue
                check = checks.get(dep)
                if check is None or not check.enabled or not units_by_name[dep].succeeded:
                    continue
                readiness[dep] = self.health_gate.await_healthy(check, self.health_budget)
                if not readiness[dep]:
                    logger.warning(
                        f"Dependency '{dep}' not healthy, deploying "
                        f"'{requests[index].stack_name}' anyway"
                    )

    # Verification and removal

    def verify_stacks(self, stack_names: list[str]) -> list[StackHealth]:
        """Re-query replica health of every stack after the phase settles."""
        report = []
        for name in stack_names:
            try:
                services = self.actions.list_service_replicas(name)
            except ClusterActionError as e:
                logger.error(f"Could not verify stack '{name}': {e}")
                services = []
            health = StackHealth(stack_name=name, services=services)
            if health.healthy:
                logger.info(f"Stack '{name}' is healthy")
            else:
                logger.error(f"Stack '{name}' is not healthy: {'; '.join(health.problems())}")
            report.append(health)
        return report

    def remove_stack(self, stack_name: str) -> bool:
        """Remove a stack; False if removal failed."""
        try:
            self.actions.remove_stack(stack_name)
        except ClusterActionError as e:
            logger.error(f"Failed to remove stack '{stack_name}': {e}")
            return False
        logger.info(f"Removed stack: {stack_name}")
        return True


__all__ = [
    "ApplyFailedError",
    "DeployRequest",
    "DeploymentError",
    "DeploymentExecutor",
    "HealthVerificationFailedError",
    "StackHealth",
    "ValidationFailedError",
]

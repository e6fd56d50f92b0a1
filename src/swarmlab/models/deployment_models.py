"""
Deployment Data Models

Runtime records of stack deployment attempts.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DeployOutcome(str, Enum):
    """Terminal outcome of one stack deployment."""

    SUCCESS = "success"
    FAILED = "failed"


class DeployFailure(str, Enum):
    """Stage at which a failed deployment gave up."""

    VALIDATION_FAILED = "validation_failed"
    APPLY_FAILED = "apply_failed"
    HEALTH_VERIFICATION_FAILED = "health_verification_failed"


@dataclass
class AttemptRecord:
    """Diagnosis of a single failed attempt."""

    number: int
    stage: DeployFailure
    causes: list[str] = field(default_factory=list)

    def summary(self) -> str:
        """One human-readable line for the attempt."""
        stage = self.stage.value.replace("_", " ")
        if not self.causes:
            return f"attempt {self.number}: {stage}"
        return f"attempt {self.number}: {stage}: " + "; ".join(self.causes)


@dataclass
class DeploymentUnit:
    """Record of one Deploy call.

    Attributes:
        stack_name: Stack that was deployed
        attempt: Number of attempts made (1-based)
        outcome: success or failed
        diagnostics: One entry per failed attempt
        failure: Stage of the last failure, None on success
        attempts: Structured per-attempt records
    """

    stack_name: str
    attempt: int = 0
    outcome: DeployOutcome = DeployOutcome.FAILED
    diagnostics: list[str] = field(default_factory=list)
    failure: DeployFailure | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == DeployOutcome.SUCCESS

    def record_failure(self, record: AttemptRecord) -> None:
        self.attempts.append(record)
        self.diagnostics.append(record.summary())
        self.failure = record.stage

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.stack_name,
            "outcome": self.outcome.value,
            "attempts": self.attempt,
            "failure": self.failure.value if self.failure else None,
            "diagnostics": list(self.diagnostics),
            "duration": round(self.duration, 2),
        }


__all__ = ["AttemptRecord", "DeployFailure", "DeployOutcome", "DeploymentUnit"]

"""
ddfleet API data models.

Request and response bodies for the HTTP surface. Fleet results are
rendered through ExecOutcome.to_dict() so the per-pod envelope is the same
everywhere.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ddfleet.modules.fleet.models import ExecOutcome, ExecStatus, FleetResult, PodRole

MAX_COMMAND_TOKENS = 64
MAX_TOKEN_LENGTH = 4096

# Kubernetes object names (RFC 1123 subdomain)
K8S_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$"


class TargetModel(BaseModel):
    """Which agent pod(s) to target."""

    namespace: Optional[str] = Field(
        None, description="Kubernetes namespace (defaults to configuration)", pattern=K8S_NAME_PATTERN
    )
    pod: Optional[str] = Field(None, description="Explicit pod name", pattern=K8S_NAME_PATTERN)
    node: Optional[str] = Field(None, description="Only agents scheduled on this node")
    all_agents: bool = Field(False, description="Target every node agent")


class ExecCommandRequest(TargetModel):
    """Request to run a command on agent pods."""

    role: PodRole = Field(default=PodRole.NODE_AGENT, description="Node agent or cluster agent")
    command: List[str] = Field(
        ..., description="Command tokens, passed as discrete arguments", min_length=1
    )
    timeout_seconds: Optional[float] = Field(
        None, description="Overall budget for fleet operations", gt=0, le=600
    )

    @field_validator("command")
    @classmethod
    def validate_command(cls, v):
        """Bound the number and size of command tokens."""
        if len(v) > MAX_COMMAND_TOKENS:
            raise ValueError(f"Command has more than {MAX_COMMAND_TOKENS} tokens")
        if not v[0].strip():
            raise ValueError("Command must not start with an empty token")
        for token in v:
            if len(token) > MAX_TOKEN_LENGTH:
                raise ValueError(f"Command token longer than {MAX_TOKEN_LENGTH} characters")
            if "\x00" in token:
                raise ValueError("Command tokens must not contain NUL bytes")
        return v


class RunCheckRequest(TargetModel):
    """Request to run an agent check once."""

    check: str = Field(..., description="Check name", min_length=1, max_length=200)
    log_level: Optional[Literal["trace", "debug", "info", "warn", "error"]] = None
    delay: Optional[int] = Field(None, ge=0, description="Delay between check runs")
    times: Optional[int] = Field(None, ge=1, le=100, description="Number of check runs")
    pause: bool = False


class OutcomeModel(BaseModel):
    """Per-pod result envelope."""

    pod: str
    node: str
    ok: bool
    status: ExecStatus
    stdout: Optional[str] = None
    error: Optional[str] = None
    return_code: Optional[int] = None
    duration_ms: int = 0

    @classmethod
    def from_outcome(cls, outcome: ExecOutcome) -> "OutcomeModel":
        return cls(
            pod=outcome.pod.name,
            node=outcome.pod.node,
            ok=outcome.ok,
            status=outcome.status,
            stdout=outcome.stdout if outcome.ok else None,
            error=None if outcome.ok else outcome.error_message,
            return_code=outcome.return_code,
            duration_ms=outcome.duration_ms,
        )


class FleetResponse(BaseModel):
    """Outcomes of an exec request, in discovery order."""

    outcomes: List[OutcomeModel] = Field(default_factory=list)
    succeeded: int = 0
    failed: int = 0

    @classmethod
    def from_result(cls, result: FleetResult) -> "FleetResponse":
        return cls(
            outcomes=[OutcomeModel.from_outcome(outcome) for outcome in result],
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )


class ErrorResponse(BaseModel):
    """Error body returned for fatal failures."""

    error: str
    details: Optional[Dict[str, Any]] = None

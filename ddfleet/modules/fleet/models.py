"""
Fleet data models.

These types describe what is targeted (PodSelector), what was found (PodRef)
and what happened on each pod (ExecOutcome / FleetResult). All of them are
short-lived, request-scoped values.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple


class PodRole(str, Enum):
    """Which kind of Datadog Agent pod a selector targets."""

    NODE_AGENT = "node-agent"
    CLUSTER_AGENT = "cluster-agent"


class ExecStatus(str, Enum):
    """Status of a single remote command execution."""

    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


# Errors


class FleetError(Exception):
    """Base class for coordinator errors."""


class PodNotFoundError(FleetError):
    """A selector resolved to nothing where exactly one pod was required."""

    def __init__(self, message: str, namespace: Optional[str] = None):
        super().__init__(message)
        self.namespace = namespace


class PreconditionFailedError(FleetError):
    """The remote-exec or pod-query mechanism itself is unavailable."""


# Values


@dataclass(frozen=True)
class PodSelector:
    """Identifies a target set of agent pods."""

    namespace: str
    role: PodRole = PodRole.NODE_AGENT
    explicit_pod: Optional[str] = None
    node_filter: Optional[str] = None

    def __post_init__(self):
        if not self.namespace:
            raise ValueError("namespace must not be empty")


@dataclass(frozen=True)
class PodRef:
    """A discovered pod and the node it is scheduled on ("" if unknown)."""

    name: str
    node: str = ""


@dataclass(frozen=True)
class ExecRequest:
    """A command to run on the pods matched by a selector."""

    selector: PodSelector
    command: Tuple[str, ...]
    container: str

    def __post_init__(self):
        # Accept any sequence of tokens but store an immutable tuple
        object.__setattr__(self, "command", tuple(self.command))
        if not self.command:
            raise ValueError("command must contain at least one token")
        if not all(isinstance(token, str) for token in self.command):
            raise ValueError("command tokens must be strings")


@dataclass(frozen=True)
class RemoteExecResult:
    """Raw result handed back by a RemoteExec collaborator."""

    stdout: str
    success: bool
    error_message: Optional[str] = None
    return_code: int = 0
    stderr: str = ""
    timed_out: bool = False


@dataclass(frozen=True)
class ExecOutcome:
    """What happened when a command ran on one pod."""

    pod: PodRef
    ok: bool
    stdout: str = ""
    error_message: Optional[str] = None
    status: ExecStatus = ExecStatus.SUCCESS
    return_code: Optional[int] = None
    stderr: str = ""
    duration_ms: int = 0

    @classmethod
    def cancelled(cls, pod: PodRef, reason: str = "Cancelled") -> "ExecOutcome":
        return cls(
            pod=pod,
            ok=False,
            error_message=reason,
            status=ExecStatus.CANCELLED,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Stable per-pod envelope: {pod, node, ok, stdout | error}."""
        data: Dict[str, Any] = {
            "pod": self.pod.name,
            "node": self.pod.node,
            "ok": self.ok,
            "status": self.status.value,
        }
        if self.ok:
            data["stdout"] = self.stdout
        else:
            data["error"] = self.error_message
        return data


@dataclass(frozen=True)
class FleetResult:
    """Outcomes of a fleet operation, in discovery order."""

    outcomes: Tuple[ExecOutcome, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "outcomes", tuple(self.outcomes))

    def __len__(self) -> int:
        return len(self.outcomes)

    def __iter__(self):
        return iter(self.outcomes)

    @property
    def pods(self) -> Sequence[PodRef]:
        return [outcome.pod for outcome in self.outcomes]

    @property
    def succeeded(self) -> Sequence[ExecOutcome]:
        return [outcome for outcome in self.outcomes if outcome.ok]

    @property
    def failed(self) -> Sequence[ExecOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    @property
    def all_ok(self) -> bool:
        return all(outcome.ok for outcome in self.outcomes)

    def to_dict(self) -> Dict[str, Any]:
        return {"outcomes": [outcome.to_dict() for outcome in self.outcomes]}

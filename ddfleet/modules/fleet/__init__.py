"""
Fleet Module - Black Box Interface

Purpose: Discover Datadog Agent pods and run commands on one pod or the whole fleet
Interface: FleetExecCoordinator.discover(), resolve_single(), exec_one(), exec_fleet(), run()
Hidden: Label selectors, worker pool, ordering and cancellation bookkeeping

Collaborators (PodQuery, RemoteExec) can be swapped for any system that can
list execution targets and run a command on one of them.
"""

from .coordinator import FleetExecCoordinator
from .interfaces import PodQuery, RemoteExec
from .models import (
    ExecOutcome,
    ExecRequest,
    ExecStatus,
    FleetError,
    FleetResult,
    PodNotFoundError,
    PodRef,
    PodRole,
    PodSelector,
    PreconditionFailedError,
    RemoteExecResult,
)

__all__ = [
    "ExecOutcome",
    "ExecRequest",
    "ExecStatus",
    "FleetError",
    "FleetExecCoordinator",
    "FleetResult",
    "PodNotFoundError",
    "PodQuery",
    "PodRef",
    "PodRole",
    "PodSelector",
    "PreconditionFailedError",
    "RemoteExec",
    "RemoteExecResult",
]

"""
API Module - Black Box Interface

Purpose: HTTP request and response models
Interface: ExecCommandRequest, RunCheckRequest, FleetResponse, OutcomeModel
Hidden: Validation rules

The API module only describes data - all logic is delegated to the fleet
and diagnostics modules.
"""

from .models import (
    ErrorResponse,
    ExecCommandRequest,
    FleetResponse,
    OutcomeModel,
    RunCheckRequest,
    TargetModel,
)

__all__ = [
    "ErrorResponse",
    "ExecCommandRequest",
    "FleetResponse",
    "OutcomeModel",
    "RunCheckRequest",
    "TargetModel",
]

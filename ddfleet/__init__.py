"""
ddfleet - Datadog Agent fleet diagnostics for Kubernetes

Discovers Datadog Agent and Cluster Agent pods and runs read-only diagnostic
commands on one pod or across every node agent, returning a uniform per-pod
result envelope.

Architecture:
- Each module is self-contained with clear interfaces
- Modules are completely replaceable
- All communication through defined interfaces

Modules:
- fleet: Pod discovery and command fan-out
- kube: kubectl-backed pod query and exec
- diagnostics: Agent status, checks, diagnose and file access
- api: REST API models
- auth: API key authentication
"""

__version__ = "1.0.0"

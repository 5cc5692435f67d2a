"""
Kube Module - Black Box Interface

Purpose: Talk to the Kubernetes cluster
Interface: KubectlClient.list_pods(), get_pod(), execute()
Hidden: kubectl invocation, JSON parsing, connectivity error detection

Can be replaced with a direct Kubernetes API client without affecting the fleet module.
"""

from .kubectl import KubectlClient, is_connectivity_error

__all__ = ["KubectlClient", "is_connectivity_error"]

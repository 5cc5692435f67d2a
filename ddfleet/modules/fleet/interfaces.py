"""Collaborator interfaces for the fleet coordinator."""
from typing import List, Optional, Protocol, Sequence

from .models import PodRef, RemoteExecResult


class PodQuery(Protocol):
    """Lists and looks up addressable execution targets."""

    def list_pods(
        self,
        namespace: str,
        label_selector: str,
        node_name: Optional[str] = None,
    ) -> List[PodRef]:
        """
        List pods matching a label selector.

        Returns:
            Pods in the order the cluster API returned them

        Raises:
            PreconditionFailedError: If the cluster cannot be queried
        """
        ...

    def get_pod(self, namespace: str, name: str) -> Optional[PodRef]:
        """
        Point lookup of a single pod.

        Returns:
            The pod, or None if it does not exist
        """
        ...


class RemoteExec(Protocol):
    """Runs a command inside one container of one pod."""

    def execute(
        self,
        namespace: str,
        pod_name: str,
        container: str,
        command: Sequence[str],
        timeout: Optional[float] = None,
    ) -> RemoteExecResult:
        """
        Execute command tokens in the container and capture output.

        Raises:
            PreconditionFailedError: If the exec transport is unavailable
        """
        ...

"""
kubectl-backed pod query and remote-exec collaborators.

Every kubectl invocation is built as a discrete argv list and run through
subprocess.run; nothing is ever passed through a shell.
"""

import json
import logging
import subprocess
from typing import Any, Dict, List, Optional, Sequence

from ddfleet.modules.fleet.models import (
    PodRef,
    PreconditionFailedError,
    RemoteExecResult,
)

logger = logging.getLogger(__name__)

# stderr fragments that mean the API server itself could not be reached
CONNECTIVITY_ERRORS = (
    "Unable to connect to the server",
    "The connection to the server",
    "connection refused",
    "no such host",
    "i/o timeout",
    "TLS handshake timeout",
    "couldn't get current server API group list",
)

QUERY_TIMEOUT = 30


def is_connectivity_error(stderr: str) -> bool:
    """Check whether kubectl stderr reports an unreachable cluster."""
    return any(fragment in stderr for fragment in CONNECTIVITY_ERRORS)


class KubectlClient:
    """Implements PodQuery and RemoteExec on top of the kubectl binary."""

    def __init__(
        self,
        kubectl_path: str = "kubectl",
        context: Optional[str] = None,
        kubeconfig: Optional[str] = None,
        query_timeout: int = QUERY_TIMEOUT,
    ):
        """
        Initialize kubectl client.

        Args:
            kubectl_path: kubectl binary name or path
            context: Optional kubeconfig context to use
            kubeconfig: Optional kubeconfig file path
            query_timeout: Timeout in seconds for get/list calls
        """
        self.kubectl_path = kubectl_path
        self.context = context
        self.kubeconfig = kubeconfig
        self.query_timeout = query_timeout

    @classmethod
    def from_config(cls, config) -> "KubectlClient":
        """Build a client from a FleetConfig."""
        return cls(
            kubectl_path=config.kubectl_path,
            context=config.kube_context,
            kubeconfig=config.kubeconfig,
            query_timeout=config.exec_timeout,
        )

    def _base_command(self) -> List[str]:
        cmd = [self.kubectl_path]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", self.kubeconfig])
        if self.context:
            cmd.extend(["--context", self.context])
        return cmd

    def _run(self, args: Sequence[str], timeout: Optional[float]) -> subprocess.CompletedProcess:
        cmd = self._base_command() + list(args)
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                # Agent logs and check output are not guaranteed to be UTF-8
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise PreconditionFailedError(f"kubectl command not found: {self.kubectl_path}") from e

    def _query(self, args: Sequence[str]) -> subprocess.CompletedProcess:
        try:
            return self._run(args, timeout=self.query_timeout)
        except subprocess.TimeoutExpired as e:
            raise PreconditionFailedError(
                f"kubectl {' '.join(args[:2])} timed out after {self.query_timeout}s"
            ) from e

    @staticmethod
    def _pod_ref(item: Dict[str, Any]) -> PodRef:
        metadata = item.get("metadata") or {}
        spec = item.get("spec") or {}
        return PodRef(name=metadata.get("name", ""), node=spec.get("nodeName") or "")

    @staticmethod
    def _load_json(stdout: str) -> Dict[str, Any]:
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise PreconditionFailedError(f"Unexpected kubectl output: {e}") from e

    # PodQuery

    def list_pods(
        self,
        namespace: str,
        label_selector: str,
        node_name: Optional[str] = None,
    ) -> List[PodRef]:
        """
        List pods matching a label selector, optionally on one node.

        Returns:
            Pods in the order kubectl returned them
        """
        args = ["get", "pods", "-n", namespace, "-l", label_selector]
        if node_name:
            args.extend(["--field-selector", f"spec.nodeName={node_name}"])
        args.extend(["-o", "json"])

        process = self._query(args)
        if process.returncode != 0:
            stderr = process.stderr.strip()
            logger.error(f"Failed to list pods in {namespace}: {stderr}")
            raise PreconditionFailedError(stderr or f"kubectl exited with code {process.returncode}")

        items = self._load_json(process.stdout).get("items") or []
        return [pod for pod in (self._pod_ref(item) for item in items) if pod.name]

    def get_pod(self, namespace: str, name: str) -> Optional[PodRef]:
        """
        Look up a single pod.

        Returns:
            PodRef, or None if the pod does not exist
        """
        process = self._query(["get", "pod", "-n", namespace, name, "-o", "json"])
        if process.returncode != 0:
            stderr = process.stderr.strip()
            if "NotFound" in stderr or "not found" in stderr:
                return None
            logger.error(f"Failed to get pod {namespace}/{name}: {stderr}")
            raise PreconditionFailedError(stderr or f"kubectl exited with code {process.returncode}")

        return self._pod_ref(self._load_json(process.stdout))

    # RemoteExec

    def execute(
        self,
        namespace: str,
        pod_name: str,
        container: str,
        command: Sequence[str],
        timeout: Optional[float] = None,
    ) -> RemoteExecResult:
        """
        Run command tokens inside a container via kubectl exec.

        Returns:
            RemoteExecResult; failures of the remote command are data

        Raises:
            PreconditionFailedError: If kubectl is missing or the cluster is unreachable
        """
        args = ["exec", "-n", namespace, pod_name, "-c", container, "--"] + list(command)

        try:
            process = self._run(args, timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out on {namespace}/{pod_name}")
            return RemoteExecResult(
                stdout="",
                success=False,
                error_message=f"Command timed out after {timeout}s",
                return_code=-1,
                timed_out=True,
            )

        if process.returncode != 0 and is_connectivity_error(process.stderr):
            raise PreconditionFailedError(process.stderr.strip())

        stderr = process.stderr or ""
        return RemoteExecResult(
            stdout=process.stdout or "",
            success=process.returncode == 0,
            error_message=None if process.returncode == 0 else (stderr.strip() or None),
            return_code=process.returncode,
            stderr=stderr,
        )

    def is_available(self) -> bool:
        """Check that kubectl runs and can reach a server."""
        try:
            process = self._run(["version", "-o", "json"], timeout=10)
        except (PreconditionFailedError, subprocess.TimeoutExpired):
            return False
        return process.returncode == 0

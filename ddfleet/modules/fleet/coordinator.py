"""
Fleet Exec Coordinator.

Resolves a PodSelector to concrete agent pods and runs a command on one pod
or on every node agent of the fleet. Per-pod failures are captured in
ExecOutcome values; only PodNotFoundError (single-pod mode) and
PreconditionFailedError (no cluster connectivity) are raised.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Set

from .interfaces import PodQuery, RemoteExec
from .models import (
    ExecOutcome,
    ExecRequest,
    ExecStatus,
    FleetResult,
    PodNotFoundError,
    PodRef,
    PodRole,
    PodSelector,
    PreconditionFailedError,
)

if TYPE_CHECKING:
    from ddfleet.config.provider import FleetConfig

logger = logging.getLogger(__name__)

# How often the coordinating thread re-checks the cancel signal
CANCEL_POLL_INTERVAL = 0.05

CANCELLED_REASON = "Cancelled"
DEADLINE_REASON = "Cancelled: operation timed out"


class FleetExecCoordinator:
    """
    Discovers agent pods and executes commands on them.

    The coordinator holds no state between calls; the collaborators and the
    configuration are fixed at construction.
    """

    def __init__(
        self,
        pod_query: PodQuery,
        remote_exec: RemoteExec,
        config: "FleetConfig",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize coordinator.

        Args:
            pod_query: Lists and looks up pods
            remote_exec: Runs commands inside pod containers
            config: Selectors, container names and worker limits
            clock: Monotonic clock used for operation deadlines
        """
        self.pod_query = pod_query
        self.remote_exec = remote_exec
        self.config = config
        self._clock = clock

    # Request construction

    def selector(
        self,
        role: PodRole = PodRole.NODE_AGENT,
        namespace: Optional[str] = None,
        pod: Optional[str] = None,
        node: Optional[str] = None,
    ) -> PodSelector:
        """Build a selector, filling the namespace from configuration."""
        return PodSelector(
            namespace=namespace or self.config.namespace,
            role=role,
            explicit_pod=pod or None,
            node_filter=node or None,
        )

    def request(
        self,
        command: Sequence[str],
        role: PodRole = PodRole.NODE_AGENT,
        namespace: Optional[str] = None,
        pod: Optional[str] = None,
        node: Optional[str] = None,
    ) -> ExecRequest:
        """Build an ExecRequest targeting the container that matches the role."""
        return ExecRequest(
            selector=self.selector(role, namespace, pod, node),
            command=tuple(command),
            container=self.config.container_for(role),
        )

    # Discovery

    def _list(self, selector: PodSelector) -> List[PodRef]:
        label_selector = self.config.label_selector_for(selector.role)

        if selector.role is PodRole.CLUSTER_AGENT:
            pods = self.pod_query.list_pods(selector.namespace, label_selector)
            return pods[:1]

        pods = self.pod_query.list_pods(
            selector.namespace, label_selector, node_name=selector.node_filter
        )
        if selector.node_filter:
            pods = [pod for pod in pods if pod.node == selector.node_filter]
        return list(pods)

    def _lookup(self, selector: PodSelector) -> PodRef:
        pod = self.pod_query.get_pod(selector.namespace, selector.explicit_pod)
        if pod is None:
            raise PodNotFoundError(
                f"Pod '{selector.explicit_pod}' not found in namespace '{selector.namespace}'",
                namespace=selector.namespace,
            )
        return pod

    def discover(self, selector: PodSelector) -> List[PodRef]:
        """
        Resolve a selector to the pods it matches.

        Node agents are returned in the order the cluster API lists them.
        The cluster agent role yields at most one pod. An explicit pod
        narrows discovery to that pod alone.

        Raises:
            PodNotFoundError: If nothing matches
        """
        if selector.explicit_pod:
            return [self._lookup(selector)]

        pods = self._list(selector)
        if not pods:
            if selector.role is PodRole.CLUSTER_AGENT:
                message = f"Cluster agent not found in namespace '{selector.namespace}'"
            elif selector.node_filter:
                message = (
                    f"No agent pods found on node '{selector.node_filter}' "
                    f"in namespace '{selector.namespace}'"
                )
            else:
                message = f"No agent pods found in namespace '{selector.namespace}'"
            raise PodNotFoundError(message, namespace=selector.namespace)

        logger.debug(f"Discovered {len(pods)} {selector.role.value} pod(s) in {selector.namespace}")
        return pods

    def resolve_single(self, selector: PodSelector) -> PodRef:
        """
        Resolve a selector to exactly one pod.

        An explicit pod name is a hard constraint: if it does not exist the
        lookup fails instead of falling back to discovery.

        Raises:
            PodNotFoundError: If no pod satisfies the selector
        """
        if selector.explicit_pod:
            return self._lookup(selector)
        return self.discover(selector)[0]

    # Execution

    def exec_one(
        self,
        pod: PodRef,
        container: str,
        command: Sequence[str],
        namespace: str,
        timeout: Optional[float] = None,
    ) -> ExecOutcome:
        """
        Run a command once in one container of one pod.

        Never raises for per-pod failures; only PreconditionFailedError
        escapes because no pod can be reached at all.
        """
        exec_timeout = self.config.exec_timeout if timeout is None else min(timeout, self.config.exec_timeout)
        start = self._clock()

        try:
            result = self.remote_exec.execute(
                namespace, pod.name, container, tuple(command), timeout=exec_timeout
            )
        except PreconditionFailedError:
            raise
        except Exception as e:
            logger.warning(f"Exec on {namespace}/{pod.name} failed: {e}")
            return ExecOutcome(
                pod=pod,
                ok=False,
                error_message=str(e) or e.__class__.__name__,
                status=ExecStatus.FAILED,
                duration_ms=self._elapsed_ms(start),
            )

        duration_ms = self._elapsed_ms(start)

        if result.success:
            return ExecOutcome(
                pod=pod,
                ok=True,
                stdout=result.stdout,
                status=ExecStatus.SUCCESS,
                return_code=result.return_code,
                stderr=result.stderr,
                duration_ms=duration_ms,
            )

        if result.timed_out:
            status = ExecStatus.TIMEOUT
            error_message = result.error_message or f"Command timed out after {exec_timeout}s"
        else:
            status = ExecStatus.FAILED
            error_message = (
                result.error_message
                or result.stderr.strip()
                or f"Command exited with code {result.return_code}"
            )

        logger.info(f"Command failed on {namespace}/{pod.name} ({status.value}): {error_message}")
        return ExecOutcome(
            pod=pod,
            ok=False,
            stdout=result.stdout,
            error_message=error_message,
            status=status,
            return_code=result.return_code,
            stderr=result.stderr,
            duration_ms=duration_ms,
        )

    def exec_fleet(
        self,
        selector: PodSelector,
        container: str,
        command: Sequence[str],
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> FleetResult:
        """
        Run a command on every pod matched by the selector.

        Args:
            selector: Fleet to target
            container: Container name inside each pod
            command: Command tokens
            cancel_event: When set, no new execs are issued
            timeout: Overall operation budget in seconds

        Returns:
            FleetResult with one outcome per discovered pod, in discovery
            order. An empty fleet yields an empty result. Pods that were in
            flight or never started when the operation was cancelled carry
            status "cancelled".

        In-flight execs are abandoned on cancellation, not stopped: their
        worker threads keep running after this returns until the remote call
        finishes or hits its own timeout, which is capped at the remaining
        operation budget and at FleetConfig.exec_timeout. Their late
        outcomes are discarded.
        """
        if selector.explicit_pod:
            pods = [self._lookup(selector)]
        else:
            pods = self._list(selector)

        if not pods:
            logger.info(f"No {selector.role.value} pods matched in namespace {selector.namespace}")
            return FleetResult()

        command = tuple(command)
        deadline = None if timeout is None else self._clock() + timeout
        workers = min(self.config.max_workers, len(pods))

        logger.info(
            f"Executing {command[0]!r} on {len(pods)} pod(s) in {selector.namespace} "
            f"with {workers} worker(s)"
        )

        if workers == 1:
            slots = self._exec_sequential(pods, container, command, selector.namespace, cancel_event, deadline)
        else:
            slots = self._exec_parallel(pods, container, command, selector.namespace, cancel_event, deadline, workers)

        reason = self._stop_reason(cancel_event, deadline)
        outcomes = [
            slot if slot is not None else ExecOutcome.cancelled(pod, reason)
            for pod, slot in zip(pods, slots)
        ]
        return FleetResult(outcomes)

    def run(
        self,
        request: ExecRequest,
        fleet: bool = False,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> FleetResult:
        """
        Execute a request on one pod (default) or across the fleet.

        Single-pod mode raises PodNotFoundError when nothing matches; fleet
        mode reports an empty result instead.
        """
        if fleet:
            return self.exec_fleet(
                request.selector, request.container, request.command, cancel_event, timeout
            )

        pod = self.resolve_single(request.selector)
        outcome = self.exec_one(
            pod, request.container, request.command, request.selector.namespace, timeout
        )
        return FleetResult((outcome,))

    # Internals

    def _exec_sequential(
        self,
        pods: Sequence[PodRef],
        container: str,
        command: Sequence[str],
        namespace: str,
        cancel_event: Optional[threading.Event],
        deadline: Optional[float],
    ) -> List[Optional[ExecOutcome]]:
        slots: List[Optional[ExecOutcome]] = [None] * len(pods)

        for index, pod in enumerate(pods):
            if self._should_stop(cancel_event, deadline):
                logger.info(f"Fleet operation stopped before {pod.name}")
                break

            outcome = self.exec_one(pod, container, command, namespace, self._remaining(deadline))

            # An exec cut short by the operation deadline counts as cancelled
            if outcome.status is ExecStatus.TIMEOUT and self._should_stop(cancel_event, deadline):
                break
            slots[index] = outcome

        return slots

    def _exec_parallel(
        self,
        pods: Sequence[PodRef],
        container: str,
        command: Sequence[str],
        namespace: str,
        cancel_event: Optional[threading.Event],
        deadline: Optional[float],
        workers: int,
    ) -> List[Optional[ExecOutcome]]:
        # Only this thread writes to slots; workers hand back outcomes via futures
        slots: List[Optional[ExecOutcome]] = [None] * len(pods)
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ddfleet-exec")
        futures: Dict[Future, int] = {}

        try:
            for index, pod in enumerate(pods):
                future = pool.submit(
                    self._guarded_exec, pod, container, command, namespace, cancel_event, deadline
                )
                futures[future] = index

            pending = set(futures)
            while pending:
                if self._should_stop(cancel_event, deadline):
                    # Outcomes that finished after the last wait() still count
                    pending = self._collect_finished(pending, futures, slots)
                    logger.info(f"Fleet operation stopped with {len(pending)} pod(s) outstanding")
                    break

                done, pending = wait(
                    pending,
                    timeout=self._wait_interval(cancel_event, deadline),
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    slots[futures[future]] = future.result()
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        return slots

    def _collect_finished(
        self,
        pending: Set[Future],
        futures: Dict[Future, int],
        slots: List[Optional[ExecOutcome]],
    ) -> Set[Future]:
        still_pending = set()
        for future in pending:
            if future.done() and not future.cancelled():
                slots[futures[future]] = future.result()
            else:
                still_pending.add(future)
        return still_pending

    def _guarded_exec(
        self,
        pod: PodRef,
        container: str,
        command: Sequence[str],
        namespace: str,
        cancel_event: Optional[threading.Event],
        deadline: Optional[float],
    ) -> Optional[ExecOutcome]:
        if self._should_stop(cancel_event, deadline):
            return None
        return self.exec_one(pod, container, command, namespace, self._remaining(deadline))

    def _should_stop(self, cancel_event: Optional[threading.Event], deadline: Optional[float]) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        return deadline is not None and self._clock() >= deadline

    def _stop_reason(self, cancel_event: Optional[threading.Event], deadline: Optional[float]) -> str:
        if cancel_event is not None and cancel_event.is_set():
            return CANCELLED_REASON
        if deadline is not None and self._clock() >= deadline:
            return DEADLINE_REASON
        return CANCELLED_REASON

    def _remaining(self, deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(deadline - self._clock(), 0.001)

    def _wait_interval(
        self, cancel_event: Optional[threading.Event], deadline: Optional[float]
    ) -> Optional[float]:
        remaining = self._remaining(deadline)
        if cancel_event is None:
            return remaining
        if remaining is None:
            return CANCEL_POLL_INTERVAL
        return min(remaining, CANCEL_POLL_INTERVAL)

    def _elapsed_ms(self, start: float) -> int:
        return int((self._clock() - start) * 1000)

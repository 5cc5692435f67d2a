"""
Datadog Agent diagnostics.

Each public method runs one Agent CLI (or filesystem) command either on a
single node agent or across the whole fleet and renders the outcomes into
the JSON documents callers expect:

    single pod:  {"pod": ..., "node": ..., "<key>": ...}
    fleet:       {"nodeAgents": [{"pod": ..., "node": ..., "<key>": ...}, ...]}

Status and diagnose can additionally include the Cluster Agent.
"""

import logging
import re
import threading
from typing import Any, Dict, List, Optional, Sequence

from ddfleet.modules.fleet.coordinator import FleetExecCoordinator
from ddfleet.modules.fleet.models import (
    ExecOutcome,
    FleetResult,
    PodNotFoundError,
    PodRole,
)

from .formatters import (
    Formatter,
    JsonFormatter,
    LinesFormatter,
    StatLinesFormatter,
    filter_keys,
    is_error,
    select_section,
)

logger = logging.getLogger(__name__)

READ_MODES = ("full", "head", "tail")
CHECK_LOG_LEVELS = ("trace", "debug", "info", "warn", "error")
FIND_TYPES = ("f", "d", "l", "b", "c", "p", "s")

STAT_FORMAT = '{"size":%s,"mtime":%Y,"mode":"%a"}'
FIND_STAT_FORMAT = "%s|%a|%Y|%F|%n"


class AgentDiagnostics:
    """Agent status, checks, diagnostics and file access on agent pods."""

    def __init__(
        self,
        coordinator: FleetExecCoordinator,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize diagnostics.

        Args:
            coordinator: Fleet coordinator used for discovery and exec
            cancel_event: Optional cancel signal for fleet operations
            timeout: Optional overall budget for fleet operations
        """
        self.coordinator = coordinator
        self.cancel_event = cancel_event
        self.timeout = timeout

    # Building blocks

    def _agent_command(self, role: PodRole, *args: str) -> List[str]:
        return [self.coordinator.config.binary_for(role), *args]

    def _execute(
        self,
        command: Sequence[str],
        namespace: Optional[str] = None,
        pod: Optional[str] = None,
        node: Optional[str] = None,
        all_agents: bool = False,
    ) -> FleetResult:
        # The whole fleet is targeted in --all mode; an explicit pod only applies to single mode
        request = self.coordinator.request(
            command,
            PodRole.NODE_AGENT,
            namespace=namespace,
            pod=None if all_agents else pod,
            node=node,
        )
        return self.coordinator.run(
            request, fleet=all_agents, cancel_event=self.cancel_event, timeout=self.timeout
        )

    @staticmethod
    def _entry(outcome: ExecOutcome, key: str, value: Any) -> Dict[str, Any]:
        return {"pod": outcome.pod.name, "node": outcome.pod.node, key: value}

    def _render(
        self,
        result: FleetResult,
        key: str,
        formatter: Formatter,
        all_agents: bool,
        transform=None,
    ) -> Dict[str, Any]:
        entries = []
        for outcome in result:
            value = formatter.format(outcome)
            if transform is not None and not is_error(value):
                value = transform(value)
            entries.append(self._entry(outcome, key, value))

        if all_agents:
            return {"nodeAgents": entries}
        return entries[0]

    def _cluster_agent(
        self,
        args: Sequence[str],
        key: str,
        namespace: Optional[str],
        formatter: Formatter,
        transform=None,
    ) -> Dict[str, Any]:
        request = self.coordinator.request(
            self._agent_command(PodRole.CLUSTER_AGENT, *args),
            PodRole.CLUSTER_AGENT,
            namespace=namespace,
        )
        try:
            result = self.coordinator.run(request)
        except PodNotFoundError:
            logger.info("Cluster agent not found, skipping")
            return {"pod": "", key: {"error": "Cluster agent not found"}}

        outcome = result.outcomes[0]
        value = formatter.format(outcome)
        if transform is not None and not is_error(value):
            value = transform(value)
        return {"pod": outcome.pod.name, key: value}

    # Agent status

    def status(
        self,
        namespace: Optional[str] = None,
        pod: Optional[str] = None,
        node: Optional[str] = None,
        section: Optional[str] = None,
        include_cluster_agent: bool = True,
        all_agents: bool = False,
    ) -> Dict[str, Any]:
        """
        Agent status (`agent status --json`), optionally one section only.

        Returns:
            Combined node/cluster agent document, the bare node agent status
            when the cluster agent is excluded, or a fleet document
        """
        command = self._agent_command(PodRole.NODE_AGENT, "status", "--json")
        result = self._execute(command, namespace, pod, node, all_agents)

        def pick(document):
            return select_section(document, section)

        formatter = JsonFormatter("Failed to get agent status")

        if all_agents:
            document = self._render(result, "status", formatter, True, pick)
        elif include_cluster_agent:
            document = {"nodeAgent": self._render(result, "status", formatter, False, pick)}
        else:
            outcome = result.outcomes[0]
            value = formatter.format(outcome)
            return value if is_error(value) else pick(value)

        if include_cluster_agent:
            document["clusterAgent"] = self._cluster_agent(
                ["status", "--json"],
                "status",
                namespace,
                JsonFormatter("Failed to get cluster agent status"),
                pick,
            )
        return document

    def status_sections(
        self,
        namespace: Optional[str] = None,
        pod: Optional[str] = None,
        node: Optional[str] = None,
    ) -> Any:
        """Top-level section names of the agent status document."""
        command = self._agent_command(PodRole.NODE_AGENT, "status", "--json")
        outcome = self._execute(command, namespace, pod, node).outcomes[0]
        document = JsonFormatter("Failed to get agent status").format(outcome)
        if isinstance(document, dict) and not is_error(document):
            return sorted(document)
        return document

    # Diagnose

    @staticmethod
    def _diagnose_args(
        include: Optional[str],
        exclude: Optional[str],
        list_suites: bool,
        verbose: bool,
    ) -> List[str]:
        args = ["diagnose", "--json"]
        if list_suites:
            args.append("--list")
        if include:
            args.extend(["--include", include])
        if exclude:
            args.extend(["--exclude", exclude])
        if verbose:
            args.append("--verbose")
        return args

    def diagnose(
        self,
        namespace: Optional[str] = None,
        pod: Optional[str] = None,
        node: Optional[str] = None,
        include: Optional[str] = None,
        exclude: Optional[str] = None,
        list_suites: bool = False,
        verbose: bool = False,
        include_cluster_agent: bool = True,
        all_agents: bool = False,
    ) -> Any:
        """Run `agent diagnose --json`; in list mode only the first agent is asked."""
        args = self._diagnose_args(include, exclude, list_suites, verbose)
        formatter = JsonFormatter("Failed to run agent diagnose")

        if list_suites:
            outcome = self._execute(self._agent_command(PodRole.NODE_AGENT, *args), namespace, pod, node).outcomes[0]
            return formatter.format(outcome)

        result = self._execute(
            self._agent_command(PodRole.NODE_AGENT, *args), namespace, pod, node, all_agents
        )

        if all_agents:
            document = self._render(result, "diagnose", formatter, True)
        elif include_cluster_agent:
            document = {"nodeAgent": self._render(result, "diagnose", formatter, False)}
        else:
            return self._render(result, "diagnose", formatter, False)

        if include_cluster_agent:
            document["clusterAgent"] = self._cluster_agent(
                args, "diagnose", namespace, JsonFormatter("Failed to run cluster agent diagnose")
            )
        return document

    # Checks

    def run_check(
        self,
        check: str,
        namespace: Optional[str] = None,
        pod: Optional[str] = None,
        node: Optional[str] = None,
        log_level: Optional[str] = None,
        delay: Optional[int] = None,
        times: Optional[int] = None,
        pause: bool = False,
        all_agents: bool = False,
    ) -> Dict[str, Any]:
        """Run a check once (`agent check NAME --json`) and return its result."""
        if not check:
            raise ValueError("Missing required argument: check")
        if log_level and log_level not in CHECK_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {log_level}. Use: {', '.join(CHECK_LOG_LEVELS)}")
        if delay is not None and delay < 0:
            raise ValueError("delay must not be negative")
        if times is not None and times < 1:
            raise ValueError("times must be at least 1")

        args = ["check", check, "--json"]
        if log_level:
            args.extend(["--log-level", log_level])
        if delay is not None:
            args.extend(["--delay", str(delay)])
        if times is not None:
            args.extend(["--check-times", str(times)])
        if pause:
            args.append("--pause")

        result = self._execute(
            self._agent_command(PodRole.NODE_AGENT, *args), namespace, pod, node, all_agents
        )
        document = self._render(result, "result", JsonFormatter(f"Failed to run check {check}"), all_agents)
        return {"check": check, **document}

    def check_details(
        self,
        namespace: Optional[str] = None,
        pod: Optional[str] = None,
        node: Optional[str] = None,
        check_filter: Optional[str] = None,
        summary: bool = False,
        all_agents: bool = False,
    ) -> Dict[str, Any]:
        """Check runner statistics taken from the `runnerStats` status section."""

        def extract(document):
            stats = filter_keys(document.get("runnerStats") or {}, check_filter)
            if not summary:
                return stats
            return [
                {
                    "check": name,
                    "lastRun": values.get("LastRun"),
                    "averageExecutionTime": values.get("AverageExecutionTime"),
                    "lastExecutionTime": values.get("LastExecutionTime"),
                    "errors": values.get("Errors") or 0,
                    "warnings": values.get("Warnings") or 0,
                }
                for name, values in stats.items()
            ]

        command = self._agent_command(PodRole.NODE_AGENT, "status", "--json")
        result = self._execute(command, namespace, pod, node, all_agents)
        return self._render(
            result, "checkDetails", JsonFormatter("Failed to get agent status"), all_agents, extract
        )

    def configured_checks(
        self,
        namespace: Optional[str] = None,
        pod: Optional[str] = None,
        node: Optional[str] = None,
        check_filter: Optional[str] = None,
        all_agents: bool = False,
    ) -> Dict[str, Any]:
        """Checks scheduled on the agent, with their config provider and source."""

        def extract(document):
            if isinstance(document, dict):
                entries = document.get("configs") or []
            else:
                entries = document or []
            checks = []
            for entry in entries:
                config = entry.get("config", entry) if isinstance(entry, dict) else {}
                name = config.get("check_name") or config.get("name") or ""
                if check_filter and check_filter not in name:
                    continue
                checks.append(
                    {
                        "name": name,
                        "provider": config.get("provider", ""),
                        "source": config.get("source", ""),
                    }
                )
            return {"checks": checks}

        command = self._agent_command(PodRole.NODE_AGENT, "configcheck", "--json")
        result = self._execute(command, namespace, pod, node, all_agents)
        return self._render(
            result, "config", JsonFormatter("Failed to get configured checks"), all_agents, extract
        )

    # Filesystem

    def read_file(
        self,
        path: str,
        namespace: Optional[str] = None,
        pod: Optional[str] = None,
        node: Optional[str] = None,
        mode: str = "tail",
        lines: int = 100,
        grep: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Read a file from the node agent container.

        Args:
            path: File path inside the agent container
            mode: full, head or tail
            lines: Lines to read for head/tail
            grep: Optional regular expression applied to the lines read

        Returns:
            {pod, node, path, content, metadata} or {pod, node, path, error}
        """
        if not path:
            raise ValueError("Missing required argument: path")
        if mode not in READ_MODES:
            raise ValueError(f"Invalid mode: {mode}. Use: {', '.join(READ_MODES)}")
        if lines < 1:
            raise ValueError("lines must be at least 1")
        try:
            pattern = re.compile(grep) if grep else None
        except re.error as e:
            raise ValueError(f"Invalid grep pattern: {e}") from e

        target = self.coordinator.resolve_single(
            self.coordinator.selector(PodRole.NODE_AGENT, namespace, pod, node)
        )
        namespace = namespace or self.coordinator.config.namespace
        container = self.coordinator.config.container_for(PodRole.NODE_AGENT)
        document: Dict[str, Any] = {"pod": target.name, "node": target.node, "path": path}

        info = self.coordinator.exec_one(target, container, ["stat", "-c", STAT_FORMAT, "--", path], namespace)
        metadata = JsonFormatter().format(info)
        if not info.ok or "error" in metadata:
            document["error"] = f"File not found or not accessible: {path}"
            return document

        if mode == "full":
            read_command = ["cat", "--", path]
        else:
            read_command = [mode, "-n", str(lines), "--", path]

        read = self.coordinator.exec_one(target, container, read_command, namespace)
        if not read.ok:
            document["error"] = "Failed to read file"
            return document

        content_lines = read.stdout.splitlines()
        if pattern is not None:
            content_lines = [line for line in content_lines if pattern.search(line)]

        document["content"] = "\n".join(content_lines)
        document["metadata"] = {
            **metadata,
            "linesReturned": len(content_lines),
            "readMode": mode,
            "linesRequested": lines,
        }
        return document

    def list_files(
        self,
        path: str,
        namespace: Optional[str] = None,
        pod: Optional[str] = None,
        node: Optional[str] = None,
        pattern: Optional[str] = None,
        file_type: Optional[str] = None,
        max_depth: Optional[int] = 1,
        long: bool = False,
    ) -> Dict[str, Any]:
        """
        List files under a path in the node agent container using find.

        max_depth=None lists recursively. In long mode every entry carries
        size, mode, mtime and type.
        """
        if not path:
            raise ValueError("Missing required argument: path")
        if file_type and file_type not in FIND_TYPES:
            raise ValueError(f"Invalid file type: {file_type}. Use one of: {', '.join(FIND_TYPES)}")
        if max_depth is not None and max_depth < 0:
            raise ValueError("max_depth must not be negative")

        command = ["find", path]
        if max_depth is not None:
            command.extend(["-maxdepth", str(max_depth)])
        if file_type:
            command.extend(["-type", file_type])
        if pattern:
            command.extend(["-name", pattern])
        if long:
            command.extend(["-exec", "stat", "-c", FIND_STAT_FORMAT, "{}", ";"])

        outcome = self._execute(command, namespace, pod, node).outcomes[0]
        formatter = StatLinesFormatter() if long else LinesFormatter()
        return {
            "pod": outcome.pod.name,
            "node": outcome.pod.node,
            "path": path,
            "files": formatter.format(outcome),
        }

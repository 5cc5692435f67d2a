#!/usr/bin/env python3
"""
ddfleet command line interface.

Every subcommand prints one JSON document on stdout. Fatal errors (no pod
found, cluster unreachable, invalid arguments) print {"error": ...} on
stderr and exit with status 1.

Examples:
    ddfleet status --no-cluster-agent
    ddfleet status --all --section runnerStats
    ddfleet check --check cpu --all --workers 4
    ddfleet read-file --path /var/log/datadog/agent.log --lines 50 --grep ERROR
    ddfleet exec --all -- cat /etc/hostname
"""

import argparse
import logging
import os
import sys
import threading
from typing import List, Optional

from rich.console import Console

from ddfleet import __version__
from ddfleet.config.provider import load_fleet_config
from ddfleet.logging_config import configure_logging
from ddfleet.modules.diagnostics import AgentDiagnostics
from ddfleet.modules.fleet import FleetError, FleetExecCoordinator, PodRole
from ddfleet.modules.kube import KubectlClient

logger = logging.getLogger(__name__)


def _target_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--namespace", "-n", help="Kubernetes namespace (default: DD_AGENT_NAMESPACE or 'default')")
    parser.add_argument("--pod", "-p", help="Specific agent pod (default: first available)")
    parser.add_argument("--node", help="Target agent on specific node")
    parser.add_argument("--workers", type=int, help="Concurrent pod execs for --all (1-8)")
    parser.add_argument("--timeout", type=float, help="Overall time budget in seconds for --all")
    parser.add_argument("--exec-timeout", type=int, help="Per-pod command timeout in seconds")
    parser.add_argument("--context", help="kubeconfig context to use")
    return parser


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    target = _target_parser()

    parser = argparse.ArgumentParser(
        prog="ddfleet",
        description="Datadog Agent fleet diagnostics for Kubernetes",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging on stderr")
    subparsers = parser.add_subparsers(dest="subcommand", required=True)

    # exec
    p = subparsers.add_parser("exec", parents=[target], help="Run a command on agent pods")
    p.add_argument(
        "--role",
        choices=[role.value for role in PodRole],
        default=PodRole.NODE_AGENT.value,
        help="Target node agents or the cluster agent",
    )
    p.add_argument("--all", action="store_true", dest="all_agents", help="Run on all node agents")
    p.add_argument("command", nargs=argparse.REMAINDER, help="Command to run (after --)")

    # status
    p = subparsers.add_parser("status", parents=[target], help="Agent status")
    p.add_argument("--section", help="Filter to a status section (partial match supported)")
    p.add_argument("--no-cluster-agent", action="store_false", dest="include_cluster_agent")
    p.add_argument("--include-cluster-agent", action="store_true", dest="include_cluster_agent")
    p.add_argument("--all", action="store_true", dest="all_agents", help="Status from all node agents")
    p.set_defaults(include_cluster_agent=True)

    # sections
    subparsers.add_parser("sections", parents=[target], help="List agent status sections")

    # diagnose
    p = subparsers.add_parser("diagnose", parents=[target], help="Run agent diagnostics")
    p.add_argument("--include", "-i", help="Only run diagnostic suites matching this regex")
    p.add_argument("--exclude", "-e", help="Exclude diagnostic suites matching this regex")
    p.add_argument("--list", "-l", action="store_true", dest="list_suites", help="List diagnostic suites")
    p.add_argument("--verbose", "-v", action="store_true", help="Include passed diagnoses")
    p.add_argument("--no-cluster-agent", action="store_false", dest="include_cluster_agent")
    p.add_argument("--include-cluster-agent", action="store_true", dest="include_cluster_agent")
    p.add_argument("--all", action="store_true", dest="all_agents")
    p.set_defaults(include_cluster_agent=True)

    # check
    p = subparsers.add_parser("check", parents=[target], help="Run a check once")
    p.add_argument("--check", required=True, help="Check name to run")
    p.add_argument("--log-level", choices=["trace", "debug", "info", "warn", "error"])
    p.add_argument("--delay", type=int, help="Delay between check runs")
    p.add_argument("--times", type=int, help="Number of times to run the check")
    p.add_argument("--pause", action="store_true", help="Pause for breakpoint")
    p.add_argument("--all", action="store_true", dest="all_agents")

    # check-details
    p = subparsers.add_parser("check-details", parents=[target], help="Check execution statistics")
    p.add_argument("--check", help="Filter to checks containing this name")
    p.add_argument("--format", choices=["full", "summary"], default="full")
    p.add_argument("--all", action="store_true", dest="all_agents")

    # configured-checks
    p = subparsers.add_parser("configured-checks", parents=[target], help="List configured checks")
    p.add_argument("--check", help="Filter to checks containing this name")
    p.add_argument("--all", action="store_true", dest="all_agents")

    # read-file
    p = subparsers.add_parser("read-file", parents=[target], help="Read a file from the agent pod")
    p.add_argument("--path", required=True, help="File path to read")
    p.add_argument("--mode", choices=["full", "head", "tail"], default="tail")
    p.add_argument("--lines", type=int, default=100, help="Number of lines to read")
    p.add_argument("--grep", help="Only keep lines matching this regex")
    p.add_argument("--follow", "-f", action="store_const", const="tail", dest="mode",
                   help="Return the last lines of the file (non-interactive tail)")

    # list-files
    p = subparsers.add_parser("list-files", parents=[target], help="List files on the agent pod")
    p.add_argument("--path", required=True, help="Directory to list")
    p.add_argument("--pattern", help="Filename glob")
    p.add_argument("--type", dest="file_type", help="find -type value (f, d, l, ...)")
    p.add_argument("--max-depth", type=int, default=1)
    p.add_argument("--recursive", "-r", action="store_const", const=None, dest="max_depth")
    p.add_argument("--long", "-l", action="store_true", help="Include size, mode, mtime and type")

    # serve
    p = subparsers.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host")
    p.add_argument("--port", type=int)

    return parser


def run_command(args: argparse.Namespace, diagnostics: AgentDiagnostics):
    """Dispatch a parsed subcommand and return the JSON document to print."""
    target = {"namespace": args.namespace, "pod": args.pod, "node": args.node}

    if args.subcommand == "exec":
        command = list(args.command)
        if command and command[0] == "--":
            command = command[1:]
        if not command:
            raise ValueError("Missing command to execute (usage: ddfleet exec [options] -- CMD ...)")

        coordinator = diagnostics.coordinator
        role = PodRole(args.role)
        request = coordinator.request(
            command,
            role,
            namespace=args.namespace,
            pod=None if args.all_agents else args.pod,
            node=args.node,
        )
        fleet = args.all_agents and role is PodRole.NODE_AGENT
        result = coordinator.run(
            request, fleet=fleet, cancel_event=diagnostics.cancel_event, timeout=diagnostics.timeout
        )
        return result.to_dict()

    if args.subcommand == "status":
        return diagnostics.status(
            section=args.section,
            include_cluster_agent=args.include_cluster_agent,
            all_agents=args.all_agents,
            **target,
        )

    if args.subcommand == "sections":
        return diagnostics.status_sections(**target)

    if args.subcommand == "diagnose":
        return diagnostics.diagnose(
            include=args.include,
            exclude=args.exclude,
            list_suites=args.list_suites,
            verbose=args.verbose,
            include_cluster_agent=args.include_cluster_agent,
            all_agents=args.all_agents,
            **target,
        )

    if args.subcommand == "check":
        return diagnostics.run_check(
            args.check,
            log_level=args.log_level,
            delay=args.delay,
            times=args.times,
            pause=args.pause,
            all_agents=args.all_agents,
            **target,
        )

    if args.subcommand == "check-details":
        return diagnostics.check_details(
            check_filter=args.check,
            summary=args.format == "summary",
            all_agents=args.all_agents,
            **target,
        )

    if args.subcommand == "configured-checks":
        return diagnostics.configured_checks(
            check_filter=args.check, all_agents=args.all_agents, **target
        )

    if args.subcommand == "read-file":
        return diagnostics.read_file(
            args.path, mode=args.mode, lines=args.lines, grep=args.grep, **target
        )

    if args.subcommand == "list-files":
        return diagnostics.list_files(
            args.path,
            pattern=args.pattern,
            file_type=args.file_type,
            max_depth=args.max_depth,
            long=args.long,
            **target,
        )

    raise ValueError(f"Unknown subcommand: {args.subcommand}")


def build_diagnostics(args: argparse.Namespace) -> AgentDiagnostics:
    """Wire the kubectl client, coordinator and diagnostics from arguments and environment."""
    config = load_fleet_config(
        max_workers=args.workers,
        exec_timeout=args.exec_timeout,
        kube_context=args.context,
    )
    client = KubectlClient.from_config(config)
    coordinator = FleetExecCoordinator(client, client, config)
    return AgentDiagnostics(coordinator, cancel_event=threading.Event(), timeout=args.timeout)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.subcommand == "serve":
        from ddfleet.main import serve

        serve(args.host, args.port)
        return 0

    level = "DEBUG" if args.debug else os.environ.get("LOG_LEVEL", "WARNING")
    configure_logging(level, stream="ext://sys.stderr")

    console = Console()
    err_console = Console(stderr=True)

    diagnostics = None
    try:
        diagnostics = build_diagnostics(args)
        document = run_command(args, diagnostics)
    except (FleetError, ValueError) as e:
        err_console.print_json(data={"error": str(e)})
        return 1
    except KeyboardInterrupt:
        if diagnostics is not None:
            diagnostics.cancel_event.set()
        err_console.print_json(data={"error": "Interrupted"})
        return 130

    console.print_json(data=document)
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Tests for the Agent diagnostics built on the fleet coordinator.

Agent CLI output comes from the canned documents in
fixtures/kubectl_scenarios.py and is served by FakeCluster.
"""

import json

import pytest

from ddfleet.config.provider import FleetConfig
from ddfleet.modules.diagnostics import AgentDiagnostics
from ddfleet.modules.diagnostics.agent import STAT_FORMAT
from ddfleet.modules.diagnostics.formatters import (
    JsonFormatter,
    LinesFormatter,
    StatLinesFormatter,
    TextFormatter,
    filter_keys,
    select_section,
)
from ddfleet.modules.fleet import (
    ExecOutcome,
    ExecStatus,
    FleetExecCoordinator,
    PodNotFoundError,
    PodRef,
    RemoteExecResult,
)
from fixtures.fake_cluster import FakeCluster
from fixtures.kubectl_scenarios import (
    AGENT_BIN,
    AGENT_LOG,
    AGENT_STATUS,
    CHECK_RESULT,
    CLUSTER_AGENT_BIN,
    CLUSTER_AGENT_STATUS,
    CONFIGCHECK_RESULT,
    DIAGNOSE_RESULT,
)

NODE_AGENTS = ["datadog-agent-aaaa", "datadog-agent-bbbb", "datadog-agent-cccc"]
CLUSTER_AGENT = "datadog-cluster-agent-7f9c"


def ok(stdout):
    return RemoteExecResult(stdout=stdout, success=True)


def agent_cli(command):
    """Answer Agent CLI invocations with canned JSON."""
    binary, subcommand = command[0], command[1]
    if binary == CLUSTER_AGENT_BIN:
        documents = {"status": CLUSTER_AGENT_STATUS, "diagnose": DIAGNOSE_RESULT}
    else:
        documents = {
            "status": AGENT_STATUS,
            "check": CHECK_RESULT,
            "diagnose": DIAGNOSE_RESULT,
            "configcheck": CONFIGCHECK_RESULT,
        }
    return ok(json.dumps(documents[subcommand]))


@pytest.fixture
def agents(fake_cluster):
    for pod in NODE_AGENTS + [CLUSTER_AGENT]:
        fake_cluster.respond(pod, agent_cli)
    return fake_cluster


@pytest.fixture
def diagnostics(coordinator, agents):
    return AgentDiagnostics(coordinator)


def commands_for(cluster, pod):
    return [call.command for call in cluster.exec_calls if call.pod == pod]


class TestStatus:
    """agent status --json."""

    def test_single_with_cluster_agent(self, diagnostics, agents):
        document = diagnostics.status()

        assert document == {
            "nodeAgent": {"pod": "datadog-agent-aaaa", "node": "node-1", "status": AGENT_STATUS},
            "clusterAgent": {"pod": CLUSTER_AGENT, "status": CLUSTER_AGENT_STATUS},
        }
        assert commands_for(agents, "datadog-agent-aaaa") == [(AGENT_BIN, "status", "--json")]
        assert agents.exec_calls[1].container == "cluster-agent"

    def test_without_cluster_agent_returns_bare_status(self, diagnostics, agents):
        assert diagnostics.status(include_cluster_agent=False) == AGENT_STATUS
        assert agents.executed_pods == ["datadog-agent-aaaa"]

    def test_section_exact_match(self, diagnostics):
        document = diagnostics.status(section="forwarderStats", include_cluster_agent=False)

        assert document == {"Transactions": {"Success": 42}}

    def test_section_partial_match(self, diagnostics):
        document = diagnostics.status(section="aggregator", include_cluster_agent=False)

        assert document == {"ChecksMetricSample": 1200}

    def test_section_not_found(self, diagnostics):
        document = diagnostics.status(section="nonexistent", include_cluster_agent=False)

        assert document["error"] == "Section not found"
        assert document["available_sections"] == sorted(AGENT_STATUS)

    def test_specific_pod(self, diagnostics, agents):
        document = diagnostics.status(pod="datadog-agent-cccc")

        assert document["nodeAgent"]["pod"] == "datadog-agent-cccc"
        assert document["nodeAgent"]["node"] == "node-3"

    def test_missing_pod_raises(self, diagnostics):
        with pytest.raises(PodNotFoundError):
            diagnostics.status(pod="datadog-agent-zzzz")

    def test_all_agents(self, diagnostics, agents):
        agents.fail("datadog-agent-bbbb", stderr="error: container not running")

        document = diagnostics.status(all_agents=True)

        assert [entry["pod"] for entry in document["nodeAgents"]] == NODE_AGENTS
        assert document["nodeAgents"][0]["status"] == AGENT_STATUS
        assert document["nodeAgents"][1]["status"] == {
            "error": "Failed to get agent status",
            "detail": "error: container not running",
        }
        assert document["clusterAgent"]["status"] == CLUSTER_AGENT_STATUS

    def test_all_agents_ignores_explicit_pod(self, diagnostics):
        document = diagnostics.status(pod="datadog-agent-cccc", all_agents=True, include_cluster_agent=False)

        assert len(document["nodeAgents"]) == 3
        assert "clusterAgent" not in document

    def test_cluster_agent_missing(self):
        cluster = FakeCluster.with_agents([("agent-1", "node-1")])
        cluster.respond("agent-1", agent_cli)

        diagnostics = AgentDiagnostics(FleetExecCoordinator(cluster, cluster, FleetConfig(namespace="datadog")))

        document = diagnostics.status()

        assert document["clusterAgent"] == {"pod": "", "status": {"error": "Cluster agent not found"}}

    def test_invalid_json(self, diagnostics, agents):
        agents.respond("datadog-agent-aaaa", ok("Agent (v7.60.0)\n  Status date: now"))

        document = diagnostics.status(include_cluster_agent=False)

        assert document["error"].startswith("Invalid JSON output")
        assert document["output"].startswith("Agent (v7.60.0)")

    def test_sections(self, diagnostics):
        assert diagnostics.status_sections() == sorted(AGENT_STATUS)


class TestDiagnose:
    """agent diagnose --json."""

    def test_single_with_cluster_agent(self, diagnostics, agents):
        document = diagnostics.diagnose()

        assert document["nodeAgent"]["diagnose"] == DIAGNOSE_RESULT
        assert document["clusterAgent"] == {"pod": CLUSTER_AGENT, "diagnose": DIAGNOSE_RESULT}

    def test_options(self, diagnostics, agents):
        diagnostics.diagnose(include="connectivity", exclude="ports", verbose=True, include_cluster_agent=False)

        assert commands_for(agents, "datadog-agent-aaaa") == [
            (AGENT_BIN, "diagnose", "--json", "--include", "connectivity", "--exclude", "ports", "--verbose")
        ]

    def test_list_asks_one_agent(self, diagnostics, agents):
        document = diagnostics.diagnose(list_suites=True, all_agents=True)

        assert document == DIAGNOSE_RESULT
        assert agents.executed_pods == ["datadog-agent-aaaa"]
        assert agents.exec_calls[0].command[-1] == "--list"

    def test_all_agents(self, diagnostics):
        document = diagnostics.diagnose(all_agents=True, include_cluster_agent=False)

        assert [entry["pod"] for entry in document["nodeAgents"]] == NODE_AGENTS


class TestChecks:
    """check, check details and configured checks."""

    def test_run_check(self, diagnostics, agents):
        document = diagnostics.run_check("cpu")

        assert document == {
            "check": "cpu",
            "pod": "datadog-agent-aaaa",
            "node": "node-1",
            "result": CHECK_RESULT,
        }
        assert commands_for(agents, "datadog-agent-aaaa") == [(AGENT_BIN, "check", "cpu", "--json")]

    def test_run_check_options(self, diagnostics, agents):
        diagnostics.run_check("kubelet", log_level="debug", delay=100, times=3, pause=True)

        assert agents.exec_calls[0].command == (
            AGENT_BIN, "check", "kubelet", "--json",
            "--log-level", "debug", "--delay", "100", "--check-times", "3", "--pause",
        )

    def test_run_check_all_agents(self, diagnostics):
        document = diagnostics.run_check("cpu", all_agents=True)

        assert document["check"] == "cpu"
        assert [entry["result"] for entry in document["nodeAgents"]] == [CHECK_RESULT] * 3

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"check": ""},
            {"check": "cpu", "log_level": "verbose"},
            {"check": "cpu", "delay": -1},
            {"check": "cpu", "times": 0},
        ],
    )
    def test_run_check_rejects_invalid_arguments(self, diagnostics, agents, kwargs):
        with pytest.raises(ValueError):
            diagnostics.run_check(**kwargs)
        assert agents.exec_calls == []

    def test_check_details(self, diagnostics):
        document = diagnostics.check_details(check_filter="CPU")

        assert document["checkDetails"] == {"cpu": AGENT_STATUS["runnerStats"]["cpu"]}

    def test_check_details_summary(self, diagnostics):
        document = diagnostics.check_details(check_filter="kubelet", summary=True)

        assert document["checkDetails"] == [
            {
                "check": "kubelet",
                "lastRun": 1704067210,
                "averageExecutionTime": 120,
                "lastExecutionTime": 98,
                "errors": 2,
                "warnings": 0,
            }
        ]

    def test_check_details_failure_is_not_transformed(self, diagnostics, agents):
        agents.fail("datadog-agent-aaaa")

        document = diagnostics.check_details(summary=True)

        assert document["checkDetails"]["error"] == "Failed to get agent status"

    def test_configured_checks(self, diagnostics):
        document = diagnostics.configured_checks()

        assert document["config"]["checks"] == [
            {"name": "cpu", "provider": "file", "source": "file:/etc/datadog-agent/conf.d/cpu.d/conf.yaml.default"},
            {"name": "kubelet", "provider": "file", "source": "file:/etc/datadog-agent/conf.d/kubelet.d/conf.yaml.default"},
            {"name": "redisdb", "provider": "kubernetes-container-allinone", "source": "container:containerd://abc"},
        ]

    def test_configured_checks_filter_all_agents(self, diagnostics):
        document = diagnostics.configured_checks(check_filter="redis", all_agents=True)

        for entry in document["nodeAgents"]:
            assert [check["name"] for check in entry["config"]["checks"]] == ["redisdb"]


class TestReadFile:
    """Reading files from the agent container."""

    @pytest.fixture
    def log_pod(self, agents):
        def files(command):
            if command[0] == "stat":
                return ok('{"size":2048,"mtime":1704067203,"mode":"644"}\n')
            if command[0] in ("tail", "head", "cat"):
                return ok(AGENT_LOG + "\n")
            return RemoteExecResult(stdout="", success=False, stderr="unexpected", return_code=1)

        agents.respond("datadog-agent-aaaa", files)
        return agents

    def test_tail(self, diagnostics, log_pod):
        document = diagnostics.read_file("/var/log/datadog/agent.log", lines=50)

        assert document["pod"] == "datadog-agent-aaaa"
        assert document["content"] == AGENT_LOG
        assert document["metadata"] == {
            "size": 2048,
            "mtime": 1704067203,
            "mode": "644",
            "linesReturned": 3,
            "readMode": "tail",
            "linesRequested": 50,
        }
        assert [call.command for call in log_pod.exec_calls] == [
            ("stat", "-c", STAT_FORMAT, "--", "/var/log/datadog/agent.log"),
            ("tail", "-n", "50", "--", "/var/log/datadog/agent.log"),
        ]

    def test_full_uses_cat(self, diagnostics, log_pod):
        diagnostics.read_file("/var/log/datadog/agent.log", mode="full")

        assert log_pod.exec_calls[1].command == ("cat", "--", "/var/log/datadog/agent.log")

    def test_grep_is_applied_locally(self, diagnostics, log_pod):
        document = diagnostics.read_file("/var/log/datadog/agent.log", grep="ERROR")

        assert document["content"] == AGENT_LOG.splitlines()[1]
        assert document["metadata"]["linesReturned"] == 1
        assert all("ERROR" not in token for call in log_pod.exec_calls for token in call.command)

    def test_missing_file(self, diagnostics, agents):
        agents.fail("datadog-agent-aaaa", stderr="stat: cannot stat '/nope': No such file or directory")

        document = diagnostics.read_file("/nope")

        assert document == {
            "pod": "datadog-agent-aaaa",
            "node": "node-1",
            "path": "/nope",
            "error": "File not found or not accessible: /nope",
        }

    def test_read_failure(self, diagnostics, agents):
        def unreadable(command):
            if command[0] == "stat":
                return ok('{"size":1,"mtime":1,"mode":"600"}')
            return RemoteExecResult(stdout="", success=False, stderr="Permission denied", return_code=1)

        agents.respond("datadog-agent-aaaa", unreadable)

        assert diagnostics.read_file("/etc/shadow")["error"] == "Failed to read file"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"path": ""},
            {"path": "/x", "mode": "middle"},
            {"path": "/x", "lines": 0},
            {"path": "/x", "grep": "("},
        ],
    )
    def test_invalid_arguments(self, diagnostics, kwargs):
        with pytest.raises(ValueError):
            diagnostics.read_file(**kwargs)


class TestListFiles:
    """Listing files with find."""

    def test_short_listing(self, diagnostics, agents):
        agents.respond(
            "datadog-agent-aaaa",
            ok("/etc/datadog-agent/conf.d\n/etc/datadog-agent/conf.d/cpu.d\n\n"),
        )

        document = diagnostics.list_files("/etc/datadog-agent/conf.d", pattern="*.d", file_type="d")

        assert document == {
            "pod": "datadog-agent-aaaa",
            "node": "node-1",
            "path": "/etc/datadog-agent/conf.d",
            "files": ["/etc/datadog-agent/conf.d", "/etc/datadog-agent/conf.d/cpu.d"],
        }
        assert agents.exec_calls[0].command == (
            "find", "/etc/datadog-agent/conf.d", "-maxdepth", "1", "-type", "d", "-name", "*.d",
        )

    def test_long_listing(self, diagnostics, agents):
        agents.respond(
            "datadog-agent-aaaa",
            ok(
                "4096|1777|1700000000|directory|/tmp\n"
                "12|644|1700000100|regular file|/tmp/a.log\n"
            ),
        )

        document = diagnostics.list_files("/tmp", long=True, max_depth=None)

        assert document["files"] == [
            {"path": "/tmp", "size": 4096, "mode": "1777", "mtime": 1700000000, "type": "directory"},
            {"path": "/tmp/a.log", "size": 12, "mode": "644", "mtime": 1700000100, "type": "regular file"},
        ]
        assert agents.exec_calls[0].command == (
            "find", "/tmp", "-exec", "stat", "-c", "%s|%a|%Y|%F|%n", "{}", ";",
        )

    def test_long_listing_keeps_unusual_names(self, diagnostics, agents):
        agents.respond(
            "datadog-agent-aaaa",
            ok(
                '3|644|1|regular file|/tmp/weird"name.log\n'
                "3|644|1|regular file|/tmp/back\\slash.log\n"
                "3|644|1|regular file|/tmp/pipe|name.log\n"
                "stat: cannot statx '/tmp/gone': No such file or directory\n"
            ),
        )

        files = diagnostics.list_files("/tmp", long=True)["files"]

        assert [entry.get("path") for entry in files] == [
            '/tmp/weird"name.log',
            "/tmp/back\\slash.log",
            "/tmp/pipe|name.log",
            None,
        ]
        assert files[3] == {"raw": "stat: cannot statx '/tmp/gone': No such file or directory"}

    def test_invalid_type(self, diagnostics):
        with pytest.raises(ValueError):
            diagnostics.list_files("/tmp", file_type="x")


class TestFormatters:
    """Per-outcome rendering helpers."""

    pod = PodRef("datadog-agent-aaaa", "node-1")

    def test_failed_outcome_keeps_error_text(self):
        outcome = ExecOutcome(self.pod, ok=False, error_message="boom", status=ExecStatus.FAILED)

        assert TextFormatter().format(outcome) == {"error": "boom"}
        assert LinesFormatter().format(outcome) == {"error": "boom"}
        assert StatLinesFormatter().format(outcome) == {"error": "boom"}

    def test_cancelled_outcome_carries_status(self):
        outcome = ExecOutcome.cancelled(self.pod)

        assert JsonFormatter("Failed").format(outcome) == {
            "error": "Failed",
            "detail": "Cancelled",
            "status": "cancelled",
        }

    def test_text_formatter_keeps_empty_output(self):
        assert TextFormatter().format(ExecOutcome(self.pod, ok=True, stdout="")) == ""

    def test_select_section_ambiguous(self):
        document = {"forwarderStats": {}, "forwarderHealth": {}, "ntp": {}}

        assert select_section(document, "forwarder") == {
            "error": "Multiple sections match",
            "matches": ["forwarderStats", "forwarderHealth"],
        }

    def test_select_section_without_name(self):
        assert select_section({"a": 1}, None) == {"a": 1}

    def test_filter_keys(self):
        assert filter_keys({"Kubelet": 1, "cpu": 2}, "kube") == {"Kubelet": 1}
        assert filter_keys({"cpu": 2}, None) == {"cpu": 2}

    def test_stat_line_with_non_numeric_size_is_raw(self):
        outcome = ExecOutcome(self.pod, ok=True, stdout="?|644|1|regular file|/tmp/a\n")

        assert StatLinesFormatter().format(outcome) == [{"raw": "?|644|1|regular file|/tmp/a"}]

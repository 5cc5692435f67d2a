"""
Shared pytest fixtures for ddfleet tests.

This module provides common fixtures including:
- KubectlMocker: Mock kubectl subprocess calls with canned responses
- FakeCluster: In-memory PodQuery/RemoteExec collaborator for coordinator tests
- FleetConfig and coordinator helpers
"""

import os
import subprocess
import sys
from dataclasses import dataclass
from typing import List, Optional, Pattern, Union
from unittest.mock import MagicMock, patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ddfleet.config.provider import FleetConfig
from ddfleet.modules.fleet import FleetExecCoordinator


# =============================================================================
# Kubectl Mocking Infrastructure
# =============================================================================

@dataclass
class KubectlResponse:
    """
    Represents a mocked kubectl command response.

    stdout/stderr given as bytes are decoded with the encoding and error
    handler the caller passed to subprocess.run, as the real call would.
    """
    stdout: Union[str, bytes] = ""
    stderr: Union[str, bytes] = ""
    returncode: int = 0
    raises: Optional[BaseException] = None

    def to_completed_process(self, encoding: Optional[str] = None, errors: Optional[str] = None) -> MagicMock:
        """Convert to a subprocess.CompletedProcess-like mock."""
        result = MagicMock()
        result.stdout = _decode_stream(self.stdout, encoding, errors)
        result.stderr = _decode_stream(self.stderr, encoding, errors)
        result.returncode = self.returncode
        return result


def _decode_stream(data: Union[str, bytes], encoding: Optional[str], errors: Optional[str]) -> str:
    if isinstance(data, str):
        return data
    return data.decode(encoding or "utf-8", errors or "strict")


@dataclass
class KubectlCall:
    """Record of a kubectl call made during testing."""
    command: List[str]
    full_command_str: str
    matched_pattern: Optional[str] = None
    response: Optional[KubectlResponse] = None
    timeout: Optional[float] = None


class KubectlMocker:
    """
    Mock kubectl subprocess calls with pattern-matched responses.

    This allows testing the kubectl client and the diagnostics built on it
    without a real Kubernetes cluster by intercepting subprocess.run calls.

    Usage:
        def test_list_agents(kubectl_mocker):
            kubectl_mocker.register("get pods", KubectlResponse(
                stdout=pod_list_json([("datadog-agent-abc", "node-1")])
            ))

            pods = KubectlClient().list_pods("datadog", "app=datadog")

            assert kubectl_mocker.was_called_with("get pods")
    """

    def __init__(self):
        self._responses: List[tuple] = []
        self._call_history: List[KubectlCall] = []
        self._default_response = KubectlResponse(
            stderr="Error: mock not configured for this command",
            returncode=1
        )
        self._passthrough_non_kubectl = True

    def register(
        self,
        pattern: Union[str, Pattern],
        response: KubectlResponse,
        priority: int = 0
    ) -> "KubectlMocker":
        """
        Register a response for commands matching the pattern.

        Args:
            pattern: String (substring match) or regex pattern
            response: KubectlResponse to return when matched
            priority: Higher priority patterns are checked first

        Returns:
            self for chaining
        """
        self._responses.append((pattern, response, priority))
        # Sort by priority (highest first)
        self._responses.sort(key=lambda x: x[2], reverse=True)
        return self

    def register_scenario(self, scenario_name: str) -> "KubectlMocker":
        """
        Register all responses for a named scenario.

        Args:
            scenario_name: One of the predefined scenario names

        Returns:
            self for chaining
        """
        from fixtures.kubectl_scenarios import SCENARIOS

        if scenario_name not in SCENARIOS:
            raise ValueError(
                f"Unknown scenario: {scenario_name}. "
                f"Available: {list(SCENARIOS.keys())}"
            )

        for pattern, response in SCENARIOS[scenario_name].items():
            self.register(pattern, response)

        return self

    def mock_run(
        self,
        cmd: List[str],
        capture_output: bool = True,
        text: bool = True,
        timeout: Optional[float] = None,
        **kwargs
    ) -> MagicMock:
        """
        Mock implementation of subprocess.run for kubectl commands.

        This method is used as a side_effect for patching subprocess.run.
        """
        cmd_str = " ".join(cmd)

        # Only intercept kubectl commands
        if os.path.basename(cmd[0]) != "kubectl":
            if self._passthrough_non_kubectl:
                return subprocess.run(
                    cmd,
                    capture_output=capture_output,
                    text=text,
                    timeout=timeout,
                    **kwargs
                )
            else:
                raise RuntimeError(f"Non-kubectl command blocked: {cmd_str}")

        # Find matching response
        kubectl_args = " ".join(cmd[1:])
        matched_pattern = None
        response = self._default_response

        for pattern, resp, _ in self._responses:
            if isinstance(pattern, str):
                if pattern in kubectl_args:
                    matched_pattern = pattern
                    response = resp
                    break
            else:  # Compiled regex
                if pattern.search(kubectl_args):
                    matched_pattern = pattern.pattern
                    response = resp
                    break

        # Record the call
        call = KubectlCall(
            command=list(cmd),
            full_command_str=cmd_str,
            matched_pattern=matched_pattern,
            response=response,
            timeout=timeout,
        )
        self._call_history.append(call)

        if response.raises is not None:
            raise response.raises

        return response.to_completed_process(kwargs.get("encoding"), kwargs.get("errors"))

    @property
    def calls(self) -> List[KubectlCall]:
        """Get all kubectl calls made during the test."""
        return self._call_history

    @property
    def call_count(self) -> int:
        """Get the number of kubectl calls made."""
        return len(self._call_history)

    def was_called_with(self, pattern: str) -> bool:
        """Check if any call contained the given pattern."""
        return any(pattern in call.full_command_str for call in self._call_history)

    def get_calls_matching(self, pattern: str) -> List[KubectlCall]:
        """Get all calls containing the given pattern."""
        return [c for c in self._call_history if pattern in c.full_command_str]

    def clear(self):
        """Clear both responses and call history."""
        self._responses = []
        self._call_history = []


@pytest.fixture
def kubectl_mocker():
    """
    Fixture that provides a KubectlMocker with subprocess.run patched.

    Usage:
        def test_something(kubectl_mocker):
            kubectl_mocker.register("get pods", KubectlResponse(stdout="..."))
            # Your test code that calls kubectl
            assert kubectl_mocker.was_called_with("get pods")
    """
    mocker = KubectlMocker()
    with patch("subprocess.run", side_effect=mocker.mock_run):
        yield mocker


@pytest.fixture
def kubectl_mocker_strict():
    """
    Strict kubectl mocker that fails on any unregistered command.

    Use this when you want to ensure all kubectl interactions are
    explicitly accounted for in your test.
    """
    mocker = KubectlMocker()
    mocker._default_response = KubectlResponse(
        stderr="STRICT MODE: No mock registered for this command",
        returncode=127
    )
    mocker._passthrough_non_kubectl = False
    with patch("subprocess.run", side_effect=mocker.mock_run):
        yield mocker


# =============================================================================
# Fleet Fixtures
# =============================================================================

@pytest.fixture
def fleet_config():
    """Sequential fleet configuration in the 'datadog' namespace."""
    return FleetConfig(namespace="datadog")


@pytest.fixture
def fake_cluster():
    """Three node agents on three nodes plus one cluster agent."""
    from fixtures.fake_cluster import FakeCluster

    return FakeCluster.with_agents(
        [
            ("datadog-agent-aaaa", "node-1"),
            ("datadog-agent-bbbb", "node-2"),
            ("datadog-agent-cccc", "node-3"),
        ],
        cluster_agents=["datadog-cluster-agent-7f9c"],
    )


@pytest.fixture
def coordinator(fake_cluster, fleet_config):
    """Coordinator backed by the fake cluster."""
    return FleetExecCoordinator(fake_cluster, fake_cluster, fleet_config)


# =============================================================================
# Test Markers Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "kubectl_mock: Tests using mocked kubectl subprocess calls"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take a long time to run"
    )

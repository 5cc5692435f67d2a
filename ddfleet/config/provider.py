"""Configuration provider following Black Box Design principles."""
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from ddfleet.modules.fleet.models import PodRole

MAX_WORKERS_LIMIT = 8


@dataclass(frozen=True)
class FleetConfig:
    """Pod discovery and remote-exec configuration."""
    namespace: str = "default"
    agent_selector: str = "app.kubernetes.io/name=datadog"
    agent_component_selector: str = "app.kubernetes.io/component=agent"
    cluster_agent_selector: str = "app.kubernetes.io/component=cluster-agent"
    agent_container: str = "agent"
    cluster_agent_container: str = "cluster-agent"
    agent_bin: str = "/opt/datadog-agent/bin/agent/agent"
    cluster_agent_bin: str = "/opt/datadog-agent/bin/cluster-agent/cluster-agent"
    max_workers: int = 1
    exec_timeout: int = 30
    kubectl_path: str = "kubectl"
    kube_context: Optional[str] = None
    kubeconfig: Optional[str] = None

    def __post_init__(self):
        if not 1 <= self.max_workers <= MAX_WORKERS_LIMIT:
            raise ValueError(
                f"max_workers must be between 1 and {MAX_WORKERS_LIMIT}, got {self.max_workers}"
            )
        if self.exec_timeout < 1:
            raise ValueError(f"exec_timeout must be positive, got {self.exec_timeout}")

    @property
    def node_agent_selector(self) -> str:
        """Label selector matching node agents only (not the cluster agent)."""
        return f"{self.agent_selector},{self.agent_component_selector}"

    def label_selector_for(self, role: PodRole) -> str:
        if role is PodRole.CLUSTER_AGENT:
            return self.cluster_agent_selector
        return self.node_agent_selector

    def container_for(self, role: PodRole) -> str:
        if role is PodRole.CLUSTER_AGENT:
            return self.cluster_agent_container
        return self.agent_container

    def binary_for(self, role: PodRole) -> str:
        if role is PodRole.CLUSTER_AGENT:
            return self.cluster_agent_bin
        return self.agent_bin


@dataclass
class ServerConfig:
    """API server configuration."""
    port: int
    host: str
    debug: bool
    log_level: str


@dataclass
class AuthConfig:
    """Authentication configuration."""
    require_auth: bool
    api_keys: Dict[str, Optional[str]] = field(default_factory=dict)

    @property
    def is_configured(self) -> bool:
        """Check if at least one API key is available."""
        return bool(self.api_keys)


class ConfigProvider(Protocol):
    """Protocol for configuration providers."""

    def get_fleet_config(self) -> FleetConfig:
        """Get pod discovery and exec configuration."""
        ...

    def get_server_config(self) -> ServerConfig:
        """Get API server configuration."""
        ...

    def get_auth_config(self) -> AuthConfig:
        """Get authentication configuration."""
        ...


def parse_api_keys(api_keys_env: str) -> Dict[str, Optional[str]]:
    """
    Parse an API_KEYS value into a key -> service identity mapping.

    Format: "key1,service1:key2". Plain keys map to None.
    """
    keys: Dict[str, Optional[str]] = {}
    for entry in api_keys_env.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if ":" in entry:
            service, key = entry.split(":", 1)
            keys[key.strip()] = service.strip() or None
        else:
            keys[entry] = None
    return keys


class EnvConfigProvider:
    """Environment-based configuration provider."""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self._env = os.environ if environ is None else environ

    def _get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self._env.get(name)
        return value if value not in (None, "") else default

    def _flag(self, name: str, default: str) -> bool:
        return self._get(name, default).lower() == "true"

    def get_fleet_config(self) -> FleetConfig:
        """Get fleet configuration from environment variables."""
        defaults = FleetConfig()
        return FleetConfig(
            namespace=self._get("DD_AGENT_NAMESPACE", defaults.namespace),
            agent_container=self._get("DD_AGENT_CONTAINER", defaults.agent_container),
            cluster_agent_container=self._get(
                "DD_CLUSTER_AGENT_CONTAINER", defaults.cluster_agent_container
            ),
            agent_bin=self._get("DD_AGENT_BIN", defaults.agent_bin),
            cluster_agent_bin=self._get("DD_CLUSTER_AGENT_BIN", defaults.cluster_agent_bin),
            max_workers=int(self._get("DDFLEET_MAX_WORKERS", str(defaults.max_workers))),
            exec_timeout=int(self._get("DDFLEET_EXEC_TIMEOUT", str(defaults.exec_timeout))),
            kubectl_path=self._get("KUBECTL_PATH", defaults.kubectl_path),
            kube_context=self._get("KUBE_CONTEXT"),
            kubeconfig=self._get("KUBECONFIG"),
        )

    def get_server_config(self) -> ServerConfig:
        """Get API server configuration from environment variables."""
        return ServerConfig(
            port=int(self._get("API_PORT", "8080")),
            host=self._get("API_HOST", "0.0.0.0"),
            debug=self._flag("API_DEBUG", "false"),
            log_level=self._get("LOG_LEVEL", "INFO").upper(),
        )

    def get_auth_config(self) -> AuthConfig:
        """Get authentication configuration from environment variables."""
        require_auth = self._flag("REQUIRE_AUTH", "true")
        api_keys = parse_api_keys(self._get("API_KEYS", ""))

        if require_auth and not api_keys:
            raise ValueError(
                "API_KEYS environment variable is required when REQUIRE_AUTH=true. "
                "Format: key or service:key, comma separated. "
                "Example: admin:your-generated-key"
            )

        return AuthConfig(require_auth=require_auth, api_keys=api_keys)


def load_fleet_config(**overrides) -> FleetConfig:
    """Build a FleetConfig from the environment, with explicit overrides applied."""
    base = EnvConfigProvider().get_fleet_config()
    values = {k: v for k, v in overrides.items() if v is not None}
    if not values:
        return base
    merged = {name: getattr(base, name) for name in base.__dataclass_fields__}
    merged.update(values)
    return FleetConfig(**merged)


__all__: List[str] = [
    "AuthConfig",
    "ConfigProvider",
    "EnvConfigProvider",
    "FleetConfig",
    "MAX_WORKERS_LIMIT",
    "ServerConfig",
    "load_fleet_config",
    "parse_api_keys",
]

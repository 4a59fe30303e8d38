"""Configuration management for the k8zctl application."""
import os
import re
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class Config:
    """Application configuration with sensible defaults."""

    # Hetzner Cloud API
    HCLOUD_TOKEN: str = os.getenv("HCLOUD_TOKEN", "")
    HCLOUD_API_URL: str = os.getenv("HCLOUD_API_URL", "https://api.hetzner.cloud/v1")
    API_TIMEOUT: int = int(os.getenv("API_TIMEOUT", "30"))

    # Talos tooling
    TALOSCTL_BIN: str = os.getenv("TALOSCTL_BIN", "talosctl")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.getenv(
        "LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Security
    REDACT_KEYS: tuple = ("token", "password", "secret", "key")


def parse_duration(value: Optional[str], default: float) -> float:
    """Parse a Go-style duration ("10m", "1m30s", "500ms", "45") into seconds.

    Invalid or empty values fall back to ``default``.
    """
    if not value:
        return default
    value = value.strip()
    try:
        return float(value)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_RE.finditer(value):
        if match.start() != pos:
            return default
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(value) or pos == 0:
        return default
    return total


def _env_duration(name: str, default: float) -> float:
    return parse_duration(os.getenv(name), default)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, ""))
    except ValueError:
        return default


@dataclass(frozen=True)
class Timeouts:
    """Wait bounds and poll intervals, all in seconds."""
    server_create: float = 600.0
    server_ip: float = 60.0
    bootstrap: float = 600.0
    retry_max_attempts: int = 5
    retry_initial_delay: float = 1.0

    port_wait: float = 120.0
    node_ready: float = 600.0
    k8s_upgrade: float = 1800.0
    kubeconfig: float = 900.0
    talos_api: float = 600.0
    health_check: float = 300.0
    port_poll: float = 5.0
    node_ready_poll: float = 10.0
    health_check_poll: float = 10.0
    dial_timeout: float = 2.0

    @classmethod
    def load(cls) -> "Timeouts":
        """Load timeouts from HCLOUD_TIMEOUT_* / HCLOUD_RETRY_* variables."""
        d = cls()
        return cls(
            server_create=_env_duration("HCLOUD_TIMEOUT_SERVER_CREATE", d.server_create),
            server_ip=_env_duration("HCLOUD_TIMEOUT_SERVER_IP", d.server_ip),
            bootstrap=_env_duration("HCLOUD_TIMEOUT_BOOTSTRAP", d.bootstrap),
            retry_max_attempts=_env_int("HCLOUD_RETRY_MAX_ATTEMPTS", d.retry_max_attempts),
            retry_initial_delay=_env_duration("HCLOUD_RETRY_INITIAL_DELAY", d.retry_initial_delay),
            port_wait=_env_duration("HCLOUD_TIMEOUT_PORT_WAIT", d.port_wait),
            node_ready=_env_duration("HCLOUD_TIMEOUT_NODE_READY", d.node_ready),
            k8s_upgrade=_env_duration("HCLOUD_TIMEOUT_K8S_UPGRADE", d.k8s_upgrade),
            kubeconfig=_env_duration("HCLOUD_TIMEOUT_KUBECONFIG", d.kubeconfig),
            talos_api=_env_duration("HCLOUD_TIMEOUT_TALOS_API", d.talos_api),
            health_check=_env_duration("HCLOUD_TIMEOUT_HEALTH_CHECK", d.health_check),
            port_poll=_env_duration("HCLOUD_TIMEOUT_PORT_POLL", d.port_poll),
            node_ready_poll=_env_duration("HCLOUD_TIMEOUT_NODE_READY_POLL", d.node_ready_poll),
            health_check_poll=_env_duration("HCLOUD_TIMEOUT_HEALTH_CHECK_POLL", d.health_check_poll),
            dial_timeout=_env_duration("HCLOUD_TIMEOUT_DIAL", d.dial_timeout),
        )

    @classmethod
    def for_tests(cls) -> "Timeouts":
        """Very short timeouts for unit tests."""
        return cls(
            server_create=0.1,
            server_ip=0.1,
            bootstrap=0.1,
            retry_max_attempts=2,
            retry_initial_delay=0.01,
            port_wait=0.1,
            node_ready=0.1,
            k8s_upgrade=0.1,
            kubeconfig=0.1,
            talos_api=0.1,
            health_check=0.1,
            port_poll=0.01,
            node_ready_poll=0.01,
            health_check_poll=0.01,
            dial_timeout=0.05,
        )

    @property
    def retry_policy(self) -> "RetryPolicy":
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            initial_delay=self.retry_initial_delay,
        )


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings for transient collaborator failures."""
    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.max_delay, self.initial_delay * (2 ** (attempt - 1)))

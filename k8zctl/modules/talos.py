"""
Talos machine configuration and lifecycle operations via the talosctl CLI.
"""
import json
import logging
import os
import re
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import List, Optional

from ..config import Config, Timeouts
from .provisioning.errors import (
    GateTimeoutError,
    HealthCheckFailure,
    ReadinessTimeoutError,
    UpgradeCallError,
)
from .provisioning.health import HealthGate
from .provisioning.interfaces import TalosConfigProducer
from .provisioning.models import NodeUpgradeOptions
from .provisioning.plan import normalize_version

logger = logging.getLogger("k8zctl.talos")

_TAG_RE = re.compile(r"Tag:\s*(\S+)")
_TALOS_RE = re.compile(r"Talos\s+(v\S+)")

# Upper bound for a single readiness probe
PROBE_TIMEOUT = 30.0


def installer_image(version: str, schematic_id: str = '') -> str:
    """Installer image for ``version``, from the image factory when a schematic is set."""
    if schematic_id:
        return f"factory.talos.dev/installer/{schematic_id}:{version}"
    return f"ghcr.io/siderolabs/installer:{version}"


def parse_server_version(output: str) -> str:
    """Extract the server tag from ``talosctl version`` output.

    The client section comes first, so the last tag wins.
    """
    tags = _TAG_RE.findall(output)
    if tags:
        return tags[-1]
    found = _TALOS_RE.findall(output)
    if found:
        return found[-1]
    raise ValueError(f"no version found in talosctl output: {output.strip()[:200]!r}")


class TalosctlClient(TalosConfigProducer):
    """TalosConfigProducer backed by the ``talosctl`` binary.

    Every call runs a separate process, so the client is safe to use from
    several threads.
    """

    def __init__(self, cluster_name: str, talosconfig_path: str, secrets_path: Optional[str] = None,
                 schematic_id: str = '', talos_version: str = '', kubernetes_version: str = '',
                 talosctl_bin: Optional[str] = None, timeouts: Optional[Timeouts] = None):
        self.cluster_name = cluster_name
        self.talosconfig_path = str(Path(talosconfig_path).expanduser())
        self.secrets_path = str(Path(secrets_path).expanduser()) if secrets_path else None
        self.schematic_id = schematic_id
        self.talos_version = normalize_version(talos_version) if talos_version else ''
        self.kubernetes_version = kubernetes_version
        self.talosctl_bin = talosctl_bin or Config.TALOSCTL_BIN
        self.timeouts = timeouts or Timeouts.load()
        self.endpoint: Optional[str] = None
        self._secrets_lock = threading.Lock()

    def _run(self, operation: str, endpoint: str, args: List[str],
             timeout: Optional[float] = None) -> str:
        """Run talosctl and return stdout.

        Raises:
            UpgradeCallError: If the command fails, times out or is missing
        """
        cmd = [self.talosctl_bin] + args
        logger.debug(f"💻 Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                check=True,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout,
            )
        except subprocess.CalledProcessError as e:
            raise UpgradeCallError(endpoint, operation, (e.stderr or e.stdout or '').strip()
                                   or f"exit code {e.returncode}") from e
        except subprocess.TimeoutExpired as e:
            raise UpgradeCallError(endpoint, operation, f"timed out after {timeout:g}s") from e
        except FileNotFoundError as e:
            raise UpgradeCallError(endpoint, operation, f"{self.talosctl_bin} not found") from e
        return result.stdout

    def _node_args(self, endpoint: str) -> List[str]:
        return ["--talosconfig", self.talosconfig_path, "--nodes", endpoint, "--endpoints", endpoint]

    # Configuration

    def set_endpoint(self, endpoint: str) -> None:
        self.endpoint = endpoint

    def _ensure_secrets(self) -> Optional[str]:
        if not self.secrets_path:
            return None
        with self._secrets_lock:
            if not os.path.exists(self.secrets_path):
                logger.info(f"🔐 Generating Talos secrets bundle at {self.secrets_path}")
                Path(self.secrets_path).parent.mkdir(parents=True, exist_ok=True)
                self._run("gen-secrets", "local", ["gen", "secrets", "--output-file", self.secrets_path])
        return self.secrets_path

    def _gen_config(self, output_type: str, sans: Optional[List[str]] = None,
                    patches: Optional[List[dict]] = None) -> str:
        if not self.endpoint:
            raise UpgradeCallError("local", "gen-config", "cluster endpoint is not set")
        args = ["gen", "config", self.cluster_name, self.endpoint,
                "--output-types", output_type, "--output", "-"]
        secrets = self._ensure_secrets()
        if secrets:
            args += ["--with-secrets", secrets]
        if self.kubernetes_version:
            args += ["--kubernetes-version", self.kubernetes_version.lstrip('v')]
        if self.schematic_id and self.talos_version:
            args += ["--install-image", installer_image(self.talos_version, self.schematic_id)]
        if sans:
            args += ["--additional-sans", ",".join(sans)]
        for patch in patches or []:
            args += ["--config-patch", json.dumps(patch)]
        return self._run("gen-config", "local", args)

    def generate_control_plane_config(self, endpoints: List[str], extra: str = '') -> bytes:
        patches = []
        if extra:
            patches.append([{"op": "add", "path": "/machine/network/hostname", "value": extra}])
        return self._gen_config("controlplane", sans=endpoints, patches=patches).encode()

    def generate_worker_config(self, join_token: str = '') -> bytes:
        patches = []
        if join_token:
            patches.append([{"op": "replace", "path": "/machine/token", "value": join_token}])
        return self._gen_config("worker", patches=patches).encode()

    def get_client_config(self) -> bytes:
        """Generate a talosconfig and store it at ``talosconfig_path``."""
        if os.path.exists(self.talosconfig_path):
            return Path(self.talosconfig_path).read_bytes()
        data = self._gen_config("talosconfig").encode()
        Path(self.talosconfig_path).parent.mkdir(parents=True, exist_ok=True)
        Path(self.talosconfig_path).write_bytes(data)
        return data

    # Node lifecycle

    def apply_config(self, endpoint: str, machine_config: bytes, insecure: bool = False) -> None:
        with tempfile.NamedTemporaryFile(suffix=".yaml") as f:
            f.write(machine_config)
            f.flush()
            args = ["apply-config", "--nodes", endpoint, "--file", f.name]
            if insecure:
                args.append("--insecure")
            else:
                args = ["--talosconfig", self.talosconfig_path, "--endpoints", endpoint] + args
            self._run("apply-config", endpoint, args, timeout=self.timeouts.talos_api)
        logger.info(f"✅ Applied machine config to {endpoint}")

    def bootstrap(self, endpoint: str) -> None:
        try:
            self._run("bootstrap", endpoint, self._node_args(endpoint) + ["bootstrap"],
                      timeout=self.timeouts.bootstrap)
        except UpgradeCallError as e:
            if "AlreadyExists" in str(e):
                logger.info(f"ℹ️  etcd on {endpoint} is already bootstrapped")
                return
            raise

    def get_kubeconfig(self, endpoint: str) -> bytes:
        """Fetch the admin kubeconfig, polling until the API can issue one."""
        result = {}

        def probe() -> bool:
            try:
                result["kubeconfig"] = self._run(
                    "kubeconfig", endpoint, self._node_args(endpoint) + ["kubeconfig", "-"],
                    timeout=self.timeouts.talos_api,
                )
                return True
            except UpgradeCallError as e:
                logger.debug(f"kubeconfig not available yet: {e}")
                return False

        try:
            HealthGate().wait(probe, timeout=self.timeouts.kubeconfig,
                              interval=self.timeouts.node_ready_poll,
                              description=f"kubeconfig from {endpoint}")
        except GateTimeoutError as e:
            raise UpgradeCallError(endpoint, "kubeconfig", str(e)) from e
        return result["kubeconfig"].encode()

    def get_node_version(self, endpoint: str) -> str:
        output = self._run("version", endpoint, self._node_args(endpoint) + ["version"],
                           timeout=self.timeouts.talos_api)
        try:
            return parse_server_version(output)
        except ValueError as e:
            raise UpgradeCallError(endpoint, "version", str(e)) from e

    def upgrade_node(self, endpoint: str, target_version: str,
                     options: NodeUpgradeOptions) -> None:
        image = installer_image(normalize_version(target_version), self.schematic_id)
        args = self._node_args(endpoint) + ["upgrade", "--image", image]
        if options.stage:
            args.append("--stage")
        if options.force:
            args.append("--force")
        logger.info(f"⬆️  Upgrading {endpoint} with {image}")
        self._run("upgrade", endpoint, args, timeout=self.timeouts.node_ready)

    def upgrade_kubernetes(self, endpoint: str, target_version: str) -> None:
        version = target_version.lstrip('v')
        logger.info(f"⬆️  Upgrading Kubernetes to {version} via {endpoint}")
        self._run("upgrade-k8s", endpoint, self._node_args(endpoint) + ["upgrade-k8s", "--to", version],
                  timeout=self.timeouts.k8s_upgrade)

    def wait_for_node_ready(self, endpoint: str, timeout: float,
                            cancel: Optional[threading.Event] = None) -> None:
        def probe() -> bool:
            try:
                self._run("version", endpoint, self._node_args(endpoint) + ["version"],
                          timeout=PROBE_TIMEOUT)
                return True
            except UpgradeCallError as e:
                logger.debug(f"{endpoint} not ready yet: {e}")
                return False

        try:
            HealthGate(cancel).wait(probe, timeout=timeout, interval=self.timeouts.node_ready_poll,
                                    description=f"node {endpoint} to become ready")
        except GateTimeoutError as e:
            raise ReadinessTimeoutError(endpoint, timeout) from e

    def health_check(self, endpoint: str) -> None:
        try:
            self._run(
                "health", endpoint,
                self._node_args(endpoint) + ["health", "--wait-timeout", f"{int(self.timeouts.health_check)}s"],
                timeout=self.timeouts.health_check + 30,
            )
        except UpgradeCallError as e:
            raise HealthCheckFailure(endpoint, str(e)) from e

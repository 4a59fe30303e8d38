"""
Hetzner Cloud API client implementing the InfrastructureManager interface.
"""
import logging
import threading
from typing import Any, Dict, List, Optional

import requests

from ..config import Config, Timeouts
from ..utils import FatalError, RetryError, redact_sensitive_data, retry_call
from .clusterconfig import KUBE_API_PORT, TALOS_API_PORT
from .provisioning import naming
from .provisioning.errors import GateTimeoutError, InfrastructureError
from .provisioning.health import HealthGate
from .provisioning.interfaces import InfrastructureManager
from .provisioning.models import (
    Firewall,
    FirewallRule,
    LoadBalancer,
    Network,
    NodeRole,
    PlacementGroup,
    Server,
    ServerSpec,
)

logger = logging.getLogger("k8zctl.hcloud")


class TransientAPIError(Exception):
    """A request failure worth retrying (rate limit, 5xx, connection problem)."""
    pass


class HCloudClient(InfrastructureManager):
    """Idempotent find-or-create operations against the Hetzner Cloud API."""

    def __init__(self, token: Optional[str] = None, api_url: Optional[str] = None,
                 timeouts: Optional[Timeouts] = None, session: Optional[requests.Session] = None,
                 cancel: Optional[threading.Event] = None):
        """Initialize the client.

        Args:
            token: API token (defaults to HCLOUD_TOKEN)
            api_url: API base URL (defaults to HCLOUD_API_URL)
            timeouts: Wait bounds and retry settings
            session: Pre-built requests session, mainly for tests
            cancel: Event that aborts polling and retry backoff
        """
        self.token = token or Config.HCLOUD_TOKEN
        if not self.token:
            raise ValueError("Missing required configuration: HCLOUD_TOKEN")
        self.api_url = (api_url or Config.HCLOUD_API_URL).rstrip('/')
        self.timeouts = timeouts or Timeouts.load()
        self.cancel = cancel or threading.Event()
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        })
        # Serializes each find-or-create pair
        self._lock = threading.RLock()

    # HTTP plumbing

    def _request(self, method: str, path: str, resource: str, **kwargs) -> Dict[str, Any]:
        """Send a request, retrying transient failures with exponential backoff.

        Raises:
            InfrastructureError: On a client error or when retries are exhausted
        """
        url = f"{self.api_url}/{path.lstrip('/')}"

        def call() -> Dict[str, Any]:
            try:
                response = self.session.request(method, url, timeout=Config.API_TIMEOUT, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                raise TransientAPIError(str(e)) from e

            if response.status_code == 429 or response.status_code >= 500:
                raise TransientAPIError(f"{response.status_code}: {_error_message(response)}")
            if response.status_code >= 400:
                raise FatalError(InfrastructureError(
                    resource, _error_message(response), status_code=response.status_code,
                ))
            if not response.content:
                return {}
            return response.json()

        logger.debug(f"{method} {url} {redact_sensitive_data(kwargs.get('json') or {})}")
        try:
            return retry_call(
                call,
                policy=self.timeouts.retry_policy,
                exceptions=(TransientAPIError,),
                cancel=self.cancel,
                description=f"{method} {path}",
            )
        except RetryError as e:
            raise InfrastructureError(resource, str(e)) from e
        except TransientAPIError as e:
            raise InfrastructureError(resource, f"aborted: {e}") from e

    def _find_by_name(self, collection: str, name: str) -> Optional[Dict[str, Any]]:
        data = self._request("GET", f"/{collection}", collection, params={"name": name})
        items = data.get(collection) or []
        return items[0] if items else None

    # Networks

    def ensure_network(self, name: str, ip_range: str, zone: str,
                       labels: Dict[str, str]) -> Network:
        with self._lock:
            existing = self._find_by_name("networks", name)
            if existing:
                logger.info(f"✅ Network {name} already exists")
                return _network(existing)
            logger.info(f"🔧 Creating network {name} ({ip_range})")
            data = self._request("POST", "/networks", f"network/{name}", json={
                "name": name,
                "ip_range": ip_range,
                "labels": labels,
                "subnets": [{"type": "cloud", "ip_range": ip_range, "network_zone": zone}],
            })
            return _network(data["network"])

    # Firewalls

    def ensure_firewall(self, name: str, rules: List[FirewallRule],
                        labels: Dict[str, str]) -> Firewall:
        with self._lock:
            existing = self._find_by_name("firewalls", name)
            if existing:
                logger.info(f"✅ Firewall {name} already exists")
                return _firewall(existing)
            selector = {naming.LABEL_CLUSTER: labels[naming.LABEL_CLUSTER]}
            logger.info(f"🔧 Creating firewall {name} with {len(rules)} rule(s)")
            data = self._request("POST", "/firewalls", f"firewall/{name}", json={
                "name": name,
                "labels": labels,
                "rules": [_rule_body(r) for r in rules],
                "apply_to": [{
                    "type": "label_selector",
                    "label_selector": {"selector": naming.label_selector(selector)},
                }],
            })
            return _firewall(data["firewall"])

    # Placement groups

    def ensure_placement_group(self, name: str, labels: Dict[str, str]) -> PlacementGroup:
        with self._lock:
            existing = self._find_by_name("placement_groups", name)
            if existing:
                return _placement_group(existing)
            logger.info(f"🔧 Creating placement group {name}")
            data = self._request("POST", "/placement_groups", f"placement_group/{name}", json={
                "name": name, "type": "spread", "labels": labels,
            })
            return _placement_group(data["placement_group"])

    # Load balancers

    def ensure_load_balancer(self, name: str, lb_type: str, location: str,
                             network_id: int, labels: Dict[str, str]) -> LoadBalancer:
        with self._lock:
            existing = self._find_by_name("load_balancers", name)
            if existing:
                logger.info(f"✅ Load balancer {name} already exists")
                return _load_balancer(existing)
            target = {
                naming.LABEL_CLUSTER: labels[naming.LABEL_CLUSTER],
                naming.LABEL_ROLE: NodeRole.CONTROL_PLANE.value,
            }
            logger.info(f"🔧 Creating load balancer {name} ({lb_type} in {location})")
            data = self._request("POST", "/load_balancers", f"load_balancer/{name}", json={
                "name": name,
                "load_balancer_type": lb_type,
                "location": location,
                "network": network_id,
                "labels": labels,
                "public_interface": True,
                "algorithm": {"type": "round_robin"},
                "services": [
                    {"protocol": "tcp", "listen_port": port, "destination_port": port,
                     "health_check": {"protocol": "tcp", "port": port, "interval": 15,
                                      "timeout": 10, "retries": 3}}
                    for port in (KUBE_API_PORT, TALOS_API_PORT)
                ],
                "targets": [{
                    "type": "label_selector",
                    "label_selector": {"selector": naming.label_selector(target)},
                    "use_private_ip": True,
                }],
            })
            return _load_balancer(data["load_balancer"])

    # Servers

    def get_server(self, name: str) -> Optional[Server]:
        existing = self._find_by_name("servers", name)
        return _server(existing) if existing else None

    def ensure_server(self, spec: ServerSpec) -> Server:
        with self._lock:
            existing = self._find_by_name("servers", spec.name)
            if existing:
                logger.info(f"✅ Server {spec.name} already exists")
                server = _server(existing)
                if _needs_attach(spec, existing):
                    # An earlier run created the server but did not attach it
                    self._attach_to_network(server.id, spec)
                    return self._wait_for_server(server.id, spec.name)
                if server.ipv4:
                    return server
                return self._wait_for_server(server.id, spec.name)

            body: Dict[str, Any] = {
                "name": spec.name,
                "server_type": spec.server_type,
                "location": spec.location,
                "image": self._resolve_image(spec.image),
                "labels": spec.labels,
                "start_after_create": True,
            }
            if spec.placement_group_id is not None:
                body["placement_group"] = spec.placement_group_id
            if spec.firewall_id is not None:
                body["firewalls"] = [{"firewall": spec.firewall_id}]
            if spec.network_id is not None and not spec.private_ip:
                body["networks"] = [spec.network_id]
            if spec.user_data:
                body["user_data"] = spec.user_data

            logger.info(f"🚀 Creating server {spec.name} ({spec.server_type} in {spec.location})")
            data = self._request("POST", "/servers", f"server/{spec.name}", json=body)
            server_id = data["server"]["id"]

        if spec.network_id is not None and spec.private_ip:
            self._attach_to_network(server_id, spec)
        return self._wait_for_server(server_id, spec.name)

    def _attach_to_network(self, server_id: int, spec: ServerSpec) -> None:
        logger.info(f"🔗 Attaching server {spec.name} to network {spec.network_id} as {spec.private_ip}")
        self._request(
            "POST", f"/servers/{server_id}/actions/attach_to_network", f"server/{spec.name}",
            json={"network": spec.network_id, "ip": spec.private_ip},
        )

    def _wait_for_server(self, server_id: int, name: str) -> Server:
        """Wait until the server is running and has a public IPv4 address."""
        gate = HealthGate(self.cancel)
        state: Dict[str, Server] = {}

        def fetch() -> Server:
            data = self._request("GET", f"/servers/{server_id}", f"server/{name}")
            state["server"] = _server(data["server"])
            return state["server"]

        try:
            gate.wait(lambda: fetch().status == "running", timeout=self.timeouts.server_create,
                      interval=self.timeouts.port_poll, description=f"server {name} to start")
            gate.wait(lambda: bool(fetch().ipv4), timeout=self.timeouts.server_ip,
                      interval=self.timeouts.port_poll, description=f"public IP of server {name}")
        except GateTimeoutError as e:
            raise InfrastructureError(f"server/{name}", str(e)) from e
        logger.info(f"✅ Server {name} is running at {state['server'].ipv4}")
        return state["server"]

    def _resolve_image(self, image: str):
        """Numeric ids pass through; names are looked up as ``os=<name>`` snapshots first."""
        if str(image).isdigit():
            return int(image)
        data = self._request("GET", "/images", "images", params={
            "type": "snapshot", "label_selector": f"os={image}", "sort": "created:desc",
        })
        snapshots = data.get("images") or []
        if snapshots:
            return snapshots[0]["id"]
        return image


def _error_message(response: requests.Response) -> str:
    try:
        error = response.json().get("error") or {}
        return f"{error.get('code', 'error')}: {error.get('message', response.text)}"
    except ValueError:
        return response.text or response.reason or "unknown error"


def _rule_body(rule: FirewallRule) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "direction": rule.direction,
        "protocol": rule.protocol,
        "description": rule.description,
    }
    if rule.port:
        body["port"] = rule.port
    if rule.direction == "in":
        body["source_ips"] = rule.source_ips
    else:
        body["destination_ips"] = rule.source_ips
    return body


def _network(d: Dict[str, Any]) -> Network:
    return Network(id=d["id"], name=d["name"], ip_range=d.get("ip_range", ""), labels=d.get("labels") or {})


def _firewall(d: Dict[str, Any]) -> Firewall:
    return Firewall(id=d["id"], name=d["name"], labels=d.get("labels") or {})


def _placement_group(d: Dict[str, Any]) -> PlacementGroup:
    return PlacementGroup(id=d["id"], name=d["name"], type=d.get("type", "spread"))


def _load_balancer(d: Dict[str, Any]) -> LoadBalancer:
    public = (d.get("public_net") or {}).get("ipv4") or {}
    private = d.get("private_net") or []
    return LoadBalancer(
        id=d["id"],
        name=d["name"],
        ipv4=public.get("ip"),
        private_ip=private[0].get("ip") if private else None,
    )


def _needs_attach(spec: ServerSpec, d: Dict[str, Any]) -> bool:
    """True when ``spec`` asks for a private IP the server does not have yet."""
    if spec.network_id is None or not spec.private_ip:
        return False
    return not any(
        net.get("network") == spec.network_id or net.get("ip") == spec.private_ip
        for net in d.get("private_net") or []
    )


def _server(d: Dict[str, Any]) -> Server:
    public = (d.get("public_net") or {}).get("ipv4") or {}
    private = d.get("private_net") or []
    return Server(
        id=d["id"],
        name=d["name"],
        status=d.get("status", ""),
        ipv4=public.get("ip"),
        private_ip=private[0].get("ip") if private else None,
        labels=d.get("labels") or {},
    )

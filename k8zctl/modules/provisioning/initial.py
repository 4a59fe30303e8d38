"""Bring-up of a new cluster from nothing.

Resources are created in dependency order. Every step first consults
``ctx.state`` and then calls an idempotent ``ensure_*`` so a failed run can
be resumed by calling ``provision`` again on the same context.
"""
import logging
from typing import Callable, List, Optional, Tuple

from ...utils.kube import wait_for_api
from ...utils.net import wait_for_port
from ..clusterconfig import TALOS_API_PORT
from . import naming
from .context import ProvisioningContext
from .errors import CancellationError, InfrastructureError
from .interfaces import Provisioner
from .models import NodePool, NodeRole, PlacementGroup, Server, ServerSpec

logger = logging.getLogger("k8zctl.provisioning.initial")

# Hetzner allows at most 10 servers per spread placement group
PLACEMENT_GROUP_SIZE = 10


class InitialProvisioner(Provisioner):
    """Creates infrastructure and bootstraps the first Talos cluster."""

    name = "initial"

    def __init__(self, port_waiter: Callable[..., None] = wait_for_port,
                 api_waiter: Callable[..., object] = wait_for_api):
        self.port_waiter = port_waiter
        self.api_waiter = api_waiter

    def steps(self) -> List[Tuple[str, Callable[[ProvisioningContext], None]]]:
        return [
            ("network", self.provision_network),
            ("firewall", self.provision_firewall),
            ("placement-groups", self.provision_placement_groups),
            ("load-balancer", self.provision_load_balancer),
            ("control-plane-servers", self.provision_control_plane_servers),
            ("bootstrap", self.bootstrap_cluster),
            ("join-control-planes", self.join_control_planes),
            ("workers", self.provision_workers),
            ("addons", self.hand_off_addons),
        ]

    def provision(self, ctx: ProvisioningContext) -> None:
        """Run every step in order, stopping at the first failure.

        Raises:
            CancellationError: If the run is cancelled between steps
            InfrastructureError: If a cloud resource cannot be ensured
            UpgradeCallError: If a Talos call fails
        """
        ctx.observer.info("Provision", f"Provisioning cluster {ctx.config.cluster_name}")
        for step_name, step in self.steps():
            if ctx.cancelled:
                raise CancellationError(f"provisioning cancelled before step {step_name}")
            ctx.observer.phase_started(step_name)
            try:
                step(ctx)
            except Exception as e:
                ctx.observer.phase_failed(step_name, e)
                raise
            ctx.observer.phase_completed(step_name)
        ctx.observer.info("Provision", f"🎉 Cluster {ctx.config.cluster_name} is ready")

    # Infrastructure

    def provision_network(self, ctx: ProvisioningContext) -> None:
        cluster = ctx.config.cluster_name
        if ctx.state.network is not None:
            ctx.observer.resource("network", "network", ctx.state.network.name, cached=True)
            return
        ctx.state.network = ctx.infra.ensure_network(
            naming.network(cluster),
            ctx.config.network.ip_range,
            ctx.config.network.zone,
            naming.labels(cluster),
        )
        ctx.observer.resource("network", "network", ctx.state.network.name)

    def provision_firewall(self, ctx: ProvisioningContext) -> None:
        cluster = ctx.config.cluster_name
        if ctx.state.firewall is not None:
            ctx.observer.resource("firewall", "firewall", ctx.state.firewall.name, cached=True)
            return
        ctx.state.firewall = ctx.infra.ensure_firewall(
            naming.firewall(cluster),
            ctx.config.firewall_rules(),
            naming.labels(cluster),
        )
        ctx.observer.resource("firewall", "firewall", ctx.state.firewall.name)

    def provision_placement_groups(self, ctx: ProvisioningContext) -> None:
        """One spread group per control-plane pool; worker groups are sharded later."""
        cluster = ctx.config.cluster_name
        for pool in self._pools(ctx, NodeRole.CONTROL_PLANE):
            self._ensure_placement_group(
                ctx, naming.placement_group(cluster, pool.name),
                naming.labels(cluster, role=pool.role.value, pool=pool.name),
            )

    def provision_load_balancer(self, ctx: ProvisioningContext) -> None:
        cluster = ctx.config.cluster_name
        lb = ctx.state.load_balancer
        if lb is not None:
            ctx.observer.resource("load-balancer", "load balancer", lb.name, cached=True)
        else:
            lb = ctx.infra.ensure_load_balancer(
                naming.kube_api_load_balancer(cluster),
                ctx.config.load_balancer_type,
                ctx.config.location,
                ctx.state.network.id,
                naming.labels(cluster, role="kube-api"),
            )
            if not lb.ipv4:
                raise InfrastructureError(f"load_balancer/{lb.name}", "load balancer has no public IPv4")
            ctx.state.load_balancer = lb
            ctx.observer.resource("load-balancer", "load balancer", lb.name)

        endpoint = f"https://{lb.ipv4}:{ctx.config.kubernetes.api_port}"
        ctx.talos.set_endpoint(endpoint)
        ctx.state.metadata["endpoint"] = endpoint
        self._add_sans(ctx, lb.ipv4, lb.private_ip or ctx.config.load_balancer_private_ip())

    def provision_control_plane_servers(self, ctx: ProvisioningContext) -> None:
        cluster = ctx.config.cluster_name
        for pool in self._pools(ctx, NodeRole.CONTROL_PLANE):
            pg = ctx.state.placement_groups.get(naming.placement_group(cluster, pool.name))
            for index in range(1, pool.count + 1):
                server = self._ensure_server(
                    ctx, pool, index, ctx.state.control_plane_servers, pg.id if pg else None,
                )
                self._add_sans(ctx, server.ipv4, server.private_ip)

    # Talos

    def bootstrap_cluster(self, ctx: ProvisioningContext) -> None:
        """Configure the first control plane, bootstrap etcd and fetch a kubeconfig."""
        if not ctx.state.control_plane_servers:
            raise InfrastructureError("control_plane", "no control-plane servers to bootstrap")
        first = next(iter(ctx.state.control_plane_servers.values()))

        if ctx.state.talosconfig is None:
            ctx.state.talosconfig = ctx.talos.get_client_config()

        if ctx.state.bootstrapped:
            ctx.observer.info("bootstrap", f"Cluster already bootstrapped via {first.name}, skipping")
        else:
            self._configure_node(
                ctx, first, ctx.talos.generate_control_plane_config(list(ctx.state.sans), first.name),
            )
            ctx.observer.info("bootstrap", f"Bootstrapping etcd on first control plane node {first.name}...")
            ctx.talos.bootstrap(first.ipv4)
            ctx.state.bootstrapped = True

        if ctx.state.kubeconfig is not None:
            return

        # Stored only once the API answered, so a failed wait is retried too
        ctx.observer.info("bootstrap", "Retrieving kubeconfig...")
        kubeconfig = ctx.talos.get_kubeconfig(first.ipv4)
        self.api_waiter(
            kubeconfig,
            timeout=ctx.timeouts.kubeconfig,
            interval=ctx.timeouts.port_poll,
            cancel=ctx.cancel,
        )
        ctx.state.kubeconfig = kubeconfig

    def join_control_planes(self, ctx: ProvisioningContext) -> None:
        servers = list(ctx.state.control_plane_servers.values())[1:]
        if not servers:
            ctx.observer.info("join-control-planes", "Single control plane, nothing to join")
            return
        for server in servers:
            if server.name in ctx.state.configured_nodes:
                continue
            self._configure_node(
                ctx, server, ctx.talos.generate_control_plane_config(list(ctx.state.sans), server.name),
            )

    def provision_workers(self, ctx: ProvisioningContext) -> None:
        cluster = ctx.config.cluster_name
        worker_config: Optional[bytes] = None
        for pool in self._pools(ctx, NodeRole.WORKER):
            for index in range(1, pool.count + 1):
                pg_id = None
                if pool.placement_group:
                    shard = (index - 1) // PLACEMENT_GROUP_SIZE + 1
                    pg = self._ensure_placement_group(
                        ctx, naming.worker_placement_group_shard(cluster, pool.name, shard),
                        naming.labels(cluster, role=pool.role.value, pool=pool.name),
                    )
                    pg_id = pg.id
                server = self._ensure_server(ctx, pool, index, ctx.state.worker_servers, pg_id)
                if server.name in ctx.state.configured_nodes:
                    continue
                if worker_config is None:
                    worker_config = ctx.talos.generate_worker_config(ctx.config.talos.join_token)
                self._configure_node(ctx, server, worker_config)

    def hand_off_addons(self, ctx: ProvisioningContext) -> None:
        ctx.state.metadata["addons"] = "handed-off"
        ctx.observer.info("addons", "Infrastructure and Talos bootstrap complete; addon installation is handled separately")

    # Helpers

    def _pools(self, ctx: ProvisioningContext, role: NodeRole) -> List[NodePool]:
        return [p for p in ctx.config.node_pools() if p.role == role]

    def _ensure_placement_group(self, ctx: ProvisioningContext, name: str, labels) -> PlacementGroup:
        pg = ctx.state.placement_groups.get(name)
        if pg is not None:
            ctx.observer.resource("placement-groups", "placement group", name, cached=True)
            return pg
        pg = ctx.infra.ensure_placement_group(name, labels)
        ctx.state.placement_groups[name] = pg
        ctx.observer.resource("placement-groups", "placement group", name)
        return pg

    def _ensure_server(self, ctx: ProvisioningContext, pool: NodePool, index: int,
                       registry: dict, placement_group_id: Optional[int]) -> Server:
        cluster = ctx.config.cluster_name
        name = naming.server_name(cluster, pool.name, index)
        if name in registry:
            ctx.observer.resource("servers", "server", name, cached=True)
            return registry[name]

        spec = ServerSpec(
            name=name,
            server_type=pool.server_type,
            location=pool.location,
            image=pool.image or ctx.config.image,
            role=pool.role,
            pool=pool.name,
            labels=naming.labels(cluster, role=pool.role.value, pool=pool.name, extra=pool.labels),
            network_id=ctx.state.network.id if ctx.state.network else None,
            private_ip=ctx.config.private_ip_for(pool, index),
            placement_group_id=placement_group_id,
            firewall_id=ctx.state.firewall.id if ctx.state.firewall else None,
        )
        server = ctx.infra.ensure_server(spec)
        if not server.ipv4:
            raise InfrastructureError(f"server/{name}", "server has no public IPv4")
        registry[name] = server
        ctx.observer.resource("servers", "server", name)
        return server

    def _configure_node(self, ctx: ProvisioningContext, server: Server, machine_config: bytes) -> None:
        """Apply a machine config to a node in maintenance mode and wait for it to come back."""
        if server.name in ctx.state.configured_nodes:
            return
        t = ctx.timeouts
        self.port_waiter(
            server.ipv4, TALOS_API_PORT,
            timeout=t.port_wait, interval=t.port_poll, dial_timeout=t.dial_timeout, cancel=ctx.cancel,
        )
        ctx.observer.info("configure", f"Applying config to node {server.name} ({server.ipv4})...")
        ctx.talos.apply_config(server.ipv4, machine_config, insecure=True)
        ctx.talos.wait_for_node_ready(server.ipv4, t.node_ready, cancel=ctx.cancel)
        ctx.state.configured_nodes.append(server.name)
        ctx.observer.info("configure", f"Node {server.name} is ready")

    def _add_sans(self, ctx: ProvisioningContext, *addresses: Optional[str]) -> None:
        for address in addresses:
            if address and address not in ctx.state.sans:
                ctx.state.sans.append(address)

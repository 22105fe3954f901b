"""
Network control for docker-hosted nodes.

NetworkChaos implements the nemesis NetworkControl role:

    partition(grudge)   iptables DROP rules inside each node's container
    heal()              remove every rule this object added
    delay(nodes, ...)   pumba netem delay against each node's container
    clear_delay(nodes)  stop the matching pumba containers

Usage:
    chaos = NetworkChaos(docker_client, containers={"n1": "causal-n1", ...})
    chaos.partition({"n1": {"n2", "n3"}, "n2": {"n1"}, "n3": {"n1"}})
    ...
    chaos.heal()

Node containers need the NET_ADMIN capability for iptables.
"""

from __future__ import annotations

import contextlib
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog
from docker.errors import APIError, ImageNotFound, NotFound

if TYPE_CHECKING:
    from docker import DockerClient
    from docker.models.containers import Container

log = structlog.get_logger()

# Pumba image for netem injection
PUMBA_IMAGE = "gaiaadm/pumba:latest"
TC_IMAGE = "gaiadocker/iproute2:latest"

# Upper bound on a single netem run; clear_delay normally stops it earlier
DEFAULT_CHAOS_DURATION = 3600  # seconds


class ChaosError(RuntimeError):
    """Raised when a network rule cannot be applied inside a container."""


@dataclass
class ChaosHandle:
    """Handle to a running pumba container for cleanup."""

    container: Container
    chaos_type: str
    target: str
    started_at: float = field(default_factory=time.monotonic)

    def elapsed(self) -> float:
        """Return seconds elapsed since chaos started."""
        return time.monotonic() - self.started_at


@dataclass(frozen=True)
class DropRule:
    """An iptables rule dropping traffic from `source_ip` on `node`."""

    node: str
    source: str
    source_ip: str

    def command(self, op: str) -> str:
        return f"iptables {op} INPUT -s {self.source_ip} -j DROP -w"


class NetworkChaos:
    """Partitions and packet delay for nodes running in docker containers.

    Args:
        client: Docker client instance.
        containers: Node name -> container name. Nodes missing from the map
            use the node name as the container name.
        network_name: Docker network the nodes share; used to pick the
            address iptables rules match on.
        interface: Interface netem shapes inside each container.
    """

    def __init__(
        self,
        client: DockerClient,
        containers: Mapping[str, str] | None = None,
        network_name: str | None = None,
        interface: str = "eth0",
    ) -> None:
        self.client = client
        self.containers = dict(containers or {})
        self.network_name = network_name
        self.interface = interface
        self._rules: list[DropRule] = []
        self._delays: dict[str, ChaosHandle] = {}

    def _container(self, node: str) -> Container:
        return self.client.containers.get(self.containers.get(node, node))

    def container_ip(self, node: str) -> str:
        """Address of a node's container on the test network."""
        container = self._container(node)
        container.reload()
        networks = container.attrs.get("NetworkSettings", {}).get("Networks", {})
        for net_name, net_info in networks.items():
            if self.network_name and net_name != self.network_name:
                continue
            if net_info.get("IPAddress"):
                return str(net_info["IPAddress"])
        raise ChaosError(f"Could not find IP for {node} on {self.network_name or 'any network'}")

    def _exec(self, node: str, command: str) -> None:
        exit_code, output = self._container(node).exec_run(command, privileged=True)
        if exit_code != 0:
            text = output.decode(errors="replace") if isinstance(output, bytes) else str(output)
            raise ChaosError(f"{command!r} on {node} exited {exit_code}: {text.strip()}")

    # =========================================================================
    # Partitions
    # =========================================================================

    def partition(self, grudge: Mapping[str, Iterable[str]]) -> str:
        """Make each node drop inbound traffic from the nodes it holds a grudge against.

        Any previous partition is healed first.
        """
        self.heal()
        ips = {node: self.container_ip(node) for node in self.containers or grudge}
        for node, dropped in grudge.items():
            for source in sorted(dropped):
                source_ip = ips.get(source) or self.container_ip(source)
                rule = DropRule(node, source, source_ip)
                self._exec(node, rule.command("-A"))
                self._rules.append(rule)
        log.info(
            "partition_active",
            grudge={node: sorted(dropped) for node, dropped in grudge.items()},
            rules=len(self._rules),
        )
        return "partitioned"

    def _gone(self, node: str) -> bool:
        """True when a node's container has no live network namespace."""
        try:
            container = self._container(node)
            container.reload()
        except NotFound:
            return True
        return container.status not in ("running", "paused")

    def heal(self) -> str:
        """Remove every DROP rule added by partition().

        Rules on a removed or stopped container vanish with its network
        namespace and are forgotten. Any other rule that cannot be deleted
        (a paused container refuses exec) stays tracked for the next heal.

        Raises:
            ChaosError: If any rule is still in place.
        """
        for rule in list(self._rules):
            try:
                self._exec(rule.node, rule.command("-D"))
            except (ChaosError, APIError) as e:
                if not self._gone(rule.node):
                    log.debug("heal_rule_error", node=rule.node, source=rule.source, error=str(e))
                    continue
            self._rules.remove(rule)
        if self._rules:
            log.warning("heal_incomplete", rules=len(self._rules), nodes=sorted({r.node for r in self._rules}))
            raise ChaosError(f"{len(self._rules)} DROP rules could not be removed")
        log.info("partition_healed")
        return "healed"

    # =========================================================================
    # Packet delay
    # =========================================================================

    def _ensure_images(self) -> None:
        """Ensure pumba and tc images are available."""
        for image in [PUMBA_IMAGE, TC_IMAGE]:
            try:
                self.client.images.get(image)
            except ImageNotFound:
                log.info("pulling_image", image=image)
                self.client.images.pull(image)

    def _run_pumba(self, chaos_type: str, target: str, args: list[str]) -> ChaosHandle:
        """Run a pumba netem container against one target container."""
        self._ensure_images()
        container_name = f"chaos-{chaos_type}-{target}"

        # Format: pumba netem --duration <dur>s --tc-image <img> --interface <if> <netem_cmd> <args> <target>
        command = [
            "netem",
            "--duration",
            f"{DEFAULT_CHAOS_DURATION}s",
            "--tc-image",
            TC_IMAGE,
            "--interface",
            self.interface,
            *args,
            target,
        ]
        log.info("starting_chaos", chaos_type=chaos_type, target=target, command=command)

        with contextlib.suppress(NotFound):
            self.client.containers.get(container_name).remove(force=True)

        container = self.client.containers.run(
            PUMBA_IMAGE,
            command=command,
            name=container_name,
            detach=True,
            volumes={"/var/run/docker.sock": {"bind": "/var/run/docker.sock", "mode": "rw"}},
            network_mode="host",
            auto_remove=True,
        )
        log.info("chaos_started", chaos_type=chaos_type, target=target, container_id=container.short_id)
        return ChaosHandle(container=container, chaos_type=chaos_type, target=target)

    def _stop_chaos(self, handle: ChaosHandle) -> None:
        try:
            handle.container.stop(timeout=5)
        except APIError as e:
            log.debug("chaos_stop_error", error=str(e))
        # auto_remove usually gets there first
        with contextlib.suppress(APIError):
            handle.container.remove(force=True)
        log.info("chaos_stopped", chaos_type=handle.chaos_type, target=handle.target, elapsed=handle.elapsed())

    def delay(self, nodes: Iterable[str], delay_ms: int, jitter_ms: int = 0) -> str:
        """Add `delay_ms` (+/- `jitter_ms`) of latency to each node's traffic."""
        args = ["delay", "--time", str(delay_ms)]
        if jitter_ms:
            args.extend(["--jitter", str(jitter_ms)])
        for node in nodes:
            if node in self._delays:
                self._stop_chaos(self._delays.pop(node))
            self._delays[node] = self._run_pumba("delay", self.containers.get(node, node), args)
        return "delayed"

    def clear_delay(self, nodes: Iterable[str]) -> str:
        for node in nodes:
            handle = self._delays.pop(node, None)
            if handle is not None:
                self._stop_chaos(handle)
        return "cleared"

    def cleanup_all(self) -> None:
        """Heal partitions and stop every delay."""
        log.info("cleanup_all_chaos", rules=len(self._rules), delays=len(self._delays))
        self.clear_delay(list(self._delays))
        try:
            self.heal()
        except ChaosError as e:
            log.error("cleanup_heal_failed", error=str(e))

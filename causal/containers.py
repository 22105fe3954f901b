"""
Docker lifecycle for the system under test.

ContainerManager runs one container per node on a bridge network of its own,
waits for each node's healthcheck and tears everything down afterwards.
DockerDb is the nemesis DbLifecycle backed by the same containers:

    start   docker start (after a kill)
    kill    docker kill (SIGKILL)
    pause   docker pause (cgroup freezer)
    resume  docker unpause

Each returns a status token rather than raising for "already in that
state", so repeated nemesis stops stay harmless.
"""

from __future__ import annotations

import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import docker
import structlog
from docker.errors import APIError, NotFound

if TYPE_CHECKING:
    from docker import DockerClient
    from docker.models.containers import Container
    from docker.models.networks import Network

log = structlog.get_logger()

DOCKER_DIR = Path(__file__).parent.parent / "docker"
NODE_IMAGE_TAG = "causal-node"


class ContainerCrashError(Exception):
    """Raised when a node container has exited while the run still needs it.

    Carries the node's last log lines.
    """

    def __init__(self, node: str, exit_code: int, logs: str) -> None:
        self.node = node
        self.exit_code = exit_code
        self.logs = logs
        super().__init__(f"Node container {node!r} exited with status {exit_code}; last logs:\n{logs}")


@dataclass
class NodeImage:
    """Where the node image is built from and how its containers run."""

    context: Path = DOCKER_DIR
    dockerfile: str = "Dockerfile.stub"
    tag: str = NODE_IMAGE_TAG
    environment: dict[str, str] = field(default_factory=dict)
    # Seconds to wait for the image's HEALTHCHECK to pass
    ready_timeout: float = 30.0
    poll_interval: float = 0.5


class ContainerManager:
    """Node containers on a dedicated bridge network.

    Args:
        client: Docker client; from the environment when omitted.
        network_name: Bridge network the nodes share.
        subnet: CIDR for the network when it has to be created.
    """

    def __init__(
        self,
        client: DockerClient | None = None,
        network_name: str = "causal-net",
        subnet: str | None = None,
    ) -> None:
        self.docker: DockerClient = client or docker.from_env()
        self.network_name = network_name
        self.subnet = subnet
        self._net: Network | None = None
        self.nodes: dict[str, Container] = {}

    @property
    def network(self) -> Network:
        """The node network, created on first use."""
        if self._net is None:
            try:
                self._net = self.docker.networks.get(self.network_name)
            except NotFound:
                ipam = None
                if self.subnet:
                    pool = docker.types.IPAMPool(subnet=self.subnet)
                    ipam = docker.types.IPAMConfig(pool_configs=[pool])
                log.info("network_create", network=self.network_name, subnet=self.subnet)
                self._net = self.docker.networks.create(self.network_name, driver="bridge", ipam=ipam)
        return self._net

    def build(self, image: NodeImage) -> str:
        """Build the node image; returns its id."""
        log.info("node_image_build", tag=image.tag, dockerfile=image.dockerfile)
        built, stream = self.docker.images.build(
            path=str(image.context), dockerfile=image.dockerfile, tag=image.tag, rm=True
        )
        for chunk in stream:
            text = chunk.get("stream", "") if isinstance(chunk, dict) else ""
            if text.strip():
                log.debug("node_image_output", line=text.strip())
        return str(built.id)

    def run_node(self, node: str, image: NodeImage, image_id: str) -> Container:
        """Start a node container; its name and hostname are the node name."""
        _ = self.network
        container = self.docker.containers.run(
            image_id,
            name=node,
            hostname=node,
            detach=True,
            environment={"CAUSAL_NODE": node, **image.environment},
            network=self.network_name,
            cap_add=["NET_ADMIN"],
        )
        self.nodes[node] = container
        log.info("node_container_started", node=node, id=container.short_id)
        return container

    def wait_ready(self, container: Container, timeout: float = 30.0, interval: float = 0.5) -> bool:
        """Poll until the healthcheck passes, or the container runs without one."""
        deadline = time.monotonic() + timeout
        health = None
        while time.monotonic() < deadline:
            container.reload()
            state = container.attrs.get("State", {})
            health = (state.get("Health") or {}).get("Status")
            if health == "healthy" or (health is None and state.get("Running")):
                log.debug("node_ready", node=container.name)
                return True
            if health == "unhealthy":
                break
            time.sleep(interval)
        log.error("node_not_ready", node=container.name, health=health)
        return False

    def get(self, node: str) -> Container:
        """The container of a node, tracking it if it was started elsewhere."""
        if node not in self.nodes:
            self.nodes[node] = self.docker.containers.get(node)
        return self.nodes[node]

    def tail_logs(self, node: str, lines: int = 100) -> str:
        container = self.nodes.get(node)
        if container is None:
            return ""
        return container.logs(tail=lines).decode("utf-8", errors="replace")

    def check_container_health(self, node: str) -> None:
        """Raise if a tracked node container has exited.

        Raises:
            ContainerCrashError: With the container's exit status and logs.
        """
        container = self.nodes.get(node)
        if container is None:
            return
        container.reload()
        if container.status != "exited":
            return
        status = container.attrs["State"]["ExitCode"]
        log.error("node_container_exited", node=node, exit_code=status)
        raise ContainerCrashError(node, status, self.tail_logs(node, 50))

    def remove_node(self, node: str) -> None:
        container = self.nodes.pop(node, None)
        if container is None:
            return
        try:
            container.remove(force=True)
        except APIError as e:
            log.error("node_container_remove_failed", node=node, error=str(e))
        else:
            log.info("node_container_removed", node=node)

    def cleanup(self) -> None:
        """Remove every node container, then the network."""
        for node in list(self.nodes):
            self.remove_node(node)
        if self._net is not None:
            net, self._net = self._net, None
            try:
                net.remove()
            except APIError as e:
                log.warning("network_remove_failed", network=self.network_name, error=str(e))

    @contextmanager
    def cluster(self, nodes: Sequence[str], image: NodeImage | None = None) -> Iterator[dict[str, Container]]:
        """Run one container per node for the duration of the context.

        Raises:
            RuntimeError: If a node never becomes ready.
        """
        image = image or NodeImage()
        image_id = self.build(image)
        try:
            started = {node: self.run_node(node, image, image_id) for node in nodes}
            for node, container in started.items():
                if not self.wait_ready(container, image.ready_timeout, image.poll_interval):
                    raise RuntimeError(f"Node {node} did not become ready:\n{self.tail_logs(node)}")
            yield started
        finally:
            self.cleanup()


class DockerDb:
    """DbLifecycle backed by docker container operations.

    Args:
        client: Docker client instance.
        containers: Node name -> container name; defaults to the node name.
    """

    def __init__(self, client: DockerClient, containers: Mapping[str, str] | None = None) -> None:
        self.client = client
        self.containers = dict(containers or {})

    def _container(self, node: str) -> Container:
        container = self.client.containers.get(self.containers.get(node, node))
        container.reload()
        return container

    def _state(self, container: Container) -> dict[str, Any]:
        return container.attrs.get("State", {})

    def start(self, node: str) -> str:
        container = self._container(node)
        state = self._state(container)
        if state.get("Paused"):
            container.unpause()
            return "resumed"
        if state.get("Running"):
            return "already-running"
        container.start()
        log.info("node_started", node=node)
        return "started"

    def kill(self, node: str) -> str:
        container = self._container(node)
        if not self._state(container).get("Running"):
            return "already-dead"
        container.kill()
        log.info("node_killed", node=node)
        return "killed"

    def pause(self, node: str) -> str:
        container = self._container(node)
        state = self._state(container)
        if not state.get("Running"):
            return "not-running"
        if state.get("Paused"):
            return "already-paused"
        container.pause()
        log.info("node_paused", node=node)
        return "paused"

    def resume(self, node: str) -> str:
        container = self._container(node)
        if not self._state(container).get("Paused"):
            return "not-paused"
        container.unpause()
        log.info("node_resumed", node=node)
        return "resumed"

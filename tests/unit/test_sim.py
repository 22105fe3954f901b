"""
In-Process Cluster Tests

Tests SimCluster transactions, anti-entropy under partitions, lifecycle state
transitions and the SimClient outcome mapping.
"""

from __future__ import annotations

import asyncio

import pytest

from causal.client import Outcome
from causal.history import Mop
from causal.nemesis import complete_grudge
from causal.sim import KILLED, PAUSED, RUNNING, NodeUnreachableError, SimClient, SimCluster

NODES = ("n1", "n2", "n3")


class TestTransactions:
    """Test local execution."""

    def test_list_append_and_read(self) -> None:
        cluster = SimCluster(NODES, "list")
        result = cluster.execute("n1", [Mop("append", 1, 1), Mop("append", 1, 2), Mop("r", 1, None)])
        assert result[-1] == Mop("r", 1, (1, 2))
        assert cluster.read_all("n2") == {}

    def test_set_reads_sorted(self) -> None:
        cluster = SimCluster(NODES, "set")
        cluster.execute("n1", [Mop("append", 1, 3), Mop("append", 1, 1)])
        assert cluster.execute("n1", [Mop("r", 1, None)]) == (Mop("r", 1, (1, 3)),)

    def test_register_overwrites(self) -> None:
        cluster = SimCluster(NODES, "register")
        cluster.execute("n1", [Mop("w", 1, 1), Mop("w", 1, 2)])
        assert cluster.read_all("n1") == {1: 2}

    def test_unknown_semantics(self) -> None:
        with pytest.raises(ValueError):
            SimCluster(NODES, "bag")


class TestReplication:
    """Test anti-entropy."""

    def test_sync_converges(self) -> None:
        cluster = SimCluster(NODES, "list")
        cluster.execute("n1", [Mop("append", 1, 1)])
        cluster.execute("n2", [Mop("append", 1, 2)])
        cluster.execute("n3", [Mop("append", 2, 1)])
        assert cluster.sync() > 0

        states = [cluster.read_all(n) for n in NODES]
        assert states[0] == states[1] == states[2]
        assert states[0][2] == (1,)

    def test_set_union(self) -> None:
        cluster = SimCluster(NODES, "set")
        cluster.execute("n1", [Mop("append", 1, 1)])
        cluster.execute("n2", [Mop("append", 1, 2)])
        cluster.sync()
        assert all(cluster.read_all(n) == {1: (1, 2)} for n in NODES)

    def test_partition_blocks_then_heals(self) -> None:
        cluster = SimCluster(NODES, "register")
        cluster.partition(complete_grudge([["n1"], ["n2", "n3"]]))
        cluster.execute("n1", [Mop("w", 1, 1)])
        cluster.execute("n2", [Mop("w", 2, 1)])
        cluster.sync()
        assert cluster.read_all("n1") == {1: 1}
        assert cluster.read_all("n3") == {2: 1}

        cluster.heal()
        cluster.sync()
        assert all(cluster.read_all(n) == {1: 1, 2: 1} for n in NODES)

    def test_stopped_replica_diverges(self) -> None:
        cluster = SimCluster(NODES, "list")
        cluster.stop_replication("n3")
        cluster.execute("n1", [Mop("append", 1, 1)])
        cluster.sync()
        assert cluster.read_all("n2") == {1: (1,)}
        assert cluster.read_all("n3") == {}

    def test_paused_node_does_not_sync(self) -> None:
        cluster = SimCluster(NODES, "list")
        cluster.pause("n2")
        cluster.execute("n1", [Mop("append", 1, 1)])
        cluster.sync()
        assert cluster.read_all("n2") == {}
        cluster.resume("n2")
        cluster.sync()
        assert cluster.read_all("n2") == {1: (1,)}

    def test_background_replication(self) -> None:
        cluster = SimCluster(NODES, "list", replication_interval=0.01)

        async def run() -> None:
            async with cluster.running():
                cluster.execute("n1", [Mop("append", 1, 1)])
                for _ in range(100):
                    if cluster.read_all("n3"):
                        return
                    await asyncio.sleep(0.01)

        asyncio.run(run())
        assert cluster.read_all("n3") == {1: (1,)}


class TestLifecycle:
    """Test db lifecycle transitions and status tokens."""

    def test_transitions(self) -> None:
        cluster = SimCluster(NODES)
        assert cluster.pause("n1") == "paused"
        assert cluster.state("n1") == PAUSED
        assert cluster.resume("n1") == "resumed"
        assert cluster.resume("n1") == "not-paused"
        assert cluster.kill("n1") == "killed"
        assert cluster.pause("n1") == "not-running"
        assert cluster.state("n1") == KILLED
        assert cluster.start("n1") == "started"
        assert cluster.start("n1") == "already-running"
        assert cluster.state("n1") == RUNNING

    def test_unreachable_control(self) -> None:
        cluster = SimCluster(NODES)
        cluster.make_unreachable("n2", attempts=2)
        for _ in range(2):
            with pytest.raises(NodeUnreachableError):
                cluster.kill("n2")
        assert cluster.kill("n2") == "killed"

    def test_delay_and_clear(self) -> None:
        cluster = SimCluster(NODES)
        cluster.delay(["n1"], 50, 0)
        assert cluster.latency("n1") == pytest.approx(0.05)
        cluster.clear_delay(["n1"])
        assert cluster.latency("n1") == 0.0


class TestSimClient:
    """Test SimClient outcome mapping."""

    def test_ok(self) -> None:
        cluster = SimCluster(NODES)

        async def run():
            client = SimClient(cluster)
            await client.open("n1")
            return await client.invoke([Mop("append", 1, 1)])

        result = asyncio.run(run())
        assert result.outcome is Outcome.OK
        assert result.value == (Mop("append", 1, 1),)

    def test_open_killed_node_refused(self) -> None:
        cluster = SimCluster(NODES)
        cluster.kill("n1")
        with pytest.raises(ConnectionRefusedError):
            asyncio.run(SimClient(cluster).open("n1"))

    def test_killed_node_fails(self) -> None:
        cluster = SimCluster(NODES)

        async def run():
            client = SimClient(cluster)
            await client.open("n1")
            cluster.kill("n1")
            return await client.invoke([Mop("append", 1, 1)])

        result = asyncio.run(run())
        assert result.outcome is Outcome.FAIL
        assert cluster.read_all("n1") == {}

    def test_paused_node_blocks(self) -> None:
        """A paused node holds requests, which the runner times out as info."""
        cluster = SimCluster(NODES)

        async def run():
            client = SimClient(cluster)
            await client.open("n1")
            cluster.pause("n1")
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(client.invoke([Mop("append", 1, 1)]), timeout=0.1)

        asyncio.run(run())
        assert cluster.read_all("n1") == {}

    def test_killed_mid_request_is_info(self) -> None:
        cluster = SimCluster(NODES)

        async def run():
            client = SimClient(cluster)
            await client.open("n1")
            cluster.pause("n1")
            task = asyncio.create_task(client.invoke([Mop("append", 1, 1)]))
            await asyncio.sleep(0.05)
            cluster.kill("n1")
            return await task

        result = asyncio.run(run())
        assert result.outcome is Outcome.INFO

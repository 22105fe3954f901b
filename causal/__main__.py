"""
Run one test, or the nemesis matrix, from the command line.

Usage:
    python -m causal config.json5
    CAUSAL_NODES=n1,n2,n3 CAUSAL_NEMESIS=partition python -m causal
    CAUSAL_NODES=n1,n2,n3 CAUSAL_TEST_ALL=1 CAUSAL_TEST_COUNT=3 python -m causal

Exit status: 0 valid, 1 invalid, 2 unknown, 3 configuration error. A matrix
run exits with its worst status.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import random
import sys
from collections.abc import Sequence
from typing import Any

import structlog

from causal.client import close_quietly, make_client_factory, open_client
from causal.clients.postgres import PostgresClient
from causal.config import ConfigError, TestConfig, config_from_env, load_config
from causal.generator import SEMANTICS
from causal.log import configure_logging
from causal.runner import RunResult, run_test
from causal.sim import SimCluster
from causal.store import save_run

log = structlog.get_logger()

# Fault combinations a matrix run goes through when no nemesis is configured
ALL_NEMESES: tuple[tuple[str, ...], ...] = (
    (),
    ("pause",),
    ("partition",),
    ("pause", "partition"),
    ("kill",),
)

# Worse outcomes first; 3 never comes out of a run
_SEVERITY = (1, 2, 0)


async def setup_postgres(config: TestConfig) -> None:
    """Create the backing table through the first postgres node."""
    node = next(n for n in config.client_nodes if config.client_kind(n) == "postgres")
    client = PostgresClient(dsn=config.postgres_dsn, table=config.postgres_table)
    await open_client(client, node, retries=config.open_retries, timeout=config.open_timeout)
    try:
        await client.setup_table()
    finally:
        await close_quietly(client)


async def run(config: TestConfig) -> RunResult:
    kinds = {config.client_kind(n) for n in config.client_nodes}
    db_setup = (lambda: setup_postgres(config)) if "postgres" in kinds else None

    if "sim" in kinds:
        cluster = SimCluster(config.nodes, SEMANTICS[config.workload], rng=random.Random(config.seed))
        factory = make_client_factory(config, cluster=cluster)
        async with cluster.running():
            return await run_test(config, factory, db=cluster, net=cluster, db_setup=db_setup)

    factory = make_client_factory(config)
    if not config.nemesis:
        return await run_test(config, factory, db_setup=db_setup)

    import docker

    from causal.chaos import NetworkChaos
    from causal.containers import DockerDb

    docker_client = docker.from_env()
    net = NetworkChaos(docker_client, config.containers, config.docker_network)
    try:
        return await run_test(
            config,
            factory,
            db=DockerDb(docker_client, config.containers),
            net=net,
            db_setup=db_setup,
        )
    finally:
        await asyncio.to_thread(net.cleanup_all)


async def run_and_save(config: TestConfig) -> int:
    result = await run(config)
    path = save_run(config, result.history, result.verdict)
    summary: dict[str, Any] = {
        name: r["valid"] for name, r in result.verdict.results.items()
    }
    log.info("verdict", name=config.name, valid=result.valid, path=str(path), **summary)
    return result.verdict.exit_code


def matrix(config: TestConfig) -> list[TestConfig]:
    """One config per nemesis combination and repetition.

    The configured nemesis, when set, replaces ALL_NEMESES. Runs are named
    after their workload and faults; seeded configs get a distinct seed per
    run so repetitions differ.
    """
    nemeses = [config.nemesis] if config.nemesis else list(ALL_NEMESES)
    configs = []
    for nemesis in nemeses:
        for _ in range(config.test_count):
            index = len(configs)
            configs.append(
                dataclasses.replace(
                    config,
                    name=f"{config.name}-{config.workload}-{'-'.join(nemesis) or 'none'}",
                    nemesis=nemesis,
                    seed=None if config.seed is None else config.seed + index,
                    test_all=False,
                )
            )
    return configs


async def run_matrix(config: TestConfig) -> int:
    """Run the matrix one test at a time; returns the worst exit status."""
    codes = []
    configs = matrix(config)
    for i, run_config in enumerate(configs):
        log.info("matrix_run", run=i + 1, of=len(configs), name=run_config.name)
        codes.append(await run_and_save(run_config))
    failed = sum(code != 0 for code in codes)
    log.info("matrix_finished", runs=len(codes), failed=failed)
    return min(codes, key=_SEVERITY.index)


async def main(argv: Sequence[str]) -> int:
    """Entry point; returns the process exit status."""
    configure_logging()
    try:
        config = load_config(argv[0]) if argv else config_from_env()
    except (ConfigError, OSError, ValueError) as e:
        log.error("invalid_configuration", error=str(e))
        return 3

    if config.test_all:
        return await run_matrix(config)
    return await run_and_save(config)


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        sys.exit(asyncio.run(main(sys.argv[1:])))
    sys.exit(130)

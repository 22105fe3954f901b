"""
Pytest configuration and fixtures for the causal harness test suite.

This module provides:
- Vector loading for checker and wire tests
- Container fixtures for tests against stub nodes in docker
- Markers for slow, container, resilience and checker tests

Most tests run fully in-process: checkers on hand-built histories, and whole
runs against the in-memory SimCluster. Tests marked `container` need a local
Docker daemon and are skipped without one.

Environment variables (container tests only):
    CAUSAL_TEST_NETWORK: Docker network name (default: causal-test-net)
    CAUSAL_TEST_SUBNET: Subnet for the test network (default: 172.31.0.0/16)
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING

import json5
import pytest

from causal.log import configure_logging

if TYPE_CHECKING:
    from causal.containers import ContainerManager

VECTORS_DIR = Path(__file__).parent / "vectors"

# Configure structlog for tests
configure_logging(os.environ.get("CAUSAL_LOG_LEVEL", "warning"))


def load_vectors(name: str) -> dict:
    """Load a json5 vector file from tests/vectors."""
    with (VECTORS_DIR / name).open() as f:
        return json5.load(f)


# =============================================================================
# Session-scoped fixtures (shared across all tests)
# =============================================================================


@pytest.fixture(scope="session")
def history_vectors() -> dict:
    """Histories with known checker verdicts."""
    return load_vectors("history_vectors.json5")


@pytest.fixture(scope="session")
def wire_vectors() -> dict:
    """Wire contract request/response pairs."""
    return load_vectors("wire_vectors.json5")


@pytest.fixture(scope="session")
def docker_client():
    """Docker client for container operations.

    Session-scoped to reuse connection across all tests.
    """
    import docker

    return docker.from_env()


@pytest.fixture(scope="session")
def container_manager(docker_client) -> Iterator[ContainerManager]:
    """Container manager on an isolated test network.

    Cleans up all containers and the network after the session.
    """
    from causal.containers import ContainerManager

    manager = ContainerManager(
        client=docker_client,
        network_name=os.environ.get("CAUSAL_TEST_NETWORK", "causal-test-net"),
        subnet=os.environ.get("CAUSAL_TEST_SUBNET", "172.31.0.0/16"),
    )
    _ = manager.network

    yield manager

    manager.cleanup()


# =============================================================================
# Pytest hooks and configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "container: tests requiring docker containers")
    config.addinivalue_line("markers", "resilience: whole runs with fault injection")
    config.addinivalue_line("markers", "checker: checker tests on recorded histories")


def pytest_collection_modifyitems(config, items):
    """Skip container tests when Docker is unavailable."""
    docker_available = True
    try:
        import docker
        from docker.errors import DockerException

        client = docker.from_env()
        client.ping()
    except (ImportError, DockerException):
        docker_available = False

    skip_docker = pytest.mark.skip(reason="Docker not available")

    for item in items:
        if not docker_available and "container" in item.keywords:
            item.add_marker(skip_docker)


def pytest_report_header(config):
    """Add information to the pytest header."""
    lines = ["Causal Consistency Harness Test Suite"]
    lines.append(f"  Vectors: {VECTORS_DIR}")
    try:
        import docker

        info = docker.from_env().info()
        lines.append(f"  Docker: {info.get('ServerVersion', 'unknown')}")
    except Exception as e:
        lines.append(f"  Docker: unavailable ({e})")
    return lines

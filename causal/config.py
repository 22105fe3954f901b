"""
Test configuration.

A TestConfig describes one run: which nodes to talk to, which workload to
generate, which backend client to use per node, which faults the nemesis may
inject, and the timing budgets that bound the run.

Configuration comes from a json5 file (load_config) or from CAUSAL_*
environment variables (config_from_env). Both funnel into the same dataclass,
which validates itself on construction.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import json5

# Fault names accepted by --nemesis style specs
FAULTS = ("partition", "pause", "kill", "packet")

# Shorthands expanding to several faults
SPECIAL_NEMESES: dict[str, tuple[str, ...]] = {
    "none": (),
    "all": ("pause", "partition", "kill"),
}

WORKLOADS = ("list-append", "g-set", "lww-register")

CLIENT_KINDS = ("http", "postgres", "sim")

CONSISTENCY_MODELS = (
    "serializable",
    "strong-session-serializable",
    "consistent-view",
    "strong-session-consistent-view",
    "causal",
)

PARTITION_TARGETS = ("one", "minority", "majority", "minority-third", "all")
NODE_TARGETS = ("one", "minority", "majority", "all")


class ConfigError(ValueError):
    """Raised when a configuration value is missing or out of range."""


def require_env(name: str, environ: Mapping[str, str] | None = None) -> str:
    """Get required environment variable or fail with clear error.

    Args:
        name: Environment variable name.
        environ: Mapping to read from. Defaults to os.environ.

    Returns:
        The environment variable value.

    Raises:
        ConfigError: If the variable is not set.
    """
    environ = os.environ if environ is None else environ
    value = environ.get(name)
    if not value:
        raise ConfigError(f"Required environment variable {name} is not set.")
    return value


def parse_nemesis_spec(spec: str | list[str] | tuple[str, ...]) -> tuple[str, ...]:
    """Expand a comma-separated nemesis spec into fault names.

    "all" and "none" expand to their fault sets; duplicates are dropped while
    keeping first-seen order.

    Raises:
        ConfigError: If a name is neither a fault nor a special nemesis.
    """
    names = spec.split(",") if isinstance(spec, str) else list(spec)
    faults: list[str] = []
    for raw in names:
        name = raw.strip()
        if not name:
            continue
        expanded = SPECIAL_NEMESES.get(name, (name,))
        for fault in expanded:
            if fault not in FAULTS:
                raise ConfigError(
                    f"Unknown fault {fault!r}; must be one of {', '.join(FAULTS)}, all or none"
                )
            if fault not in faults:
                faults.append(fault)
    return tuple(faults)


def parse_nodes_spec(spec: str | list[str] | tuple[str, ...]) -> tuple[str, ...]:
    """Split a comma-separated node list, trimming whitespace."""
    names = spec.split(",") if isinstance(spec, str) else list(spec)
    return tuple(n.strip() for n in names if n.strip())


@dataclass
class TestConfig:
    """Configuration for a single test run."""

    __test__ = False  # not a pytest class

    # Nodes of the system under test
    nodes: tuple[str, ...] = ("n1", "n2", "n3")

    # Human readable name, used for the store directory
    name: str = "causal"

    # Workload: list-append, g-set or lww-register
    workload: str = "list-append"

    # Default backend and per-node overrides
    client: str = "http"
    client_by_node: dict[str, str] = field(default_factory=dict)

    # Number of concurrent client processes (defaults to one per node)
    concurrency: int = 0

    # Approximate request rate across all processes, in hz
    rate: float = 100.0

    # Main phase duration in seconds
    time_limit: float = 60.0

    # Workload shape
    key_count: int = 10
    min_txn_length: int = 1
    max_txn_length: int = 4
    max_writes_per_key: int = 256

    # Nemesis
    nemesis: tuple[str, ...] = ()
    nemesis_interval: float = 5.0
    partition_targets: tuple[Any, ...] = ("one", "minority-third", "majority")
    pause_targets: tuple[Any, ...] = ("one", "minority", "majority", "all")
    kill_targets: tuple[Any, ...] = ("one", "minority", "majority", "all")
    packet_targets: tuple[Any, ...] = ("one", "minority", "majority", "all")
    packet_delay_ms: int = 100
    packet_jitter_ms: int = 0
    nemesis_retries: int = 3
    nemesis_retry_delay: float = 1.0

    # Client budgets
    op_timeout: float = 1.0
    open_timeout: float = 5.0
    open_retries: int = 5

    # Quiescence and final reads
    settle_delay: float = 10.0
    final_read_retries: int = 5
    excluded_nodes: tuple[str, ...] = ()

    # Nodes that get no client: no workers, no final read, not compared
    noop_nodes: tuple[str, ...] = ()

    # Checker options
    consistency_models: tuple[str, ...] = ("strong-session-serializable",)
    process_order: bool = True
    realtime: bool = False
    linearizable_keys: bool = False

    # Backend endpoints; "{node}" in the dsn is replaced by the node name
    http_port: int = 8089
    http_path: str = "/lww/better-sqlite3"
    postgres_dsn: str = "postgresql://postgres:postgres@{node}:5432/causal"
    postgres_table: str = "lww"

    # Docker-hosted nodes: node -> container name, and the shared network
    containers: dict[str, str] = field(default_factory=dict)
    docker_network: str | None = None

    # Reproducibility and output
    seed: int | None = None
    store_dir: str = "store"

    # Run the nemesis matrix (ALL_NEMESES unless nemesis is set), test_count times each
    test_all: bool = False
    test_count: int = 1

    def __post_init__(self) -> None:
        self.nodes = parse_nodes_spec(self.nodes)
        self.nemesis = parse_nemesis_spec(self.nemesis)
        self.excluded_nodes = parse_nodes_spec(self.excluded_nodes)
        self.noop_nodes = parse_nodes_spec(self.noop_nodes)
        self.consistency_models = tuple(self.consistency_models)
        for name in ("partition_targets", "pause_targets", "kill_targets", "packet_targets"):
            setattr(self, name, _freeze_targets(getattr(self, name)))
        if self.concurrency == 0:
            self.concurrency = len(self.client_nodes)
        self.validate()

    def validate(self) -> None:
        """Check ranges and enumerations.

        Raises:
            ConfigError: On the first invalid value.
        """
        if not self.nodes:
            raise ConfigError("At least one node is required")
        if self.workload not in WORKLOADS:
            raise ConfigError(f"workload must be one of {', '.join(WORKLOADS)}")
        for kind in (self.client, *self.client_by_node.values()):
            if kind not in CLIENT_KINDS:
                raise ConfigError(f"client must be one of {', '.join(CLIENT_KINDS)}, got {kind!r}")
        unknown = set(self.client_by_node) - set(self.nodes)
        if unknown:
            raise ConfigError(f"client_by_node names unknown nodes: {sorted(unknown)}")
        unknown = set(self.excluded_nodes) | set(self.noop_nodes) | set(self.containers)
        unknown -= set(self.nodes)
        if unknown:
            raise ConfigError(f"excluded_nodes, noop_nodes or containers name unknown nodes: {sorted(unknown)}")
        if not self.client_nodes:
            raise ConfigError("noop_nodes leaves no node with a client")
        for name in ("concurrency", "key_count", "min_txn_length", "max_txn_length",
                     "max_writes_per_key", "open_retries", "final_read_retries", "test_count"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be a positive integer")
        for name in ("rate", "time_limit", "nemesis_interval", "op_timeout", "open_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be a positive number")
        if self.settle_delay < 0 or self.nemesis_retries < 0:
            raise ConfigError("settle_delay and nemesis_retries must not be negative")
        if self.min_txn_length > self.max_txn_length:
            raise ConfigError("min_txn_length must not exceed max_txn_length")
        for model in self.consistency_models:
            if model not in CONSISTENCY_MODELS:
                raise ConfigError(
                    f"consistency model must be one of {', '.join(CONSISTENCY_MODELS)}"
                )
        for strategy in self.partition_targets:
            if isinstance(strategy, str) and strategy not in PARTITION_TARGETS:
                raise ConfigError(f"Unknown partition target {strategy!r}")
        for name in ("pause_targets", "kill_targets", "packet_targets"):
            for strategy in getattr(self, name):
                if isinstance(strategy, str) and strategy not in NODE_TARGETS:
                    raise ConfigError(f"Unknown {name[:-8]} target {strategy!r}")

    def client_kind(self, node: str) -> str:
        """Backend client kind used for a node."""
        return self.client_by_node.get(node, self.client)

    @property
    def active_nodes(self) -> tuple[str, ...]:
        """Nodes whose final state is read and compared."""
        return tuple(n for n in self.client_nodes if n not in self.excluded_nodes)

    @property
    def client_nodes(self) -> tuple[str, ...]:
        """Nodes client workers are spread over."""
        return tuple(n for n in self.nodes if n not in self.noop_nodes)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> TestConfig:
        """Build a config from a mapping, accepting dashed or underscored keys.

        Raises:
            ConfigError: On unknown keys or invalid values.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = key.replace("-", "_")
            if name not in known:
                raise ConfigError(f"Unknown configuration key {key!r}")
            kwargs[name] = value
        return cls(**kwargs)


def _freeze_targets(targets: Any) -> tuple[Any, ...]:
    # Explicit node lists come from json as lists; keep them hashable
    if isinstance(targets, str):
        targets = parse_nodes_spec(targets)
    return tuple(tuple(t) if isinstance(t, list) else t for t in targets)


def load_config(path: Path | str) -> TestConfig:
    """Load a json5 configuration file.

    Args:
        path: Path to the json5 file.

    Returns:
        The validated configuration.
    """
    with open(path) as f:
        data = json5.load(f)
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be an object")
    return TestConfig.from_mapping(data)


def config_from_env(environ: Mapping[str, str] | None = None) -> TestConfig:
    """Build a configuration from CAUSAL_* environment variables.

    Required environment variables:
        CAUSAL_NODES: Comma-separated node names

    Optional variables map onto TestConfig fields by upper-casing the field
    name, e.g. CAUSAL_TIME_LIMIT, CAUSAL_NEMESIS, CAUSAL_WORKLOAD.
    """
    environ = os.environ if environ is None else environ
    data: dict[str, Any] = {"nodes": require_env("CAUSAL_NODES", environ)}
    converters: dict[str, Any] = {
        f.name: f.type for f in fields(TestConfig) if f.name not in ("nodes", "client_by_node", "containers")
    }
    for name, type_name in converters.items():
        raw = environ.get(f"CAUSAL_{name.upper()}")
        if raw is None:
            continue
        data[name] = _convert(name, raw, str(type_name))
    return TestConfig.from_mapping(data)


def _convert(name: str, raw: str, type_name: str) -> Any:
    try:
        if type_name.startswith("bool"):
            return raw.lower() in ("1", "true", "yes")
        if type_name.startswith("int"):
            return int(raw)
        if type_name.startswith("float"):
            return float(raw)
    except ValueError as e:
        raise ConfigError(f"CAUSAL_{name.upper()}: {e}") from e
    if type_name.startswith("tuple"):
        return parse_nodes_spec(raw)
    return raw

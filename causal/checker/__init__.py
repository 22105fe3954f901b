"""
Checkers and the combined verdict.

Two independent checkers run over the same frozen history:

    causal-consistency   dependency-graph cycles and impossible reads
    strong-convergence   final node states agree

Each returns a map whose "valid" is True, False or "unknown". The verdict
composes them: any False makes the run invalid; otherwise any "unknown"
makes it indeterminate.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from causal.checker.causal import check_causal
from causal.checker.convergence import check_convergence
from causal.checker.graph import CheckerError

if TYPE_CHECKING:
    from causal.config import TestConfig
    from causal.history import History

__all__ = ["CheckerError", "Verdict", "check", "check_causal", "check_convergence", "merge_valid"]

Valid = bool | str


def merge_valid(values: Iterable[Valid]) -> Valid:
    """False dominates "unknown", which dominates True."""
    merged: Valid = True
    for value in values:
        if value is False:
            return False
        if value == "unknown":
            merged = "unknown"
        elif value is not True:
            raise CheckerError(f"Invalid validity value {value!r}")
    return merged


@dataclass
class Verdict:
    """Combined result of all checkers."""

    results: dict[str, Mapping[str, Any]] = field(default_factory=dict)

    @property
    def valid(self) -> Valid:
        return merge_valid(r["valid"] for r in self.results.values())

    @property
    def exit_code(self) -> int:
        """0 valid, 1 invalid, 2 unknown."""
        valid = self.valid
        if valid is True:
            return 0
        return 1 if valid is False else 2

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, **self.results}


def check(history: History, config: TestConfig) -> Verdict:
    """Run both checkers with the options from a configuration."""
    from causal.generator import SEMANTICS

    semantics = SEMANTICS[config.workload]
    return Verdict(
        {
            "causal-consistency": check_causal(
                history,
                semantics,
                consistency_models=config.consistency_models,
                process_order=config.process_order,
                realtime=config.realtime,
                linearizable_keys=config.linearizable_keys,
            ),
            "strong-convergence": check_convergence(
                history,
                semantics,
                nodes=config.nodes,
                excluded_nodes=(*config.excluded_nodes, *config.noop_nodes),
            ),
        }
    )

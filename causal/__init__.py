"""
Fault-injection test harness for causal consistency and strong convergence.

Drives concurrent clients against a replicated store while a nemesis injects
partitions, pauses, kills and packet delay, records the resulting history,
and checks it for dependency cycles and for final-state divergence.
"""

from __future__ import annotations

__version__ = "0.1.0"

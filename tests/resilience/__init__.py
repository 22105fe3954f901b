"""
Resilience tests for the causal harness.

This module contains whole runs under injected faults:
- In-process runs against SimCluster (test_e2e_sim.py)
- Runs against stub nodes in docker (test_e2e_containers.py)

Test pattern:
1. Configure nodes, workload and nemesis
2. Run every phase: main, final nemesis, settle, final reads
3. Check the verdict and the recorded nemesis operations
"""

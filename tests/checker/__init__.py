"""Checker tests for the causal harness.

These tests run the checkers over hand-built and generated histories:
- Dependency graph search (test_graph.py)
- Causal consistency verdicts (test_causal_checker.py)
- Strong convergence verdicts (test_convergence_checker.py)
"""

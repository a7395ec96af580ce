"""
Single-asset paper ledger.

This package is intentionally split into:
- models: immutable balance / trade / snapshot / price point shapes
- transitions: pure functions (no storage dependency) for deterministic testing
- store: SQL-backed atomic read-modify-write of the balance + append-only logs
- snapshots: point-in-time valuation recorder
- facade: the `Ledger` handle collaborators hold
"""

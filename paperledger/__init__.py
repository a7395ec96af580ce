"""
Simulated single-asset portfolio ledger with performance analytics.

Entry point for collaborators is `paperledger.ledger.facade.Ledger`.
"""

__version__ = "0.1.0"

"""
Branch Ledger

Ledger and Fixed Deposit engine for a branch-banking back office: an
append-only transaction log with running balances, sequential identifiers,
Fixed Deposit lifecycle management and idempotent interest accrual jobs.
"""

__version__ = "1.0.0"

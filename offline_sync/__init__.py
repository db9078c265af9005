"""
Offline Sync Service

Wallet ledger with an offline-first transaction queue: devices capture
transactions while disconnected and reconcile them in batches, with
idempotent replay, exponential retry backoff and Decimal balances.
"""

__version__ = "1.0.0"

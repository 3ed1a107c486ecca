"""
Storage layer for the usage ledger.

SQLite persistence for grants, usage records, spending limits,
subscriptions and billing customers.
"""

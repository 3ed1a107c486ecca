"""
Usage Ledger.

Usage accounting for metered AI consumption: pricing, prepaid credit,
spending limits, transactional usage recording and idempotent reporting to
an external metered-billing provider.
"""

__version__ = "0.1.0"

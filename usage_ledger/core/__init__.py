"""
Core modules for the usage ledger.

This package contains cost calculation, the credit ledger, the spending
limit guard, usage recording, external reporting and reconciliation.
"""

"""
Metered-billing providers.

The ledger delegates customer creation and usage billing to an external
provider behind the ``MeteringProvider`` contract.
"""

from .base import MeteringProvider
from .memory import InMemoryMeteringProvider

__all__ = ["MeteringProvider", "InMemoryMeteringProvider"]

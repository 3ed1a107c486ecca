"""
SDK for the usage ledger.

Provides model clients that check limits before a call and record usage
after it.
"""

from .openai_client import GuardedOpenAI

__all__ = ["GuardedOpenAI"]

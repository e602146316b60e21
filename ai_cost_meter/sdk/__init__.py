"""
SDK for AI Cost Meter.

Provides metered wrappers around provider clients.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]

"""
AI Cost Meter.

Usage metering and quota enforcement for pay-per-use AI provider calls.
"""

__version__ = "0.1.0"

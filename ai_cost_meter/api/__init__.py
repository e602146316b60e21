"""
HTTP interface for AI Cost Meter.

Exposes the admission check and usage summaries over FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]

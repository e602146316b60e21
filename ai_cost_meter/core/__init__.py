"""
Core modules for AI Cost Meter.

This package contains token estimation, pricing, quota evaluation,
usage recording and the metering middleware that ties them together.
"""

"""
Telemetry Module
================

Error tracking for the billing service (Sentry).

Usage:
    from funnelpay.telemetry import init_sentry, capture_exception

    init_sentry()  # once, on startup
"""

from funnelpay.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]

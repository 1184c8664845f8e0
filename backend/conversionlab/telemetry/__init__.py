"""
Telemetry Module
================

Observability for the analytics engine.

Components:
- sentry.py: Error tracking (API + ARQ worker)

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from conversionlab.telemetry import init_observability, capture_exception

    # Once, on app or worker startup
    init_observability()
"""

from conversionlab.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool: {"sentry": True/False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
]

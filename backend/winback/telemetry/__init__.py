"""
Telemetry Module
================

Observability for the recovery pipeline.

Components:
- sentry.py: Error tracking for the API and the arq worker

Usage:
    from winback.telemetry import init_observability, capture_exception

    init_observability()
"""

from winback.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization: {"sentry": True/False}
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

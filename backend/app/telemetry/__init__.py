"""
Telemetry Module
================

Observability for the store sync backend.

Components:
- sentry.py: Error tracking for the API and the arq worker

Usage:
    from app.telemetry import init_sentry, capture_exception
"""

from app.telemetry.sentry import (
    init_sentry,
    capture_exception,
)


__all__ = [
    "init_sentry",
    "capture_exception",
]

"""
errors.py
----------
Exception hierarchy for the feature engine.

Input errors (malformed rows) never raise: they are collected in the
RejectionReport. Only configuration problems and broken invariants raise,
and they do so before any partially-correct output can escape.
"""


class AnalyticsError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(AnalyticsError, ValueError):
    """
    Invalid caller-supplied parameters: window bounds, cutoff outside the
    data range, empty admin-code patterns, missing input columns.
    """


class InvariantViolation(AnalyticsError, RuntimeError):
    """A code defect was detected at runtime (e.g. negative cohort offset)."""


class LeakageError(InvariantViolation):
    """Outcome-window data reached a history-only computation."""

"""Exceptions raised by the audit pipeline."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Missing or invalid audit, step definition, weight, or control-point index."""


class AnalysisError(RuntimeError):
    """The model never submitted a step result, or submitted an unusable one."""

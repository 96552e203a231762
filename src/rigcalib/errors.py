from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid ids, parameter sizes or configuration documents."""


class NumericalFailure(RuntimeError):
    """The minimizer failed during a solve round."""

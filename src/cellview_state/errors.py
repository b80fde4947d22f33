"""
Exception types raised by the state engine.
"""


class CellviewError(Exception):
    """Base class for all engine errors."""


class ValidationError(CellviewError, ValueError):
    """A mutator received a bad index, key, label or option."""


class InvariantViolation(ValidationError):
    """An edit would break a structural invariant (e.g. self-merge)."""


class FieldLoadError(CellviewError, RuntimeError):
    """Materializing a field's arrays failed or returned the wrong shape."""


class ConfigurationError(CellviewError, RuntimeError):
    """A required collaborator (loader, dimension manager) is missing."""

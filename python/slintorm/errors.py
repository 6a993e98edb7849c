"""Exception hierarchy for slintorm."""

from __future__ import annotations


class SlintORMError(Exception):
    """Base class for all slintorm errors."""


class ConfigurationError(SlintORMError, ValueError):
    """Raised for invalid configuration or call arguments.

    Covers missing schema or model names, unsupported operators, empty
    filter/update/delete conditions and malformed schema descriptions.
    These are raised synchronously at call time and never retried.
    """


class SchemaNotFoundError(ConfigurationError, LookupError):
    """Raised when a schema or a model inside it cannot be found."""


class UnsupportedDriverError(ConfigurationError):
    """Raised when no engine is available for a driver or URL scheme."""

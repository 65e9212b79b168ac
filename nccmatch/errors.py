"""Exceptions raised by the matcher."""


class MatchError(Exception):
    """Base class for matcher errors."""


class InvalidArgumentError(MatchError, ValueError):
    """Malformed images, inconsistent sizes or out-of-range options."""

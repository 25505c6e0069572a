"""Exceptions raised by the relay core."""


class RelayError(Exception):
    """Base class for relay errors."""
    pass


class ProtocolParseError(RelayError):
    """Raised when a frame from either side cannot be decoded."""
    pass


class ConfigurationError(RelayError):
    """Raised when the relay is missing configuration it needs (e.g. credentials)."""
    pass

"""Exception types raised by pgscv."""


class PgscvError(Exception):
    """Base class for pgscv errors."""


class ConfigError(PgscvError, ValueError):
    """Configuration file or environment holds an invalid value."""


class DiscoveryError(PgscvError):
    """A process could not be turned into a monitored service."""

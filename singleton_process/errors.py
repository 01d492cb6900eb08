"""Exception types raised by singleton-process."""


class SingletonError(Exception):
    """Base class for all singleton-process errors."""


class PersisterError(SingletonError, OSError):
    """
    A persister could not complete a create, check or delete.

    Always fatal to the current call. The lock controller publishes it as an
    ``error`` notification and raises it to the caller; it is never retried.
    """


class ConfigurationError(SingletonError, ValueError):
    """Invalid controller or persister configuration."""


__all__ = [
    "SingletonError",
    "PersisterError",
    "ConfigurationError",
]

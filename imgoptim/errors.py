class OptimizeError(Exception):
    pass


class DecodeError(OptimizeError):
    """Image data is corrupt or in a format the decoder does not support."""


class EncodeError(OptimizeError):
    """No engine could produce output for the requested format."""


class ConfigError(OptimizeError, ValueError):
    """Invalid configuration; raised before any work starts."""


class RewriteError(OptimizeError):
    """A recorded reference no longer matches the file it was scanned from."""

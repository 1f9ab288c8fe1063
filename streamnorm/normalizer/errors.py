"""Stream normalization error types."""


class NormalizerError(Exception):
    """Base error for stream normalization failures."""


class UpstreamStreamError(NormalizerError):
    """Raised when reading the upstream stream fails mid-request."""

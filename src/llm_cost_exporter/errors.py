class ExporterError(Exception):
    """
    base class for every error raised by the exporter.
    """


class FatalConfigError(ExporterError):
    """
    raised while building provider configs. The process must not start.
    """


class AuthConfigError(ExporterError):
    """
    credentials for a provider could not be resolved.
    """


class ProviderError(ExporterError):
    """
    base class for failures of a provider's fetch_usage call.
    """


class NetworkError(ProviderError):
    pass


class RateLimitError(ProviderError):
    """
    RateLimitError carries the provider supplied retry hint,
    in seconds, when there is one.
    """

    def __init__(self, message: "str", retry_after: "float | None" = None) -> "None":
        super().__init__(message)
        self.retry_after = retry_after


class ParseError(ProviderError):
    pass


class AuthenticationError(ProviderError):
    """
    the provider rejected the credentials. Signals that cached
    credentials should be dropped and resolved again.
    """


class CircuitOpenError(ExporterError):
    """
    raised locally, without any network I/O, while a provider's
    circuit breaker is open.
    """


class RetryAbortedError(ExporterError):
    """
    raised when shutdown is requested while a call waits to be
    retried. Not a provider failure.
    """

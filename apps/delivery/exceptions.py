class DeliveryError(Exception):
    """Base class for delivery provider failures."""


class ProviderConfigurationError(DeliveryError):
    """Provider credentials or sender configuration are missing or invalid.

    Fatal for the campaign being sent; retrying cannot succeed.
    """


class ProviderTransportError(DeliveryError):
    """A single message could not be handed to the provider."""

    def __init__(self, message, status=None, retryable=True):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class CircuitOpenError(ProviderTransportError):
    """Sends are short-circuited after repeated provider failures."""

    def __init__(self, message):
        super().__init__(message, status=None, retryable=True)

from apps.delivery.exceptions import ProviderConfigurationError


class SenderVerificationError(ProviderConfigurationError):
    """The campaign's from-address cannot be used; no message may leave the system."""

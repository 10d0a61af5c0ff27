class WebhookAuthenticationError(Exception):
    """The webhook shared-secret token is missing or wrong; the whole batch is rejected."""

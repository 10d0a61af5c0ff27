# apps/delivery/providers.py
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .exceptions import ProviderConfigurationError, ProviderTransportError

logger = logging.getLogger(__name__)

SENDGRID_ENDPOINT = 'https://api.sendgrid.com/v3/mail/send'


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    from_name: str
    from_email: str
    reply_to: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    custom_args: Dict[str, str] = field(default_factory=dict)


@dataclass
class SendResult:
    id: str
    status: Optional[int] = None


class EmailProvider(ABC):
    name = 'base'

    @abstractmethod
    def send_email(self, message: EmailMessage) -> SendResult:
        pass


def _is_retryable(error):
    return isinstance(error, ProviderTransportError) and error.retryable


class SendGridProvider(EmailProvider):
    name = 'sendgrid'

    def __init__(self, api_key=None, timeout=None):
        self.api_key = api_key if api_key is not None else settings.SENDGRID_API_KEY
        self.timeout = timeout if timeout is not None else settings.SENDGRID_TIMEOUT_SECONDS

    def build_payload(self, message: EmailMessage):
        personalization = {'to': [{'email': message.to}]}
        if message.custom_args:
            personalization['custom_args'] = {k: str(v) for k, v in message.custom_args.items()}
        payload = {
            'personalizations': [personalization],
            'from': {'email': message.from_email, 'name': message.from_name},
            'subject': message.subject,
            'content': [{'type': 'text/html', 'value': message.html}],
        }
        if message.reply_to:
            payload['reply_to'] = {'email': message.reply_to}
        if message.headers:
            payload['headers'] = message.headers
        return payload

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        reraise=True,
    )
    def send_email(self, message: EmailMessage) -> SendResult:
        if not self.api_key:
            raise ProviderConfigurationError('SendGrid not configured. Set SENDGRID_API_KEY.')

        try:
            response = httpx.post(
                SENDGRID_ENDPOINT,
                json=self.build_payload(message),
                headers={'Authorization': f'Bearer {self.api_key}'},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderTransportError(f'SendGrid timeout: {e}') from e
        except httpx.HTTPError as e:
            raise ProviderTransportError(f'SendGrid network error: {e}') from e

        if response.status_code in (401, 403):
            raise ProviderConfigurationError(f'SendGrid rejected credentials: {response.status_code}')
        if response.status_code >= 400:
            retryable = response.status_code == 429 or response.status_code >= 500
            logger.warning(f"SendGrid rejected message to {message.to}: {response.status_code}")
            raise ProviderTransportError(
                f'SendGrid error: {response.status_code} {response.text[:200]}',
                status=response.status_code,
                retryable=retryable,
            )

        message_id = response.headers.get('x-message-id') or f'sendgrid:{uuid.uuid4().hex}'
        return SendResult(id=message_id, status=response.status_code)


class LocmemProvider(EmailProvider):
    """Keeps sent messages in memory, like Django's locmem email backend."""

    name = 'locmem'
    outbox = []
    _lock = threading.Lock()

    def send_email(self, message: EmailMessage) -> SendResult:
        with self._lock:
            LocmemProvider.outbox.append(message)
        return SendResult(id=f'locmem:{uuid.uuid4().hex}', status=202)

    @classmethod
    def reset(cls):
        with cls._lock:
            cls.outbox.clear()


def get_email_provider(path=None) -> EmailProvider:
    provider_path = path or settings.MARKETING_EMAIL_PROVIDER
    try:
        provider_class = import_string(provider_path)
    except ImportError as e:
        raise ProviderConfigurationError(f'Unknown email provider {provider_path}') from e
    return provider_class()

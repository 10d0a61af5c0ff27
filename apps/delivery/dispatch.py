# apps/delivery/dispatch.py
import logging
from dataclasses import dataclass
from typing import Optional

from django.template import TemplateSyntaxError, engines

from apps.suppressions.tokens import build_preferences_url, build_unsubscribe_url
from .circuit_breaker import ProviderCircuitBreaker
from .providers import EmailMessage, get_email_provider

logger = logging.getLogger(__name__)


class RenderError(Exception):
    pass


@dataclass(frozen=True)
class SenderDetails:
    from_name: Optional[str]
    from_email: Optional[str]
    reply_to: Optional[str] = None


def render_message(template, context):
    """Renders merge fields (``{{ first_name }}``) with the Django template engine."""
    engine = engines['django']
    try:
        rendered_subject = engine.from_string(template.subject).render(context).strip()
        rendered_html = engine.from_string(template.html_body).render(context)
    except TemplateSyntaxError as e:
        raise RenderError(str(e)) from e
    return rendered_subject, rendered_html


def build_message(*, tenant_id, email, template, sender, merge_context=None, custom_args=None):
    unsubscribe_url = build_unsubscribe_url(tenant_id, email)
    context = dict(merge_context or {})
    context.update({
        'email': email,
        'unsubscribe_url': unsubscribe_url,
        'preferences_url': build_preferences_url(tenant_id, email),
    })
    subject, html = render_message(template, context)

    list_unsubscribe = [f'<{unsubscribe_url}>']
    if sender.from_email:
        list_unsubscribe.insert(0, f'<mailto:{sender.from_email}?subject=unsubscribe>')

    return EmailMessage(
        to=email,
        subject=subject,
        html=html,
        from_name=sender.from_name,
        from_email=sender.from_email,
        reply_to=sender.reply_to,
        headers={
            'List-Unsubscribe': ', '.join(list_unsubscribe),
            'List-Unsubscribe-Post': 'List-Unsubscribe=One-Click',
        },
        custom_args={k: str(v) for k, v in (custom_args or {}).items() if v is not None},
    )


class Dispatcher:
    """Hands rendered messages to the configured provider behind a circuit breaker."""

    def __init__(self, provider=None, circuit_breaker=None):
        self.provider = provider or get_email_provider()
        self.circuit_breaker = circuit_breaker or ProviderCircuitBreaker()

    def send(self, tenant_id, message):
        key = f"{self.provider.name}:{tenant_id}"
        result = self.circuit_breaker.call(key, self.provider.send_email, message)
        logger.debug(f"Dispatched message {result.id} for tenant {tenant_id}")
        return result

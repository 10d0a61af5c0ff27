# apps/suppressions/views.py
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework import status
from django.conf import settings
from django.db import transaction
import logging

from apps.contacts.models import Contact, ConsentStatus, ContactPreference, normalize_email
from tasks.marketing import ingest_provider_events_async
from .exceptions import WebhookAuthenticationError
from .guard import apply_suppression, clear_suppression
from .ingestion import ingest_provider_events, verify_webhook_token
from .models import Suppression, SuppressionType
from .tokens import verify_preferences_token, verify_unsubscribe_token

logger = logging.getLogger(__name__)

INVALID_TOKEN = {'error': 'Invalid or expired token'}


@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def sendgrid_webhook(request):
    """Ingest a SendGrid event webhook batch"""
    token = request.headers.get('X-Webhook-Token')
    try:
        if settings.MARKETING_WEBHOOK_ASYNC:
            verify_webhook_token(token)
            events = request.data if isinstance(request.data, list) else []
            ingest_provider_events_async.delay(events)
            return Response({'ok': True, 'queued': len(events)}, status=status.HTTP_202_ACCEPTED)
        result = ingest_provider_events(request.data, token=token)
    except WebhookAuthenticationError as e:
        logger.warning(f"Rejected webhook batch: {e}")
        return Response({'ok': False, 'error': str(e)}, status=status.HTTP_401_UNAUTHORIZED)

    return Response({'ok': True, **result.as_dict()}, status=status.HTTP_200_OK)


def _subscription_state(tenant_id, email):
    suppression = Suppression.objects.filter(tenant_id=tenant_id, email=email).first()
    return {
        'email': email,
        'subscribed': suppression is None,
        'suppression': suppression.type if suppression else None,
    }


@api_view(['GET', 'POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def unsubscribe(request, token):
    """GET previews the link; POST (incl. one-click List-Unsubscribe-Post) unsubscribes"""
    payload = verify_unsubscribe_token(token)
    if payload is None:
        return Response(INVALID_TOKEN, status=status.HTTP_400_BAD_REQUEST)

    tenant_id, email = payload['tenantId'], normalize_email(payload['email'])
    if request.method == 'POST':
        apply_suppression(tenant_id, email, SuppressionType.UNSUBSCRIBE, reason='Unsubscribe link')

    return Response(_subscription_state(tenant_id, email))


@api_view(['GET', 'POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def preferences(request, token):
    """Read or update topic preferences for the contact named in the token"""
    payload = verify_preferences_token(token)
    if payload is None:
        return Response(INVALID_TOKEN, status=status.HTTP_400_BAD_REQUEST)

    tenant_id, email = payload['tenantId'], normalize_email(payload['email'])
    contact = Contact.objects.filter(tenant_id=tenant_id, email=email).first()
    if contact is None:
        return Response({'error': 'Contact not found'}, status=status.HTTP_404_NOT_FOUND)

    if request.method == 'POST':
        topics = request.data.get('topics') or {}
        if not isinstance(topics, dict):
            return Response({'error': 'topics must be an object'}, status=status.HTTP_400_BAD_REQUEST)

        with transaction.atomic():
            for topic, opted_in in topics.items():
                ContactPreference.objects.update_or_create(
                    contact=contact,
                    topic=str(topic).strip().lower(),
                    defaults={'opted_in': bool(opted_in)},
                )

        if request.data.get('unsubscribe_all'):
            apply_suppression(tenant_id, email, SuppressionType.UNSUBSCRIBE, reason='Preference centre')
        elif request.data.get('resubscribe'):
            clear_suppression(tenant_id, email)
            if not Suppression.objects.filter(tenant_id=tenant_id, email=email).exists():
                Contact.objects.filter(pk=contact.pk).update(consent_status=ConsentStatus.SUBSCRIBED)

    data = _subscription_state(tenant_id, email)
    data['topics'] = {
        pref.topic: pref.opted_in for pref in ContactPreference.objects.filter(contact=contact).order_by('topic')
    }
    return Response(data)

"""
Stateless unsubscribe and preferences tokens.

Format: ``base64url(JSON{tenantId, email, exp})`` + ``.`` + HMAC-SHA256 signature
of the encoded payload. Verification needs only the server secret, never the
database, so links in already-sent mail keep working.
"""

import json
import time

from django.conf import settings
from django.core import signing

UNSUBSCRIBE_SALT = 'marketing.unsubscribe'
PREFERENCES_SALT = 'marketing.preferences'


def _signer(salt):
    return signing.Signer(
        key=settings.MARKETING_UNSUBSCRIBE_SECRET,
        sep='.',
        salt=salt,
        algorithm='sha256',
    )


def _default_exp():
    return int(time.time()) + settings.MARKETING_TOKEN_EXP_DAYS * 24 * 60 * 60


def _create_token(salt, tenant_id, email, exp=None):
    payload = {
        'tenantId': str(tenant_id),
        'email': email,
        'exp': int(exp) if exp is not None else _default_exp(),
    }
    encoded = signing.b64_encode(json.dumps(payload, separators=(',', ':')).encode()).decode()
    return _signer(salt).sign(encoded)


def _verify_token(salt, token):
    if not token or not isinstance(token, str):
        return None
    try:
        encoded = _signer(salt).unsign(token)
        payload = json.loads(signing.b64_decode(encoded.encode()))
    except (signing.BadSignature, ValueError, TypeError):
        return None
    if not isinstance(payload, dict):
        return None
    if not payload.get('tenantId') or not payload.get('email') or not payload.get('exp'):
        return None
    try:
        if int(payload['exp']) < int(time.time()):
            return None
    except (TypeError, ValueError):
        return None
    return payload


def create_unsubscribe_token(tenant_id, email, exp=None):
    return _create_token(UNSUBSCRIBE_SALT, tenant_id, email, exp)


def verify_unsubscribe_token(token):
    """Payload dict, or None when the token is forged, malformed or expired."""
    return _verify_token(UNSUBSCRIBE_SALT, token)


def create_preferences_token(tenant_id, email, exp=None):
    return _create_token(PREFERENCES_SALT, tenant_id, email, exp)


def verify_preferences_token(token):
    return _verify_token(PREFERENCES_SALT, token)


def build_unsubscribe_url(tenant_id, email):
    token = create_unsubscribe_token(tenant_id, email)
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/api/v1/marketing/unsubscribe/{token}/"


def build_preferences_url(tenant_id, email):
    token = create_preferences_token(tenant_id, email)
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/api/v1/marketing/preferences/{token}/"

from rest_framework import serializers

CORRELATION_KEYS = ('tenantId', 'campaignId', 'automationId', 'contactId')


class ProviderEventSerializer(serializers.Serializer):
    """One delivery-provider webhook event.

    Correlation ids are read from ``custom_args``; SendGrid also flattens
    custom args onto the event itself, so top-level keys are accepted too.
    """

    email = serializers.EmailField()
    event = serializers.CharField(max_length=50)
    custom_args = serializers.DictField(required=False, default=dict)
    sg_event_id = serializers.CharField(required=False, allow_blank=True, default='')
    event_id = serializers.CharField(required=False, allow_blank=True, default='')
    timestamp = serializers.IntegerField(required=False, allow_null=True, min_value=0)
    bounce_class = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    type = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    def validate(self, attrs):
        custom_args = attrs.get('custom_args') or {}
        initial = self.initial_data if isinstance(self.initial_data, dict) else {}
        for key in CORRELATION_KEYS:
            value = custom_args.get(key) or initial.get(key)
            attrs[key] = str(value).strip() if value not in (None, '') else ''
        attrs['email'] = attrs['email'].strip().lower()
        attrs['event'] = attrs['event'].strip().lower()
        attrs['provider_event_id'] = (attrs.get('sg_event_id') or attrs.get('event_id') or '').strip()
        return attrs

from django.contrib import admin

from .models import EmailEventReceipt, Suppression


@admin.register(Suppression)
class SuppressionAdmin(admin.ModelAdmin):
    list_display = ('email', 'tenant_id', 'type', 'reason', 'updated_at')
    list_filter = ('type',)
    search_fields = ('email',)


@admin.register(EmailEventReceipt)
class EmailEventReceiptAdmin(admin.ModelAdmin):
    list_display = ('provider_event_id', 'provider', 'tenant_id', 'event_at', 'received_at')

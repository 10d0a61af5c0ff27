from django.contrib import admin

from .models import (
    Campaign, CampaignRecipient, DailySendCounter, MarketingEmailEvent, MarketingSettings,
    SenderDomain, Template,
)


@admin.register(Campaign)
class CampaignAdmin(admin.ModelAdmin):
    list_display = ('name', 'tenant_id', 'status', 'scheduled_at', 'sent_at')
    list_filter = ('status',)
    search_fields = ('name',)
    readonly_fields = ('send_locked_until', 'send_lock_token', 'recipients_prepared_at', 'sent_at', 'failure_reason')


@admin.register(CampaignRecipient)
class CampaignRecipientAdmin(admin.ModelAdmin):
    list_display = ('email', 'campaign', 'status', 'retry_count', 'sent_at')
    list_filter = ('status',)


@admin.register(MarketingEmailEvent)
class MarketingEmailEventAdmin(admin.ModelAdmin):
    list_display = ('email', 'type', 'campaign', 'automation', 'occurred_at')
    list_filter = ('type',)


admin.site.register(Template)
admin.site.register(MarketingSettings)
admin.site.register(SenderDomain)
admin.site.register(DailySendCounter)

from django.contrib import admin

from .models import Contact, ContactPreference, ContactTag, Order


class ContactTagInline(admin.TabularInline):
    model = ContactTag
    extra = 0


class ContactPreferenceInline(admin.TabularInline):
    model = ContactPreference
    extra = 0


@admin.register(Contact)
class ContactAdmin(admin.ModelAdmin):
    list_display = ('email', 'tenant_id', 'consent_status', 'town', 'created_at')
    list_filter = ('consent_status',)
    search_fields = ('email', 'first_name', 'last_name')
    inlines = [ContactTagInline, ContactPreferenceInline]


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ('email', 'tenant_id', 'status', 'amount_pence', 'category', 'created_at')
    list_filter = ('status',)

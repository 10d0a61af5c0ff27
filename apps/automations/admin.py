from django.contrib import admin

from .models import Automation, AutomationRun, AutomationStep, CheckoutEvent


class AutomationStepInline(admin.TabularInline):
    model = AutomationStep
    extra = 0


@admin.register(Automation)
class AutomationAdmin(admin.ModelAdmin):
    list_display = ('name', 'tenant_id', 'trigger_type', 'is_enabled')
    list_filter = ('trigger_type', 'is_enabled')
    inlines = [AutomationStepInline]


@admin.register(AutomationRun)
class AutomationRunAdmin(admin.ModelAdmin):
    list_display = ('automation', 'contact', 'status', 'current_step_index', 'next_run_at')
    list_filter = ('status',)


admin.site.register(CheckoutEvent)

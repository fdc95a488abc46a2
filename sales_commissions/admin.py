from django.contrib import admin
from .models import (
    CommissionsSettings,
    CommissionPlan,
    ProductCommissionRule,
    SalesRepPlanAssignment,
    CommissionEvent,
)


@admin.register(CommissionsSettings)
class CommissionsSettingsAdmin(admin.ModelAdmin):
    list_display = ['clinic_id', 'default_hold_days', 'clawback_window_days', 'minimum_payout_cents', 'updated_at']
    readonly_fields = ['created_at', 'updated_at']

    def has_delete_permission(self, request, obj=None):
        return False


class ProductCommissionRuleInline(admin.TabularInline):
    model = ProductCommissionRule
    fields = ['product_id', 'product_bundle_id', 'bonus_type', 'percent_bps', 'flat_amount_cents']
    extra = 0


@admin.register(CommissionPlan)
class CommissionPlanAdmin(admin.ModelAdmin):
    list_display = ['name', 'plan_type', 'rate_mode', 'rate_summary', 'applies_to', 'hold_days', 'is_active']
    list_filter = ['plan_type', 'rate_mode', 'applies_to', 'is_active']
    search_fields = ['name', 'description']
    inlines = [ProductCommissionRuleInline]
    readonly_fields = ['created_at', 'updated_at']

    def save_formset(self, request, form, formset, change):
        rules = formset.save(commit=False)
        for rule in rules:
            rule.clinic_id = form.instance.clinic_id
            rule.save()
        for obj in formset.deleted_objects:
            obj.delete()


@admin.register(SalesRepPlanAssignment)
class SalesRepPlanAssignmentAdmin(admin.ModelAdmin):
    list_display = ['sales_rep_id', 'sales_rep_name', 'plan', 'effective_from', 'effective_to']
    list_filter = ['plan', 'effective_from']
    search_fields = ['sales_rep_name']
    date_hierarchy = 'effective_from'


@admin.register(CommissionEvent)
class CommissionEventAdmin(admin.ModelAdmin):
    list_display = [
        'id', 'sales_rep_name', 'plan', 'sale_amount_cents',
        'gross_amount_cents', 'net_amount_cents', 'status', 'occurred_at'
    ]
    list_filter = ['status', 'occurred_at']
    search_fields = ['sales_rep_name', 'sale_reference', 'source_event_id']
    date_hierarchy = 'occurred_at'
    readonly_fields = ['breakdown', 'created_at', 'updated_at']

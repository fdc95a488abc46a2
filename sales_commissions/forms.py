"""Sales commissions forms."""

from django import forms
from django.utils.translation import gettext_lazy as _

from .resolver import SEPARATE_RATE_FIELDS, infer_rate_mode
from .models import (
    CommissionsSettings,
    CommissionPlan,
    ProductCommissionRule,
    SalesRepPlanAssignment,
)


class CommissionPlanForm(forms.ModelForm):
    class Meta:
        model = CommissionPlan
        fields = [
            'name', 'description', 'plan_type', 'percent_bps', 'flat_amount_cents',
            'rate_mode', 'initial_percent_bps', 'initial_flat_amount_cents',
            'recurring_percent_bps', 'recurring_flat_amount_cents',
            'applies_to', 'hold_days', 'clawback_enabled',
            'recurring_enabled', 'recurring_months',
            'multi_item_bonus_enabled', 'multi_item_bonus_type',
            'multi_item_bonus_percent_bps', 'multi_item_bonus_flat_cents',
            'multi_item_min_quantity', 'is_active',
        ]
        widgets = {
            'name': forms.TextInput(attrs={'class': 'input'}),
            'description': forms.Textarea(attrs={'class': 'textarea', 'rows': 2}),
            'plan_type': forms.Select(attrs={'class': 'select'}),
            'percent_bps': forms.NumberInput(attrs={'class': 'input', 'min': '0', 'max': '10000'}),
            'flat_amount_cents': forms.NumberInput(attrs={'class': 'input', 'min': '0'}),
            'rate_mode': forms.Select(attrs={'class': 'select'}),
            'initial_percent_bps': forms.NumberInput(attrs={'class': 'input', 'min': '0', 'max': '10000'}),
            'initial_flat_amount_cents': forms.NumberInput(attrs={'class': 'input', 'min': '0'}),
            'recurring_percent_bps': forms.NumberInput(attrs={'class': 'input', 'min': '0', 'max': '10000'}),
            'recurring_flat_amount_cents': forms.NumberInput(attrs={'class': 'input', 'min': '0'}),
            'applies_to': forms.Select(attrs={'class': 'select'}),
            'hold_days': forms.NumberInput(attrs={'class': 'input', 'min': '0'}),
            'clawback_enabled': forms.CheckboxInput(attrs={'class': 'toggle'}),
            'recurring_enabled': forms.CheckboxInput(attrs={'class': 'toggle'}),
            'recurring_months': forms.NumberInput(attrs={'class': 'input', 'min': '1'}),
            'multi_item_bonus_enabled': forms.CheckboxInput(attrs={'class': 'toggle'}),
            'multi_item_bonus_type': forms.Select(attrs={'class': 'select'}),
            'multi_item_bonus_percent_bps': forms.NumberInput(attrs={'class': 'input', 'min': '0', 'max': '10000'}),
            'multi_item_bonus_flat_cents': forms.NumberInput(attrs={'class': 'input', 'min': '0'}),
            'multi_item_min_quantity': forms.NumberInput(attrs={'class': 'input', 'min': '2'}),
            'is_active': forms.CheckboxInput(attrs={'class': 'toggle'}),
        }

    def __init__(self, *args, default_hold_days=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.default_hold_days = default_hold_days
        # Optional: inferred from the rate fields / taken from the clinic settings
        self.fields['rate_mode'].required = False
        self.fields['hold_days'].required = False

    def clean(self):
        cleaned_data = super().clean()
        if not cleaned_data.get('rate_mode'):
            cleaned_data['rate_mode'] = infer_rate_mode(
                *(cleaned_data.get(field) for field in SEPARATE_RATE_FIELDS)
            ).value
        if cleaned_data.get('hold_days') is None:
            cleaned_data['hold_days'] = (
                self.instance.hold_days if self.instance.pk else self.default_hold_days
            )
        return cleaned_data


class ProductCommissionRuleForm(forms.ModelForm):
    class Meta:
        model = ProductCommissionRule
        fields = ['product_id', 'product_bundle_id', 'bonus_type', 'percent_bps', 'flat_amount_cents']
        widgets = {
            'product_id': forms.NumberInput(attrs={'class': 'input', 'min': '1'}),
            'product_bundle_id': forms.NumberInput(attrs={'class': 'input', 'min': '1'}),
            'bonus_type': forms.Select(attrs={'class': 'select'}),
            'percent_bps': forms.NumberInput(attrs={'class': 'input', 'min': '0', 'max': '10000'}),
            'flat_amount_cents': forms.NumberInput(attrs={'class': 'input', 'min': '0'}),
        }


class SalesRepAssignmentForm(forms.ModelForm):
    class Meta:
        model = SalesRepPlanAssignment
        fields = ['sales_rep_id', 'sales_rep_name', 'effective_from', 'hourly_rate_cents']
        widgets = {
            'sales_rep_id': forms.NumberInput(attrs={'class': 'input', 'min': '1'}),
            'sales_rep_name': forms.TextInput(attrs={'class': 'input'}),
            'effective_from': forms.DateInput(attrs={'class': 'input', 'type': 'date'}),
            'hourly_rate_cents': forms.NumberInput(attrs={'class': 'input', 'min': '0'}),
        }


class RefundForm(forms.Form):
    refunded_at = forms.DateTimeField(
        required=False,
        widget=forms.DateTimeInput(attrs={'class': 'input', 'type': 'datetime-local'})
    )
    reason = forms.CharField(
        required=False,
        max_length=200,
        widget=forms.TextInput(attrs={'class': 'input', 'placeholder': _('Refund reason')})
    )


class CommissionsSettingsForm(forms.ModelForm):
    class Meta:
        model = CommissionsSettings
        fields = [
            'default_hold_days', 'clawback_window_days',
            'minimum_payout_cents', 'reject_ambiguous_rules',
        ]
        widgets = {
            'default_hold_days': forms.NumberInput(attrs={'class': 'input', 'min': '0'}),
            'clawback_window_days': forms.NumberInput(attrs={'class': 'input', 'min': '0'}),
            'minimum_payout_cents': forms.NumberInput(attrs={'class': 'input', 'min': '0'}),
            'reject_ambiguous_rules': forms.CheckboxInput(attrs={'class': 'toggle'}),
        }

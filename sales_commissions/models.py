"""Sales commissions module models."""

from datetime import date

from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils.translation import gettext_lazy as _

from .module import SETTINGS as MODULE_SETTINGS
from .resolver import (
    BPS_SCALE,
    AppliesTo,
    BonusType,
    PlanTerms,
    PlanType,
    ProductRef,
    ProductRule,
    RateMode,
    SEPARATE_RATE_FIELDS,
)


PLAN_TYPE_CHOICES = [
    (PlanType.PERCENT.value, _("Percentage")),
    (PlanType.FLAT.value, _("Flat Amount")),
]

BONUS_TYPE_CHOICES = [
    (BonusType.PERCENT.value, _("Percentage")),
    (BonusType.FLAT.value, _("Flat Amount")),
]

RATE_MODE_CHOICES = [
    (RateMode.SINGLE.value, _("Same rate for every payment")),
    (RateMode.SEPARATE_INITIAL_RECURRING.value, _("Separate initial and recurring rates")),
]

APPLIES_TO_CHOICES = [
    (AppliesTo.ALL_PAYMENTS.value, _("All payments")),
    (AppliesTo.FIRST_PAYMENT_ONLY.value, _("First payment only")),
]

bps_validators = [MinValueValidator(0), MaxValueValidator(BPS_SCALE)]


def format_bps(bps):
    return f"{bps / 100:.2f}%"


def format_cents(cents):
    return f"${cents / 100:,.2f}"


# =============================================================================
# Base
# =============================================================================

class TenantManager(models.Manager):
    """Hides soft-deleted rows."""

    def get_queryset(self):
        return super().get_queryset().filter(is_deleted=False)


class TenantBaseModel(models.Model):
    """Clinic-scoped base model with timestamps and soft delete."""

    clinic_id = models.PositiveIntegerField(_("Clinic"), null=True, blank=True, db_index=True)
    created_at = models.DateTimeField(_("Created At"), auto_now_add=True)
    updated_at = models.DateTimeField(_("Updated At"), auto_now=True)
    is_deleted = models.BooleanField(_("Deleted"), default=False)

    objects = TenantManager()
    all_objects = models.Manager()

    class Meta:
        abstract = True

    def soft_delete(self):
        self.is_deleted = True
        self.save(update_fields=['is_deleted', 'updated_at'])


# =============================================================================
# Settings
# =============================================================================

class CommissionsSettings(TenantBaseModel):
    """Per-clinic commission settings."""

    default_hold_days = models.PositiveIntegerField(
        _("Default Hold Days"), default=MODULE_SETTINGS['default_hold_days'],
        help_text=_("Hold period used for new plans when none is given")
    )
    clawback_window_days = models.PositiveIntegerField(
        _("Post-payment Clawback Window (days)"), null=True, blank=True,
        default=MODULE_SETTINGS['clawback_window_days'],
        help_text=_("Refunds this many days after the hold period still reverse the commission. "
                    "Empty means refunds only reverse commissions still on hold.")
    )
    minimum_payout_cents = models.PositiveIntegerField(
        _("Minimum Payout (cents)"), default=MODULE_SETTINGS['minimum_payout_cents']
    )
    reject_ambiguous_rules = models.BooleanField(
        _("Reject Duplicate Product Rules"), default=MODULE_SETTINGS['reject_ambiguous_rules'],
        help_text=_("Fail instead of summing when several rules target the same product")
    )

    class Meta(TenantBaseModel.Meta):
        db_table = 'sales_commissions_settings'
        verbose_name = _("Commissions Settings")
        verbose_name_plural = _("Commissions Settings")
        unique_together = [('clinic_id',)]

    def __str__(self):
        return f"Commissions Settings (Clinic {self.clinic_id})"

    @classmethod
    def get_settings(cls, clinic_id):
        settings, _ = cls.all_objects.get_or_create(clinic_id=clinic_id)
        return settings


# =============================================================================
# Plans
# =============================================================================

class CommissionPlan(TenantBaseModel):
    """Commission plan assigned to sales reps and affiliates."""

    name = models.CharField(_("Plan Name"), max_length=100)
    description = models.TextField(_("Description"), blank=True)

    # Base rate
    plan_type = models.CharField(
        _("Type"), max_length=20, choices=PLAN_TYPE_CHOICES, default=PlanType.PERCENT.value
    )
    percent_bps = models.PositiveIntegerField(
        _("Percent (bps)"), null=True, blank=True, validators=bps_validators,
        help_text=_("1000 bps = 10%")
    )
    flat_amount_cents = models.PositiveIntegerField(_("Flat Amount (cents)"), null=True, blank=True)

    # Separate initial / recurring rates
    rate_mode = models.CharField(
        _("Rate Mode"), max_length=32, choices=RATE_MODE_CHOICES, default=RateMode.SINGLE.value
    )
    initial_percent_bps = models.PositiveIntegerField(
        _("Initial Percent (bps)"), null=True, blank=True, validators=bps_validators
    )
    initial_flat_amount_cents = models.PositiveIntegerField(
        _("Initial Flat Amount (cents)"), null=True, blank=True
    )
    recurring_percent_bps = models.PositiveIntegerField(
        _("Recurring Percent (bps)"), null=True, blank=True, validators=bps_validators
    )
    recurring_flat_amount_cents = models.PositiveIntegerField(
        _("Recurring Flat Amount (cents)"), null=True, blank=True
    )

    # Scope and timing
    applies_to = models.CharField(
        _("Applies To"), max_length=32, choices=APPLIES_TO_CHOICES,
        default=AppliesTo.ALL_PAYMENTS.value
    )
    hold_days = models.PositiveIntegerField(_("Hold Days"), default=0)
    clawback_enabled = models.BooleanField(_("Clawback on Refund"), default=True)
    recurring_enabled = models.BooleanField(_("Commission on Recurring Payments"), default=True)
    recurring_months = models.PositiveIntegerField(
        _("Recurring Months"), null=True, blank=True,
        help_text=_("Empty means lifetime")
    )

    # Multi-item bonus
    multi_item_bonus_enabled = models.BooleanField(_("Multi-item Bonus"), default=False)
    multi_item_bonus_type = models.CharField(
        _("Multi-item Bonus Type"), max_length=20, choices=BONUS_TYPE_CHOICES,
        default=BonusType.PERCENT.value
    )
    multi_item_bonus_percent_bps = models.PositiveIntegerField(
        _("Multi-item Bonus Percent (bps)"), null=True, blank=True, validators=bps_validators
    )
    multi_item_bonus_flat_cents = models.PositiveIntegerField(
        _("Multi-item Bonus Flat (cents)"), null=True, blank=True
    )
    multi_item_min_quantity = models.PositiveSmallIntegerField(
        _("Multi-item Minimum Quantity"), default=2, validators=[MinValueValidator(2)]
    )

    is_active = models.BooleanField(_("Active"), default=True)

    class Meta(TenantBaseModel.Meta):
        db_table = 'sales_commissions_plan'
        verbose_name = _("Commission Plan")
        verbose_name_plural = _("Commission Plans")
        ordering = ['name']

    def __str__(self):
        return self.name

    @property
    def uses_separate_rates(self):
        return self.rate_mode == RateMode.SEPARATE_INITIAL_RECURRING.value

    @property
    def rate_summary(self):
        if self.plan_type == PlanType.PERCENT.value:
            return format_bps(self.percent_bps) if self.percent_bps is not None else '-'
        return format_cents(self.flat_amount_cents) if self.flat_amount_cents is not None else '-'

    def clean(self):
        errors = {}
        is_percent = self.plan_type == PlanType.PERCENT.value

        if is_percent and self.flat_amount_cents is not None:
            errors['flat_amount_cents'] = _("Percent plans cannot have a flat amount.")
        if not is_percent and self.percent_bps is not None:
            errors['percent_bps'] = _("Flat plans cannot have a percentage.")

        base_field = 'percent_bps' if is_percent else 'flat_amount_cents'
        base = getattr(self, base_field)
        if self.uses_separate_rates:
            initial = self.initial_percent_bps if is_percent else self.initial_flat_amount_cents
            recurring = self.recurring_percent_bps if is_percent else self.recurring_flat_amount_cents
            if base is None and (initial is None or recurring is None):
                errors.setdefault(base_field, _(
                    "Set both initial and recurring rates, or a base rate to fall back on."
                ))
        elif base is None:
            errors.setdefault(base_field, _("This field is required for this plan type."))

        if not self.uses_separate_rates and any(
            getattr(self, field) is not None for field in SEPARATE_RATE_FIELDS
        ):
            errors['rate_mode'] = _("Initial or recurring rates need separate initial and recurring rate mode.")

        if self.multi_item_bonus_enabled:
            if self.multi_item_bonus_type == BonusType.PERCENT.value and self.multi_item_bonus_percent_bps is None:
                errors['multi_item_bonus_percent_bps'] = _("Required for a percentage bonus.")
            if self.multi_item_bonus_type == BonusType.FLAT.value and self.multi_item_bonus_flat_cents is None:
                errors['multi_item_bonus_flat_cents'] = _("Required for a flat bonus.")

        if not self.recurring_enabled and self.recurring_months is not None:
            errors['recurring_months'] = _("Recurring months requires recurring commissions.")

        if errors:
            raise ValidationError(errors)

    def to_terms(self, clawback_window_days=None):
        """Snapshot of this plan for the resolver."""
        return PlanTerms(
            plan_type=PlanType(self.plan_type),
            percent_bps=self.percent_bps,
            flat_amount_cents=self.flat_amount_cents,
            rate_mode=RateMode(self.rate_mode),
            initial_percent_bps=self.initial_percent_bps,
            initial_flat_amount_cents=self.initial_flat_amount_cents,
            recurring_percent_bps=self.recurring_percent_bps,
            recurring_flat_amount_cents=self.recurring_flat_amount_cents,
            applies_to=AppliesTo(self.applies_to),
            hold_days=self.hold_days,
            clawback_enabled=self.clawback_enabled,
            clawback_window_days=clawback_window_days,
            recurring_enabled=self.recurring_enabled,
            recurring_months=self.recurring_months,
            multi_item_bonus_enabled=self.multi_item_bonus_enabled,
            multi_item_bonus_type=BonusType(self.multi_item_bonus_type),
            multi_item_bonus_percent_bps=self.multi_item_bonus_percent_bps,
            multi_item_bonus_flat_cents=self.multi_item_bonus_flat_cents,
            multi_item_min_quantity=self.multi_item_min_quantity,
            is_active=self.is_active,
        )


class ProductCommissionRule(TenantBaseModel):
    """Additive bonus for sales containing a given product or bundle."""

    plan = models.ForeignKey(
        CommissionPlan, on_delete=models.CASCADE,
        related_name='product_rules', verbose_name=_("Plan")
    )

    # External catalog references, exactly one is set
    product_id = models.PositiveIntegerField(_("Product"), null=True, blank=True, db_index=True)
    product_bundle_id = models.PositiveIntegerField(_("Bundle"), null=True, blank=True, db_index=True)

    bonus_type = models.CharField(
        _("Bonus Type"), max_length=20, choices=BONUS_TYPE_CHOICES,
        default=BonusType.PERCENT.value
    )
    percent_bps = models.PositiveIntegerField(
        _("Percent (bps)"), null=True, blank=True, validators=bps_validators
    )
    flat_amount_cents = models.PositiveIntegerField(_("Flat Amount (cents)"), null=True, blank=True)

    class Meta(TenantBaseModel.Meta):
        db_table = 'sales_commissions_product_rule'
        verbose_name = _("Product Commission Rule")
        verbose_name_plural = _("Product Commission Rules")
        ordering = ['plan', 'id']
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(product_id__isnull=False, product_bundle_id__isnull=True)
                    | Q(product_id__isnull=True, product_bundle_id__isnull=False)
                ),
                name='sales_commissions_rule_single_target',
            ),
        ]

    def __str__(self):
        return f"{self.plan.name}: {self.target_label}"

    @property
    def target_label(self):
        if self.product_id is not None and self.product_bundle_id is None:
            return f"product:{self.product_id}"
        if self.product_bundle_id is not None and self.product_id is None:
            return f"bundle:{self.product_bundle_id}"
        return '-'

    @property
    def ref(self):
        return ProductRef.from_ids(self.product_id, self.product_bundle_id)

    def clean(self):
        if (self.product_id is None) == (self.product_bundle_id is None):
            raise ValidationError(_("Select exactly one product or bundle."))
        if self.bonus_type == BonusType.PERCENT.value and self.percent_bps is None:
            raise ValidationError({'percent_bps': _("Required for a percentage bonus.")})
        if self.bonus_type == BonusType.FLAT.value and self.flat_amount_cents is None:
            raise ValidationError({'flat_amount_cents': _("Required for a flat bonus.")})

    def to_rule(self):
        return ProductRule(
            ref=self.ref,
            bonus_type=BonusType(self.bonus_type),
            percent_bps=self.percent_bps,
            flat_amount_cents=self.flat_amount_cents,
            rule_id=self.pk,
        )


# =============================================================================
# Assignments
# =============================================================================

class SalesRepPlanAssignment(TenantBaseModel):
    """Dated link between a sales rep and a commission plan."""

    plan = models.ForeignKey(
        CommissionPlan, on_delete=models.PROTECT,
        related_name='assignments', verbose_name=_("Plan")
    )
    sales_rep_id = models.PositiveIntegerField(_("Sales Rep"), db_index=True)
    sales_rep_name = models.CharField(_("Sales Rep Name"), max_length=200, blank=True)

    effective_from = models.DateField(_("Effective From"), default=date.today)
    effective_to = models.DateField(_("Effective To"), null=True, blank=True)
    hourly_rate_cents = models.PositiveIntegerField(_("Hourly Rate (cents)"), null=True, blank=True)

    class Meta(TenantBaseModel.Meta):
        db_table = 'sales_commissions_assignment'
        verbose_name = _("Plan Assignment")
        verbose_name_plural = _("Plan Assignments")
        ordering = ['-effective_from', '-created_at']
        indexes = [
            models.Index(fields=['clinic_id', 'sales_rep_id', 'effective_from']),
        ]

    def __str__(self):
        return f"{self.sales_rep_name or self.sales_rep_id} → {self.plan.name}"

    @property
    def is_open(self):
        return self.effective_to is None

    def is_effective_on(self, check_date):
        if check_date < self.effective_from:
            return False
        if self.effective_to and check_date > self.effective_to:
            return False
        return True


# =============================================================================
# Commission events
# =============================================================================

class CommissionEvent(TenantBaseModel):
    """Commission resolved for one sale payment."""

    STATUS_CHOICES = [
        ('pending', _("Pending (on hold)")),
        ('payable', _("Payable")),
        ('paid', _("Paid")),
        ('clawed_back', _("Clawed Back")),
    ]

    # Sales rep snapshot
    sales_rep_id = models.PositiveIntegerField(_("Sales Rep"), db_index=True)
    sales_rep_name = models.CharField(_("Sales Rep Name"), max_length=200, blank=True)

    plan = models.ForeignKey(
        CommissionPlan, on_delete=models.PROTECT,
        related_name='events', verbose_name=_("Plan")
    )
    assignment = models.ForeignKey(
        SalesRepPlanAssignment, on_delete=models.SET_NULL,
        null=True, blank=True, related_name='events', verbose_name=_("Assignment")
    )

    # Source payment
    source_event_id = models.CharField(_("Source Event"), max_length=120)
    sale_reference = models.CharField(_("Sale Reference"), max_length=100, blank=True)
    sale_amount_cents = models.PositiveIntegerField(_("Sale Amount (cents)"))
    payment_sequence_number = models.PositiveIntegerField(_("Payment Number"), default=1)
    occurred_at = models.DateTimeField(_("Occurred At"))
    refunded_at = models.DateTimeField(_("Refunded At"), null=True, blank=True)

    # Amounts
    gross_amount_cents = models.IntegerField(_("Gross Commission (cents)"))
    net_amount_cents = models.IntegerField(_("Net Commission (cents)"))
    base_commission_cents = models.IntegerField(_("Base (cents)"), default=0)
    rule_bonus_cents = models.IntegerField(_("Product Bonuses (cents)"), default=0)
    multi_item_bonus_cents = models.IntegerField(_("Multi-item Bonus (cents)"), default=0)
    breakdown = models.JSONField(_("Breakdown"), default=list, blank=True)

    # Status and timing
    status = models.CharField(
        _("Status"), max_length=20, choices=STATUS_CHOICES, default='pending'
    )
    payable_at = models.DateTimeField(_("Payable At"))
    approved_at = models.DateTimeField(_("Released At"), null=True, blank=True)
    paid_at = models.DateTimeField(_("Paid At"), null=True, blank=True)
    reversed_at = models.DateTimeField(_("Reversed At"), null=True, blank=True)
    reversal_reason = models.CharField(_("Reversal Reason"), max_length=200, blank=True)
    notes = models.TextField(_("Notes"), blank=True)

    class Meta(TenantBaseModel.Meta):
        db_table = 'sales_commissions_event'
        verbose_name = _("Commission Event")
        verbose_name_plural = _("Commission Events")
        ordering = ['-occurred_at', '-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['clinic_id', 'source_event_id'],
                name='sales_commissions_event_source_unique',
            ),
            models.UniqueConstraint(
                fields=['source_event_id'],
                condition=Q(clinic_id__isnull=True),
                name='sales_commissions_event_source_unique_no_clinic',
            ),
        ]
        indexes = [
            models.Index(fields=['clinic_id', 'sales_rep_id', 'status']),
            models.Index(fields=['status', 'payable_at']),
        ]

    def __str__(self):
        return f"{self.sales_rep_name or self.sales_rep_id}: {format_cents(self.net_amount_cents)} ({self.status})"

    @property
    def can_be_reversed(self):
        return self.reversed_at is None and self.status != 'clawed_back'

"""
Commission Service - Business logic for commission plans, assignments and events.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from django.apps import apps
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import Count, Q, Sum
from django.utils import timezone

from ..models import (
    CommissionsSettings,
    CommissionPlan,
    ProductCommissionRule,
    SalesRepPlanAssignment,
    CommissionEvent,
)
from ..resolver import (
    CommissionEngineError,
    CommissionResult,
    ResultStatus,
    Sale,
    infer_rate_mode,
    is_clawback_due,
    resolve_commission,
)

logger = logging.getLogger(__name__)

APP_LABEL = 'sales_commissions'

_EVENT_STATUS = {
    ResultStatus.PENDING: 'pending',
    ResultStatus.PAYABLE: 'payable',
    ResultStatus.CLAWED_BACK: 'clawed_back',
}

_SKIP_REASONS = {
    ResultStatus.NOT_APPLICABLE: "Payment is outside the plan's scope",
    ResultStatus.RECURRING_WINDOW_CLOSED: "Recurring commission window is closed",
}


def _error_message(exc: ValidationError) -> str:
    return '; '.join(str(message) for message in exc.messages)


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        if timezone.is_aware(value):
            return timezone.localdate(value)
        return value.date()
    return value


def _hooks():
    return apps.get_app_config(APP_LABEL)


class CommissionService:
    """Service class for commission operations."""

    # ==================== Settings ====================

    @staticmethod
    def get_settings(clinic_id: Optional[int]) -> CommissionsSettings:
        """Get or create the clinic's settings."""
        return CommissionsSettings.get_settings(clinic_id)

    @staticmethod
    def update_settings(clinic_id: Optional[int], **kwargs) -> Tuple[bool, Optional[str]]:
        """Update the clinic's commission settings."""
        settings = CommissionService.get_settings(clinic_id)
        for key, value in kwargs.items():
            if hasattr(settings, key):
                setattr(settings, key, value)
        try:
            settings.full_clean()
        except ValidationError as e:
            return False, _error_message(e)
        settings.save()
        return True, None

    # ==================== Plans ====================

    @staticmethod
    def get_plans(clinic_id: Optional[int], active_only: bool = False) -> List[CommissionPlan]:
        """Get all commission plans of a clinic."""
        qs = CommissionPlan.objects.filter(clinic_id=clinic_id).order_by('name')
        if active_only:
            qs = qs.filter(is_active=True)
        return list(qs)

    @staticmethod
    def get_plan(clinic_id: Optional[int], plan_id: int) -> Optional[CommissionPlan]:
        """Get a specific plan by ID."""
        try:
            return CommissionPlan.objects.get(pk=plan_id, clinic_id=clinic_id)
        except CommissionPlan.DoesNotExist:
            return None

    @staticmethod
    def create_plan(
        clinic_id: Optional[int],
        name: str,
        plan_type: str = 'PERCENT',
        **kwargs
    ) -> Tuple[Optional[CommissionPlan], Optional[str]]:
        """Create a new commission plan.

        Plans created without a hold period get the clinic default; plans
        created without a rate mode get it inferred from the initial and
        recurring rate fields.
        """
        if kwargs.get('hold_days') is None:
            kwargs['hold_days'] = CommissionService.get_settings(clinic_id).default_hold_days
        if not kwargs.get('rate_mode'):
            kwargs['rate_mode'] = infer_rate_mode(
                kwargs.get('initial_percent_bps'),
                kwargs.get('initial_flat_amount_cents'),
                kwargs.get('recurring_percent_bps'),
                kwargs.get('recurring_flat_amount_cents'),
            ).value

        try:
            plan = CommissionPlan(clinic_id=clinic_id, name=name, plan_type=plan_type, **kwargs)
            plan.full_clean()
        except (TypeError, ValidationError) as e:
            message = _error_message(e) if isinstance(e, ValidationError) else str(e)
            return None, message
        plan.save()
        logger.info("Commission plan %s created (clinic=%s)", plan.pk, clinic_id)
        _hooks().do_after_plan_change(plan)
        return plan, None

    @staticmethod
    def update_plan(plan: CommissionPlan, **kwargs) -> Tuple[bool, Optional[str]]:
        """Update an existing plan."""
        for key, value in kwargs.items():
            if hasattr(plan, key):
                setattr(plan, key, value)
        try:
            plan.full_clean()
        except ValidationError as e:
            plan.refresh_from_db()
            return False, _error_message(e)
        plan.save()
        _hooks().do_after_plan_change(plan)
        return True, None

    @staticmethod
    def toggle_plan(plan: CommissionPlan) -> bool:
        """Toggle plan active status."""
        plan.is_active = not plan.is_active
        plan.save(update_fields=['is_active', 'updated_at'])
        _hooks().do_after_plan_change(plan)
        return plan.is_active

    @staticmethod
    def delete_plan(plan: CommissionPlan) -> Tuple[bool, Optional[str]]:
        """Delete a plan that was never assigned or used."""
        if plan.assignments.exists() or CommissionEvent.all_objects.filter(plan=plan).exists():
            return False, "Cannot delete a plan with assignments or commission events; deactivate it instead"
        plan.delete()
        return True, None

    # ==================== Product rules ====================

    @staticmethod
    def get_rules(plan: CommissionPlan) -> List[ProductCommissionRule]:
        """Get the plan's product and bundle rules."""
        return list(plan.product_rules.all())

    @staticmethod
    def add_product_rule(
        plan: CommissionPlan,
        bonus_type: str = 'PERCENT',
        product_id: Optional[int] = None,
        product_bundle_id: Optional[int] = None,
        percent_bps: Optional[int] = None,
        flat_amount_cents: Optional[int] = None,
    ) -> Tuple[Optional[ProductCommissionRule], Optional[str]]:
        """Add a product or bundle rule to a plan."""
        rule = ProductCommissionRule(
            clinic_id=plan.clinic_id,
            plan=plan,
            product_id=product_id,
            product_bundle_id=product_bundle_id,
            bonus_type=bonus_type,
            percent_bps=percent_bps if bonus_type == 'PERCENT' else None,
            flat_amount_cents=flat_amount_cents if bonus_type == 'FLAT' else None,
        )
        try:
            rule.full_clean()
        except ValidationError as e:
            return None, _error_message(e)

        duplicates = plan.product_rules.filter(
            product_id=product_id, product_bundle_id=product_bundle_id
        )
        if duplicates.exists():
            logger.warning(
                "Plan %s already has a rule for %s; bonuses will be summed",
                plan.pk, rule.target_label,
            )
        rule.save()
        return rule, None

    @staticmethod
    def remove_product_rule(rule: ProductCommissionRule) -> Tuple[bool, Optional[str]]:
        """Remove a product rule from its plan."""
        rule.delete()
        return True, None

    # ==================== Assignments ====================

    @staticmethod
    @transaction.atomic
    def assign_plan(
        plan: CommissionPlan,
        sales_rep_id: int,
        sales_rep_name: str = '',
        effective_from: Optional[date] = None,
        hourly_rate_cents: Optional[int] = None,
    ) -> Tuple[Optional[SalesRepPlanAssignment], Optional[str]]:
        """Assign a plan to a sales rep, closing the rep's current assignment."""
        if not plan.is_active:
            return None, "Cannot assign an inactive plan"

        effective_from = effective_from or timezone.localdate()
        open_assignments = SalesRepPlanAssignment.objects.select_for_update().filter(
            clinic_id=plan.clinic_id,
            sales_rep_id=sales_rep_id,
            effective_to__isnull=True,
        )
        if open_assignments.filter(effective_from__gte=effective_from).exists():
            return None, f"Sales rep already has an assignment starting on or after {effective_from}"

        open_assignments.update(effective_to=effective_from - timedelta(days=1))

        assignment = SalesRepPlanAssignment.objects.create(
            clinic_id=plan.clinic_id,
            plan=plan,
            sales_rep_id=sales_rep_id,
            sales_rep_name=sales_rep_name,
            effective_from=effective_from,
            hourly_rate_cents=hourly_rate_cents,
        )
        logger.info(
            "Sales rep %s assigned to plan %s from %s", sales_rep_id, plan.pk, effective_from
        )
        return assignment, None

    @staticmethod
    def end_assignment(
        assignment: SalesRepPlanAssignment,
        effective_to: Optional[date] = None,
    ) -> Tuple[bool, Optional[str]]:
        """Close an open assignment."""
        effective_to = effective_to or timezone.localdate()
        if not assignment.is_open:
            return False, "Assignment is already closed"
        if effective_to < assignment.effective_from:
            return False, "End date cannot precede the start date"
        assignment.effective_to = effective_to
        assignment.save(update_fields=['effective_to', 'updated_at'])
        return True, None

    @staticmethod
    def get_effective_assignment(
        clinic_id: Optional[int],
        sales_rep_id: int,
        at: Optional[date] = None,
    ) -> Optional[SalesRepPlanAssignment]:
        """Get the rep's assignment in force on a date."""
        at = _as_date(at) if at else timezone.localdate()
        return (
            SalesRepPlanAssignment.objects.select_related('plan')
            .filter(clinic_id=clinic_id, sales_rep_id=sales_rep_id, effective_from__lte=at)
            .filter(Q(effective_to__isnull=True) | Q(effective_to__gte=at))
            .order_by('-effective_from')
            .first()
        )

    # ==================== Resolution ====================

    @staticmethod
    def resolve(
        plan: CommissionPlan,
        sale: Sale,
        as_of: Optional[datetime] = None,
        settings: Optional[CommissionsSettings] = None,
    ) -> CommissionResult:
        """Resolve the commission a plan grants for a sale.

        Raises ``CommissionEngineError`` subclasses for invalid input.
        """
        if settings is None:
            settings = CommissionService.get_settings(plan.clinic_id)
        terms = plan.to_terms(clawback_window_days=settings.clawback_window_days)
        rules = [rule.to_rule() for rule in plan.product_rules.all()]
        result = resolve_commission(
            terms, rules, sale, as_of=as_of, strict=settings.reject_ambiguous_rules
        )
        for warning in result.warnings:
            logger.warning("Plan %s: %s", plan.pk, warning)
        return result

    # ==================== Events ====================

    @staticmethod
    def get_events(
        clinic_id: Optional[int],
        sales_rep_id: Optional[int] = None,
        status: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[CommissionEvent]:
        """Get commission events with filters."""
        qs = CommissionEvent.objects.filter(clinic_id=clinic_id).select_related('plan')

        if sales_rep_id:
            qs = qs.filter(sales_rep_id=sales_rep_id)
        if status:
            qs = qs.filter(status=status)
        if start_date:
            qs = qs.filter(occurred_at__date__gte=start_date)
        if end_date:
            qs = qs.filter(occurred_at__date__lte=end_date)

        return list(qs.order_by('-occurred_at', '-created_at'))

    @staticmethod
    def get_event(clinic_id: Optional[int], event_id: int) -> Optional[CommissionEvent]:
        """Get a specific commission event."""
        try:
            return CommissionEvent.objects.select_related('plan', 'assignment').get(
                pk=event_id, clinic_id=clinic_id
            )
        except CommissionEvent.DoesNotExist:
            return None

    @staticmethod
    def record_sale(
        clinic_id: Optional[int],
        sales_rep_id: int,
        sale: Sale,
        source_event_id: str,
        sale_reference: str = '',
    ) -> Tuple[Optional[CommissionEvent], Optional[str]]:
        """Resolve and store the commission for a sale payment.

        Idempotent on ``source_event_id``: a payment seen before returns the
        stored event. Payments that earn nothing return ``(None, reason)``.
        """
        existing = CommissionEvent.all_objects.filter(
            clinic_id=clinic_id, source_event_id=source_event_id
        ).first()
        if existing:
            logger.debug("Source event %s already processed as %s", source_event_id, existing.pk)
            return existing, None

        assignment = CommissionService.get_effective_assignment(
            clinic_id, sales_rep_id, sale.occurred_at
        )
        if assignment is None:
            logger.debug("No plan assigned to sales rep %s (clinic=%s)", sales_rep_id, clinic_id)
            return None, "No commission plan assigned to this sales rep"

        plan = assignment.plan
        now = timezone.now()
        try:
            result = CommissionService.resolve(plan, sale, as_of=now)
        except CommissionEngineError as e:
            logger.info("Commission not recorded for %s: %s", source_event_id, e)
            return None, str(e)

        if not result.is_applicable:
            reason = _SKIP_REASONS[result.status]
            logger.debug("Source event %s skipped: %s", source_event_id, reason)
            return None, reason
        if result.gross_amount_cents <= 0:
            return None, "Zero commission"

        status = _EVENT_STATUS[result.status]
        try:
            with transaction.atomic():
                event = CommissionEvent.objects.create(
                    clinic_id=clinic_id,
                    sales_rep_id=sales_rep_id,
                    sales_rep_name=assignment.sales_rep_name,
                    plan=plan,
                    assignment=assignment,
                    source_event_id=source_event_id,
                    sale_reference=sale_reference,
                    sale_amount_cents=sale.amount_cents,
                    payment_sequence_number=sale.payment_sequence_number,
                    occurred_at=sale.occurred_at,
                    refunded_at=sale.refunded_at,
                    gross_amount_cents=result.gross_amount_cents,
                    net_amount_cents=result.net_amount_cents,
                    base_commission_cents=result.base_cents,
                    rule_bonus_cents=result.rule_bonus_cents,
                    multi_item_bonus_cents=result.multi_item_bonus_cents,
                    breakdown=result.to_dict()['breakdown'],
                    status=status,
                    payable_at=result.payable_at,
                    approved_at=now if status == 'payable' else None,
                    reversed_at=now if status == 'clawed_back' else None,
                    notes='\n'.join(result.warnings),
                )
        except IntegrityError:
            event = CommissionEvent.all_objects.get(
                clinic_id=clinic_id, source_event_id=source_event_id
            )
            logger.debug("Duplicate source event %s caught by constraint", source_event_id)
            return event, None

        logger.info(
            "Commission event %s recorded: rep=%s gross=%s status=%s",
            event.pk, sales_rep_id, event.gross_amount_cents, event.status,
        )
        _hooks().do_after_commission_recorded(event)
        return event, None

    @staticmethod
    def reverse_for_refund(
        event: CommissionEvent,
        refunded_at: Optional[datetime] = None,
        reason: str = '',
    ) -> Tuple[bool, Optional[str]]:
        """Claw back a commission after its sale was refunded."""
        refunded_at = refunded_at or timezone.now()
        if timezone.is_naive(refunded_at):
            refunded_at = timezone.make_aware(refunded_at)
        if not event.can_be_reversed:
            return False, "Commission already reversed"
        if refunded_at < event.occurred_at:
            return False, "Refund cannot precede the sale"

        settings = CommissionService.get_settings(event.clinic_id)
        terms = event.plan.to_terms(clawback_window_days=settings.clawback_window_days)
        if not is_clawback_due(terms, refunded_at, event.payable_at):
            CommissionEvent.objects.filter(pk=event.pk).update(refunded_at=refunded_at)
            event.refunded_at = refunded_at
            if not terms.clawback_enabled:
                return False, "Clawback is not enabled for this plan"
            return False, "Refund is outside the clawback window"

        now = timezone.now()
        updated = CommissionEvent.objects.filter(pk=event.pk, reversed_at__isnull=True).update(
            status='clawed_back',
            net_amount_cents=0,
            refunded_at=refunded_at,
            reversed_at=now,
            reversal_reason=(reason or 'refund')[:200],
            updated_at=now,
        )
        if not updated:
            return False, "Commission already reversed"

        event.refresh_from_db()
        logger.info("Commission event %s clawed back (%s)", event.pk, event.reversal_reason)
        _hooks().do_after_commission_reversed(event)
        return True, None

    @staticmethod
    def get_matured_events(
        clinic_id: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ):
        """Pending events whose hold period has passed."""
        as_of = as_of or timezone.now()
        qs = CommissionEvent.objects.filter(status='pending', payable_at__lte=as_of)
        if clinic_id is not None:
            qs = qs.filter(clinic_id=clinic_id)
        return qs

    @staticmethod
    def release_matured(
        clinic_id: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> int:
        """Move pending events past their hold period to payable."""
        as_of = as_of or timezone.now()
        count = CommissionService.get_matured_events(clinic_id, as_of).update(
            status='payable', approved_at=as_of, updated_at=timezone.now()
        )
        logger.info("Released %s matured commission events (clinic=%s)", count, clinic_id)
        return count

    @staticmethod
    @transaction.atomic
    def pay_rep(
        clinic_id: Optional[int],
        sales_rep_id: int,
        paid_at: Optional[datetime] = None,
    ) -> Tuple[Optional[Dict[str, int]], Optional[str]]:
        """Mark all payable commissions of a sales rep as paid."""
        events = list(
            CommissionEvent.objects.select_for_update().filter(
                clinic_id=clinic_id, sales_rep_id=sales_rep_id, status='payable'
            )
        )
        if not events:
            return None, "No payable commissions for this sales rep"

        total = sum(event.net_amount_cents for event in events)
        minimum = CommissionService.get_settings(clinic_id).minimum_payout_cents
        if minimum > 0 and total < minimum:
            return None, f"Total {total} is below minimum payout {minimum}"

        paid_at = paid_at or timezone.now()
        count = CommissionEvent.objects.filter(pk__in=[event.pk for event in events]).update(
            status='paid', paid_at=paid_at, updated_at=timezone.now()
        )
        logger.info("Paid %s commission events to sales rep %s (%s cents)", count, sales_rep_id, total)
        return {'count': count, 'total_cents': total}, None

    # ==================== Reports ====================

    @staticmethod
    def get_rep_summary(
        clinic_id: Optional[int],
        sales_rep_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        """Get commission summary for a sales rep."""
        qs = CommissionEvent.objects.filter(clinic_id=clinic_id, sales_rep_id=sales_rep_id)

        if start_date:
            qs = qs.filter(occurred_at__date__gte=start_date)
        if end_date:
            qs = qs.filter(occurred_at__date__lte=end_date)

        totals = qs.aggregate(
            sales=Sum('sale_amount_cents'),
            gross=Sum('gross_amount_cents'),
            net=Sum('net_amount_cents'),
            count=Count('id'),
            pending_amount=Sum('net_amount_cents', filter=Q(status='pending')),
            pending_count=Count('id', filter=Q(status='pending')),
            payable_amount=Sum('net_amount_cents', filter=Q(status='payable')),
            payable_count=Count('id', filter=Q(status='payable')),
            paid_amount=Sum('net_amount_cents', filter=Q(status='paid')),
            paid_count=Count('id', filter=Q(status='paid')),
            clawed_back_amount=Sum('gross_amount_cents', filter=Q(status='clawed_back')),
            clawed_back_count=Count('id', filter=Q(status='clawed_back')),
        )

        return {
            'total_sales_cents': totals['sales'] or 0,
            'total_gross_cents': totals['gross'] or 0,
            'total_net_cents': totals['net'] or 0,
            'event_count': totals['count'] or 0,
            'pending_cents': totals['pending_amount'] or 0,
            'pending_count': totals['pending_count'] or 0,
            'payable_cents': totals['payable_amount'] or 0,
            'payable_count': totals['payable_count'] or 0,
            'paid_cents': totals['paid_amount'] or 0,
            'paid_count': totals['paid_count'] or 0,
            'clawed_back_cents': totals['clawed_back_amount'] or 0,
            'clawed_back_count': totals['clawed_back_count'] or 0,
        }

    @staticmethod
    def get_dashboard_stats(clinic_id: Optional[int]) -> Dict[str, Any]:
        """Get dashboard statistics."""
        today = timezone.localdate()
        month_start = today.replace(day=1)

        events = CommissionEvent.objects.filter(
            clinic_id=clinic_id, occurred_at__date__gte=month_start
        )
        stats = events.aggregate(
            gross=Sum('gross_amount_cents'),
            net=Sum('net_amount_cents'),
            count=Count('id'),
            clawed_back=Count('id', filter=Q(status='clawed_back')),
        )

        top_earners = (
            events.exclude(status='clawed_back')
            .values('sales_rep_id', 'sales_rep_name')
            .annotate(total_cents=Sum('net_amount_cents'))
            .order_by('-total_cents')[:5]
        )

        active_assignments = SalesRepPlanAssignment.objects.filter(
            clinic_id=clinic_id, effective_from__lte=today
        ).filter(Q(effective_to__isnull=True) | Q(effective_to__gte=today))

        return {
            'period_start': month_start,
            'period_end': today,
            'active_plans': CommissionPlan.objects.filter(clinic_id=clinic_id, is_active=True).count(),
            'assigned_reps': active_assignments.values('sales_rep_id').distinct().count(),
            'gross_cents': stats['gross'] or 0,
            'net_cents': stats['net'] or 0,
            'event_count': stats['count'] or 0,
            'clawed_back_count': stats['clawed_back'] or 0,
            'pending_count': CommissionEvent.objects.filter(clinic_id=clinic_id, status='pending').count(),
            'payable_count': CommissionEvent.objects.filter(clinic_id=clinic_id, status='payable').count(),
            'top_earners': list(top_earners),
        }

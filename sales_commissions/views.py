"""Sales commissions module views."""

import json
from datetime import date

from django.apps import apps
from django.contrib.auth.decorators import login_required
from django.db.models import Q
from django.http import JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django.views.decorators.http import require_GET, require_POST
from django.utils.translation import gettext_lazy as _

from .forms import (
    CommissionPlanForm,
    CommissionsSettingsForm,
    ProductCommissionRuleForm,
    RefundForm,
    SalesRepAssignmentForm,
)
from .models import (
    CommissionEvent,
    ProductCommissionRule,
    SalesRepPlanAssignment,
)
from .resolver import (
    CommissionEngineError,
    InvalidSaleError,
    LineItem,
    ProductRef,
    Sale,
)
from .services.commission_service import CommissionService


def _clinic(request):
    return request.session.get('clinic_id')


def _not_found(what):
    return JsonResponse({'success': False, 'error': f'{what} not found'}, status=404)


def _json_body(request):
    if request.content_type == 'application/json':
        try:
            data = json.loads(request.body or b"{}")
        except ValueError:
            raise InvalidSaleError("Malformed JSON body.")
        if not isinstance(data, dict):
            raise InvalidSaleError("JSON body must be an object.")
        return data
    return request.POST.dict()


def _parse_moment(value, field):
    if value in (None, ''):
        return None
    moment = parse_datetime(str(value))
    if moment is None:
        raise InvalidSaleError(f"{field} is not a valid datetime.")
    if timezone.is_naive(moment):
        moment = timezone.make_aware(moment)
    return moment


def _parse_date(value):
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _sale_from_payload(data):
    """Build a resolver Sale from a request payload."""
    try:
        items = [
            LineItem(
                ref=ProductRef.from_ids(item.get('product_id'), item.get('product_bundle_id')),
                quantity=int(item.get('quantity', 1)),
                amount_cents=int(item['amount_cents']) if item.get('amount_cents') is not None else None,
            )
            for item in data.get('line_items') or []
        ]
        amount_cents = int(data['amount_cents'])
        sequence = int(data.get('payment_sequence_number', 1))
    except KeyError as e:
        raise InvalidSaleError(f"Missing field {e}.")
    except (AttributeError, TypeError, ValueError) as e:
        raise InvalidSaleError(str(e))

    occurred_at = _parse_moment(data.get('occurred_at'), 'occurred_at') or timezone.now()
    return Sale(
        amount_cents=amount_cents,
        line_items=tuple(items),
        occurred_at=occurred_at,
        payment_sequence_number=sequence,
        refunded_at=_parse_moment(data.get('refunded_at'), 'refunded_at'),
    )


def _plan_payload(plan):
    return {
        'id': plan.pk,
        'name': plan.name,
        'plan_type': plan.plan_type,
        'rate_mode': plan.rate_mode,
        'rate': plan.rate_summary,
        'applies_to': plan.applies_to,
        'hold_days': plan.hold_days,
        'clawback_enabled': plan.clawback_enabled,
        'recurring_enabled': plan.recurring_enabled,
        'recurring_months': plan.recurring_months,
        'multi_item_bonus_enabled': plan.multi_item_bonus_enabled,
        'is_active': plan.is_active,
    }


def _rule_payload(rule):
    return {
        'id': rule.pk,
        'target': rule.target_label,
        'bonus_type': rule.bonus_type,
        'percent_bps': rule.percent_bps,
        'flat_amount_cents': rule.flat_amount_cents,
    }


def _assignment_payload(assignment):
    return {
        'id': assignment.pk,
        'plan_id': assignment.plan_id,
        'sales_rep_id': assignment.sales_rep_id,
        'sales_rep_name': assignment.sales_rep_name,
        'effective_from': assignment.effective_from.isoformat(),
        'effective_to': assignment.effective_to.isoformat() if assignment.effective_to else None,
    }


def _event_payload(event):
    return {
        'id': event.pk,
        'sales_rep_id': event.sales_rep_id,
        'sales_rep_name': event.sales_rep_name,
        'plan_id': event.plan_id,
        'source_event_id': event.source_event_id,
        'sale_reference': event.sale_reference,
        'sale_amount_cents': event.sale_amount_cents,
        'payment_sequence_number': event.payment_sequence_number,
        'occurred_at': event.occurred_at.isoformat(),
        'gross_amount_cents': event.gross_amount_cents,
        'net_amount_cents': event.net_amount_cents,
        'breakdown': event.breakdown,
        'status': event.status,
        'payable_at': event.payable_at.isoformat(),
        'reversed_at': event.reversed_at.isoformat() if event.reversed_at else None,
    }


# =============================================================================
# Dashboard
# =============================================================================

@login_required
@require_GET
def dashboard(request):
    stats = CommissionService.get_dashboard_stats(_clinic(request))
    stats['period_start'] = stats['period_start'].isoformat()
    stats['period_end'] = stats['period_end'].isoformat()
    return JsonResponse(stats)


# =============================================================================
# Plans
# =============================================================================

@login_required
@require_GET
def plan_list(request):
    active_only = request.GET.get('active') == '1'
    plans = CommissionService.get_plans(_clinic(request), active_only=active_only)
    return JsonResponse({'plans': [_plan_payload(p) for p in plans]})


@login_required
@require_POST
def plan_create(request):
    clinic = _clinic(request)
    form = CommissionPlanForm(
        request.POST,
        default_hold_days=CommissionService.get_settings(clinic).default_hold_days,
    )
    if not form.is_valid():
        return JsonResponse({'success': False, 'errors': form.errors}, status=400)

    plan, error = CommissionService.create_plan(clinic, **form.cleaned_data)
    if error:
        return JsonResponse({'success': False, 'error': error}, status=400)
    return JsonResponse({'success': True, 'id': plan.pk})


@login_required
@require_GET
def plan_detail(request, pk):
    plan = CommissionService.get_plan(_clinic(request), pk)
    if plan is None:
        return _not_found('Plan')

    payload = _plan_payload(plan)
    payload['rules'] = [_rule_payload(r) for r in CommissionService.get_rules(plan)]
    payload['assignments'] = [_assignment_payload(a) for a in plan.assignments.all()]
    return JsonResponse(payload)


@login_required
@require_POST
def plan_edit(request, pk):
    plan = CommissionService.get_plan(_clinic(request), pk)
    if plan is None:
        return _not_found('Plan')

    form = CommissionPlanForm(request.POST, instance=plan)
    if not form.is_valid():
        return JsonResponse({'success': False, 'errors': form.errors}, status=400)

    ok, error = CommissionService.update_plan(plan, **form.cleaned_data)
    if not ok:
        return JsonResponse({'success': False, 'error': error}, status=400)
    return JsonResponse({'success': True})


@login_required
@require_POST
def plan_toggle(request, pk):
    plan = CommissionService.get_plan(_clinic(request), pk)
    if plan is None:
        return _not_found('Plan')
    is_active = CommissionService.toggle_plan(plan)
    return JsonResponse({'success': True, 'is_active': is_active})


@login_required
@require_POST
def plan_delete(request, pk):
    plan = CommissionService.get_plan(_clinic(request), pk)
    if plan is None:
        return _not_found('Plan')

    ok, error = CommissionService.delete_plan(plan)
    if not ok:
        return JsonResponse({'success': False, 'error': error}, status=400)
    return JsonResponse({'success': True})


# =============================================================================
# Product rules
# =============================================================================

@login_required
@require_POST
def rule_add(request, pk):
    plan = CommissionService.get_plan(_clinic(request), pk)
    if plan is None:
        return _not_found('Plan')

    form = ProductCommissionRuleForm(request.POST)
    if not form.is_valid():
        return JsonResponse({'success': False, 'errors': form.errors}, status=400)

    rule, error = CommissionService.add_product_rule(plan, **form.cleaned_data)
    if error:
        return JsonResponse({'success': False, 'error': error}, status=400)
    return JsonResponse({'success': True, 'id': rule.pk})


@login_required
@require_POST
def rule_delete(request, pk):
    try:
        rule = ProductCommissionRule.objects.get(pk=pk, clinic_id=_clinic(request))
    except ProductCommissionRule.DoesNotExist:
        return _not_found('Rule')

    CommissionService.remove_product_rule(rule)
    return JsonResponse({'success': True})


# =============================================================================
# Assignments
# =============================================================================

@login_required
@require_POST
def assignment_add(request, pk):
    plan = CommissionService.get_plan(_clinic(request), pk)
    if plan is None:
        return _not_found('Plan')

    form = SalesRepAssignmentForm(request.POST)
    if not form.is_valid():
        return JsonResponse({'success': False, 'errors': form.errors}, status=400)

    assignment, error = CommissionService.assign_plan(plan, **form.cleaned_data)
    if error:
        return JsonResponse({'success': False, 'error': error}, status=400)
    return JsonResponse({'success': True, 'id': assignment.pk})


@login_required
@require_POST
def assignment_end(request, pk):
    try:
        assignment = SalesRepPlanAssignment.objects.get(pk=pk, clinic_id=_clinic(request))
    except SalesRepPlanAssignment.DoesNotExist:
        return _not_found('Assignment')

    effective_to = _parse_date(request.POST.get('effective_to'))
    ok, error = CommissionService.end_assignment(assignment, effective_to)
    if not ok:
        return JsonResponse({'success': False, 'error': error}, status=400)
    return JsonResponse({'success': True})


# =============================================================================
# Commission events
# =============================================================================

@login_required
@require_GET
def event_list(request):
    clinic = _clinic(request)
    status_filter = request.GET.get('status', '')
    search = request.GET.get('q', '')

    events = CommissionEvent.objects.filter(clinic_id=clinic).select_related('plan')

    if status_filter:
        events = events.filter(status=status_filter)
    if request.GET.get('sales_rep_id'):
        try:
            sales_rep_id = int(request.GET['sales_rep_id'])
        except ValueError:
            return JsonResponse({'success': False, 'error': 'sales_rep_id must be an integer'}, status=400)
        events = events.filter(sales_rep_id=sales_rep_id)
    if search:
        events = events.filter(
            Q(sales_rep_name__icontains=search) |
            Q(sale_reference__icontains=search) |
            Q(source_event_id__icontains=search)
        )

    events = apps.get_app_config('sales_commissions').filter_events_list(events, request)
    return JsonResponse({
        'events': [_event_payload(e) for e in events],
        'status_filter': status_filter,
        'search': search,
    })


@login_required
@require_GET
def event_detail(request, pk):
    event = CommissionService.get_event(_clinic(request), pk)
    if event is None:
        return _not_found('Commission event')

    payload = _event_payload(event)
    payload.update({
        'base_commission_cents': event.base_commission_cents,
        'rule_bonus_cents': event.rule_bonus_cents,
        'multi_item_bonus_cents': event.multi_item_bonus_cents,
        'refunded_at': event.refunded_at.isoformat() if event.refunded_at else None,
        'reversal_reason': event.reversal_reason,
        'paid_at': event.paid_at.isoformat() if event.paid_at else None,
        'notes': event.notes,
    })
    return JsonResponse(payload)


@login_required
@require_POST
def event_refund(request, pk):
    event = CommissionService.get_event(_clinic(request), pk)
    if event is None:
        return _not_found('Commission event')

    form = RefundForm(request.POST)
    if not form.is_valid():
        return JsonResponse({'success': False, 'errors': form.errors}, status=400)

    reversed_, error = CommissionService.reverse_for_refund(
        event,
        refunded_at=form.cleaned_data['refunded_at'],
        reason=form.cleaned_data['reason'],
    )
    if not reversed_:
        return JsonResponse({'success': False, 'error': error}, status=400)
    return JsonResponse({'success': True, 'status': event.status})


@login_required
@require_POST
def release_matured(request):
    count = CommissionService.release_matured(_clinic(request))
    return JsonResponse({'success': True, 'released': count})


@login_required
@require_POST
def rep_payout(request, sales_rep_id):
    result, error = CommissionService.pay_rep(_clinic(request), sales_rep_id)
    if error:
        return JsonResponse({'success': False, 'error': error}, status=400)
    return JsonResponse({'success': True, **result})


# =============================================================================
# Settings
# =============================================================================

@login_required
def settings(request):
    clinic = _clinic(request)
    comm_settings = CommissionService.get_settings(clinic)

    if request.method == 'POST':
        form = CommissionsSettingsForm(request.POST, instance=comm_settings)
        if form.is_valid():
            form.save()
            return JsonResponse({'success': True})
        return JsonResponse({'success': False, 'errors': form.errors}, status=400)

    return JsonResponse({
        field: getattr(comm_settings, field) for field in CommissionsSettingsForm.Meta.fields
    })


# =============================================================================
# API Endpoints
# =============================================================================

@login_required
@require_POST
def api_resolve(request):
    """Preview the commission a plan grants for a sale, without storing it."""
    clinic = _clinic(request)
    try:
        data = _json_body(request)
        plan_id = data.get('plan_id')
        if not plan_id:
            return JsonResponse({'error': _('Plan ID required')}, status=400)
        try:
            plan_id = int(plan_id)
        except (TypeError, ValueError):
            return JsonResponse({'error': _('Plan ID must be an integer')}, status=400)

        plan = CommissionService.get_plan(clinic, plan_id)
        if plan is None:
            return JsonResponse({'error': 'Plan not found'}, status=404)

        sale = _sale_from_payload(data)
        as_of = _parse_moment(data.get('as_of'), 'as_of')
        result = CommissionService.resolve(plan, sale, as_of=as_of)
    except CommissionEngineError as e:
        return JsonResponse({'error': str(e), 'error_type': type(e).__name__}, status=400)

    return JsonResponse(result.to_dict())


@login_required
@require_POST
def api_record_sale(request):
    """Record the commission for a paid sale, idempotent on source_event_id."""
    clinic = _clinic(request)
    try:
        data = _json_body(request)
        sale = _sale_from_payload(data)
        sales_rep_id = int(data.get('sales_rep_id') or 0)
    except (CommissionEngineError, TypeError, ValueError) as e:
        return JsonResponse({'success': False, 'error': str(e)}, status=400)

    source_event_id = data.get('source_event_id')
    if not source_event_id or not sales_rep_id:
        return JsonResponse(
            {'success': False, 'error': 'sales_rep_id and source_event_id are required'},
            status=400
        )

    event, error = CommissionService.record_sale(
        clinic,
        int(sales_rep_id),
        sale,
        source_event_id=str(source_event_id),
        sale_reference=data.get('sale_reference', ''),
    )
    if event is None:
        return JsonResponse({'success': False, 'error': error})
    return JsonResponse({'success': True, 'event': _event_payload(event)})


@login_required
@require_GET
def api_rep_summary(request, sales_rep_id):
    """Get commission summary for a sales rep."""
    summary = CommissionService.get_rep_summary(
        _clinic(request),
        sales_rep_id,
        start_date=_parse_date(request.GET.get('start_date')),
        end_date=_parse_date(request.GET.get('end_date')),
    )
    return JsonResponse(summary)

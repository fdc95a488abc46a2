"""
Fixtures for sales commissions module tests.
"""
import pytest
from datetime import timedelta

from django.utils import timezone

CLINIC_ID = 1
SALES_REP_ID = 42


@pytest.fixture
def commissions_settings(db):
    """Create commissions settings for the test clinic."""
    from sales_commissions.models import CommissionsSettings

    return CommissionsSettings.get_settings(CLINIC_ID)


@pytest.fixture
def percent_plan(db):
    """10% plan with a 7 day hold."""
    from sales_commissions.models import CommissionPlan

    return CommissionPlan.objects.create(
        clinic_id=CLINIC_ID,
        name='Standard 10%',
        plan_type='PERCENT',
        percent_bps=1000,
        hold_days=7,
    )


@pytest.fixture
def flat_plan(db):
    """$25 per sale, payable immediately."""
    from sales_commissions.models import CommissionPlan

    return CommissionPlan.objects.create(
        clinic_id=CLINIC_ID,
        name='Flat $25',
        plan_type='FLAT',
        flat_amount_cents=2500,
        hold_days=0,
    )


@pytest.fixture
def separate_rates_plan(db):
    """20% on the first payment, 5% on renewals."""
    from sales_commissions.models import CommissionPlan

    return CommissionPlan.objects.create(
        clinic_id=CLINIC_ID,
        name='Acquisition',
        plan_type='PERCENT',
        rate_mode='SEPARATE_INITIAL_RECURRING',
        initial_percent_bps=2000,
        recurring_percent_bps=500,
        hold_days=0,
    )


@pytest.fixture
def product_rule(db, percent_plan):
    """$5 bonus per line of product 7."""
    from sales_commissions.models import ProductCommissionRule

    return ProductCommissionRule.objects.create(
        clinic_id=CLINIC_ID,
        plan=percent_plan,
        product_id=7,
        bonus_type='FLAT',
        flat_amount_cents=500,
    )


@pytest.fixture
def assignment(db, percent_plan):
    """Sales rep 42 on the 10% plan since last month."""
    from sales_commissions.models import SalesRepPlanAssignment

    return SalesRepPlanAssignment.objects.create(
        clinic_id=CLINIC_ID,
        plan=percent_plan,
        sales_rep_id=SALES_REP_ID,
        sales_rep_name='Jane Roe',
        effective_from=timezone.localdate() - timedelta(days=30),
    )


@pytest.fixture
def make_event(db, percent_plan):
    """Factory for commission events."""
    from sales_commissions.models import CommissionEvent

    counter = {'n': 0}

    def _make(status='pending', net=1000, days_ago=1, hold_days=7, **kwargs):
        counter['n'] += 1
        occurred_at = timezone.now() - timedelta(days=days_ago)
        fields = {
            'clinic_id': CLINIC_ID,
            'sales_rep_id': SALES_REP_ID,
            'sales_rep_name': 'Jane Roe',
            'plan': percent_plan,
            'source_event_id': f'evt_{counter["n"]}',
            'sale_reference': f'SALE-{counter["n"]:03d}',
            'sale_amount_cents': net * 10,
            'occurred_at': occurred_at,
            'gross_amount_cents': net,
            'net_amount_cents': net,
            'base_commission_cents': net,
            'breakdown': [{'source': 'base', 'amount_cents': net, 'rule_id': None}],
            'status': status,
            'payable_at': occurred_at + timedelta(days=hold_days),
        }
        fields.update(kwargs)
        return CommissionEvent.objects.create(**fields)

    return _make


@pytest.fixture
def commission_event(make_event):
    """Pending commission still on hold."""
    return make_event()


@pytest.fixture
def make_sale():
    """Factory for resolver sales."""
    from sales_commissions.resolver import LineItem, ProductRef, Sale

    def _make(amount_cents=10000, items=None, occurred_at=None, sequence=1, refunded_at=None):
        if items is None:
            items = [LineItem(ProductRef.product(1))]
        return Sale(
            amount_cents=amount_cents,
            line_items=tuple(items),
            occurred_at=occurred_at or timezone.now(),
            payment_sequence_number=sequence,
            refunded_at=refunded_at,
        )

    return _make


@pytest.fixture
def client_with_session(admin_client):
    """Logged-in client bound to the test clinic."""
    session = admin_client.session
    session['clinic_id'] = CLINIC_ID
    session.save()
    return admin_client

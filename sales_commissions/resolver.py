"""
Commission rule resolver.

Evaluates a commission plan against one sale and returns the commission
owed to the sales rep, with a per-source breakdown and the hold/clawback
status. Pure computation: no database, no clock, no logging.

Money is integer cents, rates are integer basis points (1000 bps = 10%).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Sequence


BPS_SCALE = 10000

SOURCE_BASE = "base"
SOURCE_MULTI_ITEM = "multi_item_bonus"

SEPARATE_RATE_FIELDS = (
    "initial_percent_bps",
    "initial_flat_amount_cents",
    "recurring_percent_bps",
    "recurring_flat_amount_cents",
)


class PlanType(str, Enum):
    FLAT = "FLAT"
    PERCENT = "PERCENT"


class BonusType(str, Enum):
    PERCENT = "PERCENT"
    FLAT = "FLAT"


class RateMode(str, Enum):
    SINGLE = "SINGLE"
    SEPARATE_INITIAL_RECURRING = "SEPARATE_INITIAL_RECURRING"


class AppliesTo(str, Enum):
    ALL_PAYMENTS = "ALL_PAYMENTS"
    FIRST_PAYMENT_ONLY = "FIRST_PAYMENT_ONLY"


class RefKind(str, Enum):
    PRODUCT = "product"
    BUNDLE = "bundle"


class ResultStatus(str, Enum):
    PENDING = "PENDING"
    PAYABLE = "PAYABLE"
    CLAWED_BACK = "CLAWED_BACK"
    NOT_APPLICABLE = "NOT_APPLICABLE"
    RECURRING_WINDOW_CLOSED = "RECURRING_WINDOW_CLOSED"


# =============================================================================
# Errors
# =============================================================================

class CommissionEngineError(RuntimeError):
    """Base error for commission resolution failures."""


class PlanInactiveError(CommissionEngineError):
    """Raised when resolving against a deactivated plan."""


class InvalidPlanError(CommissionEngineError):
    """Raised when plan terms or rule lines are inconsistent."""


class InvalidSaleError(CommissionEngineError):
    """Raised when the sale event cannot be evaluated."""


class AmbiguousRuleMatchError(CommissionEngineError):
    """Raised in strict mode when several rule lines target the same product."""


# =============================================================================
# Money primitives
# =============================================================================

def round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounding halves away from zero."""
    if denominator <= 0:
        raise ValueError("denominator must be positive.")
    if numerator >= 0:
        return (2 * numerator + denominator) // (2 * denominator)
    return -((-2 * numerator + denominator) // (2 * denominator))


def percent_of(amount_cents: int, bps: int) -> int:
    return round_half_up_div(amount_cents * bps, BPS_SCALE)


def infer_rate_mode(
    initial_percent_bps: int | None = None,
    initial_flat_amount_cents: int | None = None,
    recurring_percent_bps: int | None = None,
    recurring_flat_amount_cents: int | None = None,
) -> RateMode:
    """Derive the rate mode of a legacy plan from its optional rate fields."""
    fields = (
        initial_percent_bps,
        initial_flat_amount_cents,
        recurring_percent_bps,
        recurring_flat_amount_cents,
    )
    if any(value is not None for value in fields):
        return RateMode.SEPARATE_INITIAL_RECURRING
    return RateMode.SINGLE


# =============================================================================
# Inputs
# =============================================================================

@dataclass(frozen=True, slots=True)
class ProductRef:
    kind: RefKind
    id: int

    @classmethod
    def product(cls, product_id: int) -> ProductRef:
        return cls(RefKind.PRODUCT, int(product_id))

    @classmethod
    def bundle(cls, bundle_id: int) -> ProductRef:
        return cls(RefKind.BUNDLE, int(bundle_id))

    @classmethod
    def from_ids(cls, product_id: int | None = None, bundle_id: int | None = None) -> ProductRef:
        if (product_id is None) == (bundle_id is None):
            raise ValueError("Exactly one of product_id or product_bundle_id must be set.")
        if product_id is not None:
            return cls.product(product_id)
        return cls.bundle(bundle_id)

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.id}"


@dataclass(frozen=True, slots=True)
class ProductRule:
    ref: ProductRef
    bonus_type: BonusType
    percent_bps: int | None = None
    flat_amount_cents: int | None = None
    rule_id: int | None = None


@dataclass(frozen=True, slots=True)
class LineItem:
    ref: ProductRef
    quantity: int = 1
    amount_cents: int | None = None


@dataclass(frozen=True, slots=True)
class Sale:
    amount_cents: int
    line_items: Sequence[LineItem]
    occurred_at: datetime
    payment_sequence_number: int = 1
    refunded_at: datetime | None = None

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.line_items)

    @property
    def is_initial(self) -> bool:
        return self.payment_sequence_number == 1


@dataclass(frozen=True, slots=True)
class PlanTerms:
    plan_type: PlanType
    percent_bps: int | None = None
    flat_amount_cents: int | None = None
    rate_mode: RateMode = RateMode.SINGLE
    initial_percent_bps: int | None = None
    initial_flat_amount_cents: int | None = None
    recurring_percent_bps: int | None = None
    recurring_flat_amount_cents: int | None = None
    applies_to: AppliesTo = AppliesTo.ALL_PAYMENTS
    hold_days: int = 0
    clawback_enabled: bool = False
    clawback_window_days: int | None = None
    recurring_enabled: bool = False
    recurring_months: int | None = None
    multi_item_bonus_enabled: bool = False
    multi_item_bonus_type: BonusType = BonusType.PERCENT
    multi_item_bonus_percent_bps: int | None = None
    multi_item_bonus_flat_cents: int | None = None
    multi_item_min_quantity: int = 2
    is_active: bool = True


# =============================================================================
# Output
# =============================================================================

@dataclass(frozen=True, slots=True)
class BreakdownLine:
    source: str
    amount_cents: int
    rule_id: int | None = None

    @property
    def is_rule(self) -> bool:
        return self.source.startswith((RefKind.PRODUCT.value + ":", RefKind.BUNDLE.value + ":"))


@dataclass(frozen=True, slots=True)
class CommissionResult:
    gross_amount_cents: int
    net_amount_cents: int
    status: ResultStatus
    breakdown: tuple[BreakdownLine, ...] = ()
    payable_at: datetime | None = None
    warnings: tuple[str, ...] = ()

    @classmethod
    def zero(cls, status: ResultStatus) -> CommissionResult:
        return cls(gross_amount_cents=0, net_amount_cents=0, status=status)

    @property
    def is_applicable(self) -> bool:
        return self.status not in (ResultStatus.NOT_APPLICABLE, ResultStatus.RECURRING_WINDOW_CLOSED)

    @property
    def base_cents(self) -> int:
        return sum(line.amount_cents for line in self.breakdown if line.source == SOURCE_BASE)

    @property
    def rule_bonus_cents(self) -> int:
        return sum(line.amount_cents for line in self.breakdown if line.is_rule)

    @property
    def multi_item_bonus_cents(self) -> int:
        return sum(line.amount_cents for line in self.breakdown if line.source == SOURCE_MULTI_ITEM)

    def to_dict(self) -> dict[str, Any]:
        return {
            "gross_amount_cents": self.gross_amount_cents,
            "net_amount_cents": self.net_amount_cents,
            "status": self.status.value,
            "payable_at": self.payable_at.isoformat() if self.payable_at else None,
            "breakdown": [
                {"source": line.source, "amount_cents": line.amount_cents, "rule_id": line.rule_id}
                for line in self.breakdown
            ],
            "warnings": list(self.warnings),
        }


# =============================================================================
# Validation
# =============================================================================

def _check_bps(value: int | None, field: str) -> None:
    if value is not None and not 0 <= value <= BPS_SCALE:
        raise InvalidPlanError(f"{field} must be between 0 and {BPS_SCALE} bps.")


def _check_cents(value: int | None, field: str) -> None:
    if value is not None and value < 0:
        raise InvalidPlanError(f"{field} must be >= 0.")


def _has_base_rate(plan: PlanTerms) -> bool:
    if plan.plan_type == PlanType.PERCENT:
        candidates = (plan.percent_bps, plan.initial_percent_bps, plan.recurring_percent_bps)
    else:
        candidates = (plan.flat_amount_cents, plan.initial_flat_amount_cents, plan.recurring_flat_amount_cents)
    return any(value is not None for value in candidates)


def _validate_plan(plan: PlanTerms, rule_lines: Sequence[ProductRule]) -> None:
    for field in ("percent_bps", "initial_percent_bps", "recurring_percent_bps", "multi_item_bonus_percent_bps"):
        _check_bps(getattr(plan, field), field)
    for field in (
        "flat_amount_cents",
        "initial_flat_amount_cents",
        "recurring_flat_amount_cents",
        "multi_item_bonus_flat_cents",
    ):
        _check_cents(getattr(plan, field), field)
    if plan.hold_days < 0:
        raise InvalidPlanError("hold_days must be >= 0.")
    if plan.clawback_window_days is not None and plan.clawback_window_days < 0:
        raise InvalidPlanError("clawback_window_days must be >= 0.")
    if plan.multi_item_min_quantity < 2:
        raise InvalidPlanError("multi_item_min_quantity must be at least 2.")
    if plan.rate_mode == RateMode.SINGLE and any(
        getattr(plan, field) is not None for field in SEPARATE_RATE_FIELDS
    ):
        raise InvalidPlanError("Initial or recurring rates require SEPARATE_INITIAL_RECURRING rate mode.")
    for rule in rule_lines:
        _check_bps(rule.percent_bps, f"rule {rule.ref.label} percent_bps")
        _check_cents(rule.flat_amount_cents, f"rule {rule.ref.label} flat_amount_cents")
    if not rule_lines and not _has_base_rate(plan):
        raise InvalidPlanError("Plan has no base rate and no product rules.")


def _is_aware(moment: datetime) -> bool:
    return moment.tzinfo is not None and moment.utcoffset() is not None


def _validate_sale(sale: Sale) -> None:
    if sale.amount_cents <= 0:
        raise InvalidSaleError("amount_cents must be > 0.")
    if not sale.line_items:
        raise InvalidSaleError("Sale has no line items.")
    if any(item.quantity < 1 for item in sale.line_items):
        raise InvalidSaleError("Line item quantity must be >= 1.")
    if any(item.amount_cents is not None and item.amount_cents < 0 for item in sale.line_items):
        raise InvalidSaleError("Line item amount_cents must be >= 0.")
    if sale.payment_sequence_number < 1:
        raise InvalidSaleError("payment_sequence_number must be >= 1.")
    if sale.occurred_at is None:
        raise InvalidSaleError("occurred_at is required.")
    if sale.refunded_at is not None and _is_aware(sale.refunded_at) != _is_aware(sale.occurred_at):
        raise InvalidSaleError("refunded_at and occurred_at must both be timezone-aware or both naive.")
    if sale.refunded_at is not None and sale.refunded_at < sale.occurred_at:
        raise InvalidSaleError("refunded_at cannot precede occurred_at.")


# =============================================================================
# Resolution steps
# =============================================================================

def _in_scope(plan: PlanTerms, sale: Sale) -> bool:
    if plan.applies_to == AppliesTo.FIRST_PAYMENT_ONLY:
        return sale.is_initial
    return True


def _within_recurring_window(plan: PlanTerms, sale: Sale) -> bool:
    if sale.is_initial:
        return True
    if not plan.recurring_enabled:
        return False
    if plan.recurring_months is not None:
        return sale.payment_sequence_number <= plan.recurring_months
    return True


def select_rate(plan: PlanTerms, payment_sequence_number: int) -> int | None:
    """Return the bps (PERCENT) or cents (FLAT) rate for a payment.

    Separate initial/recurring rates win when the plan uses them; the plain
    rate is the fallback for any of them left empty.
    """
    percent, flat = None, None
    if plan.rate_mode == RateMode.SEPARATE_INITIAL_RECURRING:
        if payment_sequence_number == 1:
            percent, flat = plan.initial_percent_bps, plan.initial_flat_amount_cents
        else:
            percent, flat = plan.recurring_percent_bps, plan.recurring_flat_amount_cents

    if plan.plan_type == PlanType.PERCENT:
        return percent if percent is not None else plan.percent_bps
    return flat if flat is not None else plan.flat_amount_cents


def _bonus_amount(
    bonus_type: BonusType,
    percent_bps: int | None,
    flat_cents: int | None,
    basis_cents: int,
) -> int:
    if bonus_type == BonusType.PERCENT:
        return percent_of(basis_cents, percent_bps or 0)
    return flat_cents or 0


def _attributed_amount(sale: Sale, item: LineItem, total_quantity: int) -> int:
    if item.amount_cents is not None:
        return item.amount_cents
    return round_half_up_div(sale.amount_cents * item.quantity, total_quantity)


def _index_rules(rule_lines: Iterable[ProductRule]) -> dict[ProductRef, list[ProductRule]]:
    index: dict[ProductRef, list[ProductRule]] = {}
    for rule in rule_lines:
        index.setdefault(rule.ref, []).append(rule)
    return index


def _rule_bonuses(
    rule_lines: Sequence[ProductRule],
    sale: Sale,
    strict: bool,
) -> tuple[list[BreakdownLine], list[str]]:
    index = _index_rules(rule_lines)
    total_quantity = sale.total_quantity
    lines: list[BreakdownLine] = []
    warnings: list[str] = []
    flagged: set[ProductRef] = set()

    for item in sale.line_items:
        matches = index.get(item.ref, [])
        if len(matches) > 1 and item.ref not in flagged:
            if strict:
                raise AmbiguousRuleMatchError(f"{len(matches)} rule lines match {item.ref.label}.")
            flagged.add(item.ref)
            warnings.append(f"{len(matches)} rule lines match {item.ref.label}; bonuses were summed.")
        basis = _attributed_amount(sale, item, total_quantity)
        for rule in matches:
            amount = _bonus_amount(rule.bonus_type, rule.percent_bps, rule.flat_amount_cents, basis)
            lines.append(BreakdownLine(source=item.ref.label, amount_cents=amount, rule_id=rule.rule_id))

    return lines, warnings


def _multi_item_bonus(plan: PlanTerms, sale: Sale) -> BreakdownLine | None:
    if not plan.multi_item_bonus_enabled:
        return None
    if sale.total_quantity < plan.multi_item_min_quantity:
        return None
    amount = _bonus_amount(
        plan.multi_item_bonus_type,
        plan.multi_item_bonus_percent_bps,
        plan.multi_item_bonus_flat_cents,
        sale.amount_cents,
    )
    return BreakdownLine(source=SOURCE_MULTI_ITEM, amount_cents=amount)


def payable_at_for(plan: PlanTerms, occurred_at: datetime) -> datetime:
    return occurred_at + timedelta(days=plan.hold_days)


def is_clawback_due(plan: PlanTerms, refunded_at: datetime | None, payable_at: datetime) -> bool:
    """Whether a refund at ``refunded_at`` reverses a commission payable at ``payable_at``."""
    if not plan.clawback_enabled or refunded_at is None:
        return False
    if refunded_at < payable_at:
        return True
    if plan.clawback_window_days is not None:
        return refunded_at < payable_at + timedelta(days=plan.clawback_window_days)
    return False


# =============================================================================
# Entry point
# =============================================================================

def resolve_commission(
    plan: PlanTerms,
    rule_lines: Iterable[ProductRule],
    sale: Sale,
    *,
    as_of: datetime | None = None,
    strict: bool = False,
) -> CommissionResult:
    """Compute the commission a plan grants for a sale.

    ``as_of`` is the moment the hold period is judged against and defaults
    to the sale time, so the same inputs always give the same result.
    With ``strict`` set, duplicate rule lines for one product raise
    ``AmbiguousRuleMatchError`` instead of being summed.
    """
    rules = tuple(rule_lines or ())

    if not plan.is_active:
        raise PlanInactiveError("Commission plan is inactive.")
    _validate_plan(plan, rules)
    _validate_sale(sale)
    if as_of is not None and _is_aware(as_of) != _is_aware(sale.occurred_at):
        raise InvalidSaleError("as_of and occurred_at must both be timezone-aware or both naive.")

    if not _in_scope(plan, sale):
        return CommissionResult.zero(ResultStatus.NOT_APPLICABLE)
    if not _within_recurring_window(plan, sale):
        return CommissionResult.zero(ResultStatus.RECURRING_WINDOW_CLOSED)

    breakdown: list[BreakdownLine] = []

    rate = select_rate(plan, sale.payment_sequence_number)
    if rate is not None:
        if plan.plan_type == PlanType.PERCENT:
            base = percent_of(sale.amount_cents, rate)
        else:
            base = rate
        breakdown.append(BreakdownLine(source=SOURCE_BASE, amount_cents=base))

    rule_lines_out, warnings = _rule_bonuses(rules, sale, strict)
    breakdown.extend(rule_lines_out)

    bonus = _multi_item_bonus(plan, sale)
    if bonus is not None:
        breakdown.append(bonus)

    gross = sum(line.amount_cents for line in breakdown)
    payable_at = payable_at_for(plan, sale.occurred_at)

    if is_clawback_due(plan, sale.refunded_at, payable_at):
        status = ResultStatus.CLAWED_BACK
        net = 0
    else:
        moment = as_of if as_of is not None else sale.occurred_at
        status = ResultStatus.PENDING if moment < payable_at else ResultStatus.PAYABLE
        net = gross

    return CommissionResult(
        gross_amount_cents=gross,
        net_amount_cents=net,
        status=status,
        breakdown=tuple(breakdown),
        payable_at=payable_at,
        warnings=tuple(warnings),
    )

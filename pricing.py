"""
Pricing engine.

Pure functions over stored build/settings documents. All arithmetic is done in
Decimal and rounded half-up to cents at every money boundary, so the parts of a
breakdown always add up to its total.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from schemas import Milestone, PricingBreakdown

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percent: Any) -> Decimal:
    return (amount * Decimal(str(percent or 0)) / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)


def options_subtotal(options) -> Decimal:
    total = Decimal("0.00")
    for opt in options or []:
        quantity = int(opt.get("quantity") or 1)
        total += to_money(opt.get("unit_price")) * quantity
    return total


def deposit_percent_for(build: dict, settings: dict) -> Any:
    plan = (build.get("payment") or {}).get("plan") or {}
    if plan.get("type") == "deposit" and plan.get("percent"):
        return plan["percent"]
    return (settings.get("pricing") or {}).get("deposit_percent", 0)


def compute_pricing(build: dict, settings: dict) -> PricingBreakdown:
    selections = build.get("selections") or {}
    delivery = build.get("delivery") or {}
    pricing = settings.get("pricing") or {}

    base = to_money(selections.get("base_price"))
    options = options_subtotal(selections.get("options"))
    delivery_fee = to_money(delivery.get("fee"))
    title_fee = to_money(pricing.get("title_fee_default"))
    setup_fee = to_money(pricing.get("setup_fee_default"))
    tax_rate = pricing.get("tax_rate_percent", 0)

    taxable = base + options + delivery_fee + title_fee + setup_fee
    sales_tax = percent_of(taxable, tax_rate)
    total = taxable + sales_tax

    deposit_percent = deposit_percent_for(build, settings)
    deposit_due = percent_of(total, deposit_percent)
    final_payment = total - deposit_due

    return PricingBreakdown(
        base=float(base),
        options_subtotal=float(options),
        delivery_fee=float(delivery_fee),
        title_fee=float(title_fee),
        setup_fee=float(setup_fee),
        taxable_subtotal=float(taxable),
        tax_rate_percent=float(tax_rate),
        sales_tax=float(sales_tax),
        total=float(total),
        deposit_percent=float(deposit_percent),
        deposit_due=float(deposit_due),
        final_payment=float(final_payment),
    )


def to_cents(amount: Any) -> int:
    return int(to_money(amount) * 100)


def milestone_amount_cents(pricing: PricingBreakdown, milestone: str) -> int:
    if milestone == Milestone.deposit.value:
        return to_cents(pricing.deposit_due)
    if milestone == Milestone.final.value:
        return to_cents(pricing.final_payment)
    return to_cents(pricing.total)


def current_milestone(plan: Optional[dict]) -> str:
    """The milestone a customer pays first under a plan."""
    if (plan or {}).get("type") == "full":
        return Milestone.full.value
    return Milestone.deposit.value

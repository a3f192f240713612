"""Fee calculation rules - line item pricing and discount composition"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Sequence, Tuple

from admission_core.domain.exceptions import ValidationError
from admission_core.domain.models import (
    DiscountKind,
    DiscountRule,
    DiscountSource,
    FeeBreakdown,
    FeeEntity,
    FeeLineItem,
)

# Discounts are sized from the pre-tax base amount and taken off the taxed
# amount: base 1000, tax 5%, 10% sibling discount -> 1050 - 100 = 950.
DISCOUNT_SIZED_ON_PRE_TAX_BASE = True
DISCOUNT_SUBTRACTED_AFTER_TAX = True

ZERO = Decimal("0.00")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_money(value) -> Decimal:
    """Quantize to cents using half-up rounding"""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def discount_for_line(entity: FeeEntity, rule: DiscountRule) -> Decimal:
    """Raw (uncapped) discount a single rule grants on one fee line"""
    if rule.fee_type and rule.fee_type != entity.fee_type:
        return ZERO
    if rule.kind == DiscountKind.PERCENT:
        amount = entity.base_amount * rule.value / HUNDRED
    else:
        amount = rule.value
    # Rules can only ever reduce a charge
    return max(to_money(amount), ZERO)


def price_line(entity: FeeEntity, rules: Iterable[DiscountRule] = ()) -> FeeLineItem:
    """
    Price one fee entity and apply every applicable discount rule.

    Requirements:
    - gross = base * (1 + tax/100)
    - discounts stack additively, each sized on the pre-tax base
    - total discount on the line never exceeds its base amount
    - final amount is never negative
    """
    if entity.base_amount < 0 or entity.tax_percent < 0:
        raise ValidationError(
            f"Fee entity {entity.name!r} has a negative amount or tax",
            errors={"base_amount": str(entity.base_amount), "tax_percent": str(entity.tax_percent)},
        )

    base = to_money(entity.base_amount)
    tax_amount = to_money(base * entity.tax_percent / HUNDRED)
    gross = base + tax_amount

    discount = ZERO
    sources: List[DiscountSource] = []
    for rule in rules:
        amount = discount_for_line(entity, rule)
        if amount > 0:
            discount += amount
            if rule.source not in sources:
                sources.append(rule.source)

    discount = min(discount, base)
    final = max(gross - discount, ZERO)

    return FeeLineItem(
        fee_type=entity.fee_type,
        group_id=entity.group_id,
        name=entity.name,
        base_amount=base,
        tax_percent=Decimal(entity.tax_percent),
        tax_amount=tax_amount,
        discount_amount=discount,
        final_amount=final,
        discount_sources=tuple(sources),
    )


def build_breakdown(
    application_number: str,
    session_id: str,
    class_section_id: str,
    schedule: Sequence[FeeEntity],
    rules: Sequence[DiscountRule] = (),
    rejected_codes: Tuple[str, ...] = (),
) -> FeeBreakdown:
    """Price a whole schedule; an empty schedule yields a zero-total breakdown"""
    items = tuple(price_line(entity, rules) for entity in schedule)
    return FeeBreakdown(
        application_number=application_number,
        session_id=session_id,
        class_section_id=class_section_id,
        line_items=items,
        subtotal=sum((item.base_amount for item in items), ZERO),
        tax_total=sum((item.tax_amount for item in items), ZERO),
        discount_total=sum((item.discount_amount for item in items), ZERO),
        total=sum((item.final_amount for item in items), ZERO),
        rejected_codes=rejected_codes,
    )

"""Unit tests for fee pricing and discount composition"""

from decimal import Decimal

import pytest

from admission_core.domain.exceptions import ValidationError
from admission_core.domain.fees import (
    DISCOUNT_SIZED_ON_PRE_TAX_BASE,
    DISCOUNT_SUBTRACTED_AFTER_TAX,
    build_breakdown,
    discount_for_line,
    price_line,
    to_money,
)
from admission_core.domain.models import DiscountKind, DiscountRule, DiscountSource, FeeEntity

TUITION = FeeEntity(
    fee_type="tuition", group_id="academic", name="Tuition Fee",
    base_amount=Decimal("1000.00"), tax_percent=Decimal("5"),
)
TRANSPORT = FeeEntity(
    fee_type="transport", group_id="services", name="Bus Fee",
    base_amount=Decimal("500.00"), tax_percent=Decimal("0"),
)

SIBLING_10 = DiscountRule(source=DiscountSource.SIBLING, kind=DiscountKind.PERCENT, value=Decimal("10"))


def test_discount_policy_constants():
    """Test the documented composition policy is fixed"""
    assert DISCOUNT_SIZED_ON_PRE_TAX_BASE is True
    assert DISCOUNT_SUBTRACTED_AFTER_TAX is True


def test_line_without_discount():
    """Test gross = base * (1 + tax/100)"""
    item = price_line(TUITION)

    assert item.tax_amount == Decimal("50.00")
    assert item.discount_amount == Decimal("0.00")
    assert item.final_amount == Decimal("1050.00")


def test_sibling_discount_sized_on_base_subtracted_after_tax():
    """Test 10% sibling discount on 1000 + 5% tax gives 950"""
    item = price_line(TUITION, [SIBLING_10])

    assert item.discount_amount == Decimal("100.00")
    assert item.final_amount == Decimal("950.00")
    assert item.discount_sources == (DiscountSource.SIBLING,)


def test_discounts_are_additive():
    promo = DiscountRule(source=DiscountSource.PROMO_CODE, kind=DiscountKind.PERCENT, value=Decimal("10"))
    referral = DiscountRule(source=DiscountSource.REFERRAL, kind=DiscountKind.FLAT, value=Decimal("50"))

    item = price_line(TUITION, [SIBLING_10, promo, referral])

    assert item.discount_amount == Decimal("250.00")
    assert item.final_amount == Decimal("800.00")
    assert item.discount_sources == (DiscountSource.SIBLING, DiscountSource.PROMO_CODE, DiscountSource.REFERRAL)


def test_discount_capped_at_base():
    """Test stacked discounts never exceed the base and never go negative"""
    staff = DiscountRule(source=DiscountSource.STAFF, kind=DiscountKind.PERCENT, value=Decimal("80"))
    promo = DiscountRule(source=DiscountSource.PROMO_CODE, kind=DiscountKind.PERCENT, value=Decimal("80"))

    item = price_line(TUITION, [staff, promo])

    assert item.discount_amount == Decimal("1000.00")
    # Tax is still owed on the fully discounted base
    assert item.final_amount == Decimal("50.00")


@pytest.mark.parametrize(
    "kind,value",
    [
        (DiscountKind.FLAT, Decimal("5000")),
        (DiscountKind.PERCENT, Decimal("250")),
        (DiscountKind.FLAT, Decimal("-100")),
        (DiscountKind.PERCENT, Decimal("-10")),
    ],
)
def test_no_negative_amounts(kind: DiscountKind, value: Decimal):
    """Test final >= 0 and 0 <= discount <= base for extreme rule values"""
    rule = DiscountRule(source=DiscountSource.PROMO_CODE, kind=kind, value=value)

    for entity in (TUITION, TRANSPORT):
        item = price_line(entity, [rule])
        assert item.final_amount >= 0
        assert Decimal("0") <= item.discount_amount <= item.base_amount


def test_rule_scoped_to_fee_type():
    staff = DiscountRule(
        source=DiscountSource.STAFF, kind=DiscountKind.PERCENT, value=Decimal("50"), fee_type="tuition"
    )

    assert discount_for_line(TUITION, staff) == Decimal("500.00")
    assert discount_for_line(TRANSPORT, staff) == Decimal("0.00")


def test_negative_fee_rejected():
    broken = FeeEntity(fee_type="tuition", group_id="academic", name="Broken", base_amount=Decimal("-1"))

    with pytest.raises(ValidationError):
        price_line(broken)


def test_breakdown_totals():
    breakdown = build_breakdown("2024-00001", "2024", "6", [TUITION, TRANSPORT], [SIBLING_10])

    assert breakdown.subtotal == Decimal("1500.00")
    assert breakdown.tax_total == Decimal("50.00")
    assert breakdown.discount_total == Decimal("150.00")
    assert breakdown.total == Decimal("1400.00")
    assert [item.fee_type for item in breakdown.line_items] == ["tuition", "transport"]


def test_empty_schedule_is_zero_total():
    """Test a class without a schedule is fee-exempt"""
    breakdown = build_breakdown("2024-00001", "2024", "9", [], [SIBLING_10], rejected_codes=("BOGUS",))

    assert breakdown.line_items == ()
    assert breakdown.total == Decimal("0.00")
    assert breakdown.rejected_codes == ("BOGUS",)


def test_to_money_rounds_half_up():
    assert to_money(Decimal("10.005")) == Decimal("10.01")
    assert to_money(Decimal("10.004")) == Decimal("10.00")

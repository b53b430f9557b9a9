"""Unit tests for expected installment splits"""

from decimal import Decimal
from recon_gateway.domain.installments import expected_installment_amounts, tolerance_for


def test_expected_installment_amounts_equal_split():
    """Test plan with evenly divisible amount"""
    amounts = expected_installment_amounts(Decimal("1000.00"), 4)

    assert amounts == [Decimal("250.00")] * 4
    assert sum(amounts) == Decimal("1000.00")


def test_expected_installment_amounts_rounding():
    """Test last installment absorbs remainder"""
    amounts = expected_installment_amounts(Decimal("400.03"), 4)

    assert amounts[0] == Decimal("100.00")
    assert amounts[1] == Decimal("100.00")
    assert amounts[2] == Decimal("100.00")
    assert amounts[3] == Decimal("100.03")  # Last absorbs +3 cents
    assert sum(amounts) == Decimal("400.03")


def test_expected_installment_amounts_zero_amount():
    """Test handling of zero amount and zero count"""
    assert expected_installment_amounts(Decimal("0"), 4) == []
    assert expected_installment_amounts(Decimal("100"), 0) == []


def test_tolerance_uses_larger_of_percentage_and_unit():
    assert tolerance_for(Decimal("1000"), Decimal("0.01"), Decimal("0.01")) == Decimal("10.00")
    assert tolerance_for(Decimal("0.50"), Decimal("0.01"), Decimal("0.01")) == Decimal("0.01")

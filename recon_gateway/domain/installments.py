"""Expected installment split for a payment plan"""

from decimal import Decimal
from typing import List

from recon_gateway.utils.money import from_cents, to_cents


def expected_installment_amounts(total: Decimal, num_installments: int) -> List[Decimal]:
    """
    Split a plan total into equal installments.

    Requirements:
    - Equal installments in whole cents
    - Last installment absorbs rounding remainder (≤ num_installments-1 cents drift)

    Args:
        total: Plan total in currency units
        num_installments: Declared number of installments

    Returns:
        Amount expected for each installment, index 1 first

    Example:
        400.03 / 4 → [100.00, 100.00, 100.00, 100.03]
        40003 cents / 4 = 10000 base, remainder 3
        Last installment: 10000 + 3 = 10003
    """
    amount_cents = to_cents(total)
    if amount_cents <= 0 or num_installments <= 0:
        return []

    base_amount = amount_cents // num_installments
    remainder = amount_cents % num_installments

    amounts = []
    for i in range(num_installments):
        # Last installment absorbs remainder to ensure exact total
        cents = base_amount + (remainder if i == num_installments - 1 else 0)
        amounts.append(from_cents(cents))

    return amounts


def tolerance_for(amount: Decimal, pct: Decimal, min_unit: Decimal) -> Decimal:
    """Allowed deviation: a percentage of the amount, never below one currency unit"""
    return max(abs(amount) * pct, min_unit)

"""
accounting.py - Valuation and Fee Arithmetic

PURE FUNCTIONS on integers (base units). No LedgerView, no hidden state.

Key Formulas:
    percentage      = round_half_up(numerator / denominator, precision decimals)
    installment     = (loan_amount + interest_rate) // nr_of_installments
    approval fee    = loan_amount - (loan_amount // 100) * (100 - loan_fee)
    lender share    = (installment * payments // 100) * (100 - rate_to_company)

All divisions floor. Every zero denominator is rejected with InvalidTerms
before the arithmetic runs.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Tuple

from .core import InvalidTerms


def percentage(numerator: int, denominator: int, precision: int) -> int:
    """
    Fixed-point percentage with round-half-up at ``precision`` decimals.

    Example:
        percentage(1000, 2000, 3) == 500     # 0.500
        percentage(2, 3, 3) == 667           # 0.6666.. rounds up
    """
    if denominator == 0:
        raise InvalidTerms("percentage denominator must be non-zero")
    if numerator < 0 or denominator < 0:
        raise InvalidTerms("percentage operands must be non-negative")
    if precision < 0:
        raise InvalidTerms(f"precision must be >= 0, got {precision}")
    scaled = numerator * 10 ** (precision + 1)
    return (scaled // denominator + 5) // 10


def installment_amount(loan_amount: int, interest_rate: int, nr_of_installments: int) -> int:
    """
    Amount due per installment.

    Truncating division: (1000 + 1) // 3 == 333, the remainder of 2 is
    owed to no one.
    """
    if nr_of_installments <= 0:
        raise InvalidTerms(f"nr_of_installments must be positive, got {nr_of_installments}")
    return (loan_amount + interest_rate) // nr_of_installments


def approval_split(loan_amount: int, loan_fee: int) -> Tuple[int, int]:
    """
    Payouts when a loan is funded: (borrower_share, operator_share).

    The borrower receives the full principal. The operator's share is the
    part of the principal not covered by whole percent units at
    (100 - loan_fee), so it includes the truncated remainder.
    """
    operator_share = loan_amount - (loan_amount // 100) * (100 - loan_fee)
    return loan_amount, operator_share


def payment_split(
    installment: int,
    total_payments: int,
    interest_rate_to_company: int,
) -> Tuple[int, int]:
    """
    Split of a gross payment of ``installment * total_payments``:
    (lender_share, operator_share). The operator receives the remainder.
    """
    gross = installment * total_payments
    lender_share = (gross // 100) * (100 - interest_rate_to_company)
    return lender_share, gross - lender_share


def loan_end_after(start: datetime, nr_of_installments: int, installment_frequency: int) -> datetime:
    """Deadline of a loan funded at ``start``."""
    days = nr_of_installments * installment_frequency
    try:
        return start + timedelta(days=days)
    except OverflowError as exc:
        raise InvalidTerms(f"a term of {days} days leaves the date range") from exc

"""
registry.py - Loan Registry

Index of loan records kept in the ledger. Ids are assigned in creation order
starting at 0 and never reused: a failed creation does not consume an id.
Records are never removed, terminal loans stay readable for audit.
"""

from __future__ import annotations
from typing import List

from .core import LedgerView, LoanNotFound, UNIT_TYPE_LOAN
from .units.loan import Loan, LoanStatus, load_loan, loan_symbol


class LoanRegistry:
    """
    Read access to loan records plus id allocation.

    The registry holds no loan state of its own; every read goes to the
    ledger, so it always agrees with the last committed transaction.
    """

    def __init__(self, view: LedgerView):
        self.view = view
        self._ids: List[int] = []

    @property
    def next_id(self) -> int:
        return len(self._ids)

    def symbol_for(self, loan_id: int) -> str:
        return loan_symbol(loan_id)

    def record(self, loan_id: int) -> None:
        """Register the id of a loan whose creation has committed."""
        if loan_id != self.next_id:
            raise ValueError(f"expected loan id {self.next_id}, got {loan_id}")
        unit = self.view.get_unit(loan_symbol(loan_id))
        if unit.unit_type != UNIT_TYPE_LOAN:
            raise ValueError(f"{unit.symbol} is not a loan unit")
        self._ids.append(loan_id)

    def exists(self, loan_id: int) -> bool:
        return isinstance(loan_id, int) and 0 <= loan_id < len(self._ids)

    def get(self, loan_id: int) -> Loan:
        """Snapshot of a loan. Raises LoanNotFound for an unknown id."""
        if not self.exists(loan_id):
            raise LoanNotFound(f"no loan with id {loan_id!r}", loan_id)
        return load_loan(self.view, loan_symbol(loan_id))

    def ids(self) -> List[int]:
        return list(self._ids)

    def count(self) -> int:
        return len(self._ids)

    def all(self) -> List[Loan]:
        return [self.get(loan_id) for loan_id in self._ids]

    def by_borrower(self, wallet: str) -> List[Loan]:
        return [loan for loan in self.all() if loan.borrower == wallet]

    def by_lender(self, wallet: str) -> List[Loan]:
        return [loan for loan in self.all() if loan.lender == wallet]

    def by_status(self, status: LoanStatus) -> List[Loan]:
        return [loan for loan in self.all() if loan.status == status]

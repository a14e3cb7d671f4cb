"""
lifecycle_engine.py - Loan Lifecycle Engine

Public entry point of the protocol. Each operation:

1. Takes the engine lock (one lock for all loans)
2. Builds the transition with a pure compute_* function
3. Settles it through the custody gateway (moves + record change, atomically)
4. Publishes a LoanEvent

A rejected operation raises before step 3 completes and leaves nothing
behind: no moves, no record change, no event, no consumed loan id.

Expiry is never scheduled. pay, extend and withdraw compare the ledger clock
with the loan deadline when they are called.
"""

from __future__ import annotations
from datetime import datetime
import threading
from typing import Any, Callable, List, Optional, Sequence

from .accounting import approval_split
from .config import ProtocolConfig
from .core import (
    LedgerError, LoanError, PendingTransaction, Transaction,
    InvalidTerms, LoanNotFound, Unauthorized,
)
from .custody import CustodyGateway, LedgerCustody
from .events import (
    EventBus, LOAN_CREATED, LOAN_APPROVED, LOAN_CANCELLED, LOAN_PAYMENT,
    LOAN_EXTENDED, ITEMS_WITHDRAWN, CONFIG_CHANGED,
)
from .ledger import Ledger
from .logging import get_logger
from .registry import LoanRegistry
from .units.collateral import normalize_assets
from .units.loan import (
    Loan, LoanStatus, LoanTerms, collateral_recipient,
    compute_create, compute_approval, compute_cancellation,
    compute_payment, compute_extension, compute_withdrawal,
)

logger = get_logger(__name__)


class LoanLifecycleEngine:
    """
    Serialized loan operations over a ledger.

    Example:
        engine = LoanLifecycleEngine(ledger)
        loan_id = engine.create_loan("alice", 1000, 7, 5, "USDC", 2000, 50,
                                     [("0xpunks", 7)])
        engine.approve_loan("bob", loan_id, 1000)
        engine.pay_loan("alice", loan_id, engine.get_installment_amount(loan_id))
    """

    def __init__(
        self,
        ledger: Ledger,
        config: Optional[ProtocolConfig] = None,
        custody: Optional[CustodyGateway] = None,
        events: Optional[EventBus] = None,
    ):
        self.ledger = ledger
        self.config = (config or ProtocolConfig()).validate()
        self.custody = custody or LedgerCustody(
            ledger, self.config.escrow, self.config.native_currency
        )
        self.events = events or EventBus()
        self.registry = LoanRegistry(ledger)
        self._lock = threading.RLock()

        for wallet in (self.config.escrow, self.config.operator):
            if not ledger.is_registered(wallet):
                ledger.register_wallet(wallet)

    @property
    def now(self) -> datetime:
        return self.ledger.current_time

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _symbol(self, loan_id: int) -> str:
        if not self.registry.exists(loan_id):
            raise LoanNotFound(f"no loan with id {loan_id!r}", loan_id)
        return self.registry.symbol_for(loan_id)

    def _settle(
        self,
        operation: str,
        caller: str,
        loan_id: Optional[int],
        build: Callable[[], PendingTransaction],
    ) -> Transaction:
        """Build and settle one transition; log the rejection if it fails."""
        try:
            return self.custody.settle(build())
        except LoanError as e:
            logger.warning(
                "%s by %s rejected: %s", operation, caller, e,
                extra={"extra": {"operation": operation, "loan_id": loan_id, "code": e.code}},
            )
            raise
        except LedgerError as e:
            logger.warning(
                "%s by %s failed in custody: %s", operation, caller, e,
                extra={"extra": {"operation": operation, "loan_id": loan_id,
                                 "code": type(e).__name__}},
            )
            raise

    def _require_admin(self, caller: str) -> None:
        if caller != self.config.admin:
            raise Unauthorized(f"{caller} is not the protocol admin")

    # ========================================================================
    # LIFECYCLE OPERATIONS
    # ========================================================================

    def create_loan(
        self,
        caller: str,
        loan_amount: int,
        installment_frequency: int,
        nr_of_installments: int,
        currency: str,
        assets_value: int,
        interest_rate: int,
        collateral: Sequence[Sequence[Any]],
    ) -> int:
        """
        Open a loan request, pledging the collateral to escrow.

        Returns:
            The new loan id

        Raises:
            InvalidTerms: bad terms or loan-to-value above the ceiling
            NotAuthorized / TransferRejected: collateral could not be taken
        """
        try:
            assets = tuple(normalize_assets(collateral))
        except (TypeError, ValueError) as e:
            raise InvalidTerms(f"malformed collateral: {e}") from e
        terms = LoanTerms(
            borrower=caller,
            currency=currency,
            loan_amount=loan_amount,
            assets_value=assets_value,
            interest_rate=interest_rate,
            installment_frequency=installment_frequency,
            nr_of_installments=nr_of_installments,
            collateral=assets,
        )

        with self._lock:
            loan_id = self.registry.next_id
            self._settle(
                "create", caller, None,
                lambda: compute_create(self.ledger, loan_id, terms, self.config),
            )
            self.registry.record(loan_id)

            logger.info(
                "loan %d created by %s: %d %s against %d item(s)",
                loan_id, caller, loan_amount, currency, len(assets),
                extra={"extra": {"operation": "create", "loan_id": loan_id}},
            )
            self.events.publish(
                LOAN_CREATED, loan_id, caller, self.now, LoanStatus.OPEN,
                loan_amount=loan_amount,
                currency=currency,
                nr_of_installments=nr_of_installments,
                collateral=assets,
            )
            return loan_id

    def approve_loan(self, caller: str, loan_id: int, funds_sent: int) -> Loan:
        """Fund an open loan as its lender. Exactly one approval can succeed."""
        with self._lock:
            symbol = self._symbol(loan_id)
            self._settle(
                "approve", caller, loan_id,
                lambda: compute_approval(self.ledger, symbol, caller, funds_sent, self.config),
            )
            loan = self.registry.get(loan_id)
            _, fee = approval_split(loan.terms.loan_amount, self.config.loan_fee)

            logger.info(
                "loan %d funded by %s, due %s",
                loan_id, caller, loan.state.loan_end,
                extra={"extra": {"operation": "approve", "loan_id": loan_id}},
            )
            self.events.publish(
                LOAN_APPROVED, loan_id, caller, self.now, loan.status,
                funds_sent=funds_sent, fee=fee, loan_end=loan.state.loan_end,
            )
            return loan

    def cancel_loan(self, caller: str, loan_id: int) -> Loan:
        """Borrower withdraws an unfunded request."""
        with self._lock:
            symbol = self._symbol(loan_id)
            self._settle(
                "cancel", caller, loan_id,
                lambda: compute_cancellation(self.ledger, symbol, caller),
            )
            loan = self.registry.get(loan_id)

            logger.info("loan %d cancelled by %s", loan_id, caller,
                        extra={"extra": {"operation": "cancel", "loan_id": loan_id}})
            self.events.publish(LOAN_CANCELLED, loan_id, caller, self.now, loan.status)
            return loan

    def pay_loan(self, caller: str, loan_id: int, funds_sent: int) -> Loan:
        """Borrower pays one or more whole installments."""
        with self._lock:
            symbol = self._symbol(loan_id)
            before = self.registry.get(loan_id).state.nr_of_payments
            self._settle(
                "pay", caller, loan_id,
                lambda: compute_payment(self.ledger, symbol, caller, funds_sent, self.config),
            )
            loan = self.registry.get(loan_id)
            installments = loan.state.nr_of_payments - before

            logger.info(
                "loan %d: %d installment(s) paid, %d/%d",
                loan_id, installments, loan.state.nr_of_payments, loan.state.nr_of_installments,
                extra={"extra": {"operation": "pay", "loan_id": loan_id}},
            )
            self.events.publish(
                LOAN_PAYMENT, loan_id, caller, self.now, loan.status,
                funds_sent=funds_sent,
                installments=installments,
                nr_of_payments=loan.state.nr_of_payments,
            )
            return loan

    def extend_loan(self, caller: str, loan_id: int, nr_of_weeks: int) -> Loan:
        """Lender pushes the deadline back, forgiving nr_of_weeks installments."""
        with self._lock:
            symbol = self._symbol(loan_id)
            self._settle(
                "extend", caller, loan_id,
                lambda: compute_extension(self.ledger, symbol, caller, nr_of_weeks),
            )
            loan = self.registry.get(loan_id)

            logger.info("loan %d extended by %d, due %s",
                        loan_id, nr_of_weeks, loan.state.loan_end,
                        extra={"extra": {"operation": "extend", "loan_id": loan_id}})
            self.events.publish(
                LOAN_EXTENDED, loan_id, caller, self.now, loan.status,
                nr_of_weeks=nr_of_weeks, loan_end=loan.state.loan_end,
            )
            return loan

    def withdraw_items(self, caller: str, loan_id: int) -> Loan:
        """Release the collateral to the borrower (repaid, cancelled) or lender (default)."""
        with self._lock:
            symbol = self._symbol(loan_id)
            recipient = collateral_recipient(self.registry.get(loan_id))
            self._settle(
                "withdraw", caller, loan_id,
                lambda: compute_withdrawal(self.ledger, symbol, caller, self.config),
            )
            loan = self.registry.get(loan_id)

            logger.info("loan %d collateral released to %s", loan_id, recipient,
                        extra={"extra": {"operation": "withdraw", "loan_id": loan_id}})
            self.events.publish(
                ITEMS_WITHDRAWN, loan_id, caller, self.now, loan.status,
                recipient=recipient, collateral=loan.terms.collateral,
            )
            return loan

    # ========================================================================
    # READS
    # ========================================================================

    def get_loan(self, loan_id: int) -> Loan:
        with self._lock:
            return self.registry.get(loan_id)

    def get_nr_of_payments(self, loan_id: int) -> int:
        return self.get_loan(loan_id).state.nr_of_payments

    def get_status(self, loan_id: int) -> LoanStatus:
        return self.get_loan(loan_id).status

    def get_installment_amount(self, loan_id: int) -> int:
        return self.get_loan(loan_id).installment

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        borrower: Optional[str] = None,
        lender: Optional[str] = None,
    ) -> List[Loan]:
        """All loans in id order, optionally filtered."""
        with self._lock:
            loans = self.registry.all()
        if status is not None:
            loans = [loan for loan in loans if loan.status == status]
        if borrower is not None:
            loans = [loan for loan in loans if loan.borrower == borrower]
        if lender is not None:
            loans = [loan for loan in loans if loan.lender == lender]
        return loans

    def loan_count(self) -> int:
        with self._lock:
            return self.registry.count()

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    def _set_config(self, caller: str, name: str, value: int) -> ProtocolConfig:
        with self._lock:
            self._require_admin(caller)
            old = getattr(self.config, name)
            self.config = self.config.with_changes(**{name: value})

            logger.info("%s changed from %s to %s by %s", name, old, value, caller,
                        extra={"extra": {"operation": "config", "field": name}})
            self.events.publish(
                CONFIG_CHANGED, None, caller, self.now,
                field=name, old=old, new=value,
            )
            return self.config

    def set_ltv(self, caller: str, ltv: int) -> ProtocolConfig:
        return self._set_config(caller, "ltv", ltv)

    def set_interest_rate_to_company(self, caller: str, rate: int) -> ProtocolConfig:
        return self._set_config(caller, "interest_rate_to_company", rate)

    def set_interest_rate_to_lender(self, caller: str, rate: int) -> ProtocolConfig:
        return self._set_config(caller, "interest_rate_to_lender", rate)

    def set_loan_fee(self, caller: str, fee: int) -> ProtocolConfig:
        return self._set_config(caller, "loan_fee", fee)

    def fund_reserve(self, caller: str, currency: str, amount: int) -> Transaction:
        """
        Admin or operator tops up escrow's reserve of ``currency``.

        Approval fees are paid out of this reserve.
        """
        with self._lock:
            if caller not in (self.config.admin, self.config.operator):
                raise Unauthorized(f"{caller} cannot fund the escrow reserve")
            tx = self.custody.transfer_funds(currency, caller, self.config.escrow, amount)
            logger.info("escrow reserve funded with %d %s by %s", amount, currency, caller)
            return tx

    # ========================================================================
    # TIME
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """Move the ledger clock forward. Time never goes backwards."""
        with self._lock:
            self.ledger.advance_time(new_time)

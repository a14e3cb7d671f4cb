"""
loan.py - Collateralized Loan Records

Each loan is a LOAN unit in the ledger (symbol ``LOAN_<id>``) whose state is
the loan record. Every lifecycle operation is a pure function that reads the
record through a LedgerView, checks its preconditions and returns a
PendingTransaction carrying the custody moves AND the record update, so the
two commit together or not at all.

ARCHITECTURE:
=============

1. FROZEN DATACLASSES:
   - LoanTerms: fixed at creation (borrower, currency, amounts, collateral)
   - LoanState: changes over the lifecycle (lender, payments, deadline, status)
   - Loan: a snapshot pairing both with the loan id

2. ADAPTERS:
   - load_loan(view, symbol) -> Loan      (the only read of the ledger)
   - to_state_dict(loan) -> dict          (inverse, for UnitStateChange)

3. TRANSITIONS (compute_*):
   - compute_create, compute_approval, compute_cancellation,
     compute_payment, compute_extension, compute_withdrawal
   - Each raises a LoanError subclass on a violated precondition

Status graph:

    OPEN      -> FUNDED (approve), CANCELLED (cancel)
    FUNDED    -> FUNDED (pay, extend), PAID_OFF (final pay), RELEASED (withdraw)
    PAID_OFF  -> RELEASED (withdraw)
    CANCELLED -> RELEASED (withdraw)
    RELEASED  -> terminal
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import IntEnum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from ..accounting import (
    approval_split, installment_amount, loan_end_after, payment_split, percentage,
)
from ..config import ProtocolConfig
from ..core import (
    LedgerView, PendingTransaction, TransactionOrigin, OriginType, Unit,
    UnitStateChange, UNIT_TYPE_LOAN,
    AlreadyFunded, AlreadyReleased, Expired, ImpreciseFunds, InsufficientFunds,
    InvalidTerms, NotYetFunded, OverFunds, Unauthorized, WrongPhase,
    UnitNotRegistered, build_transaction, fund_moves, _freeze_state,
)
from .collateral import AssetRef, collateral_moves, normalize_assets


class LoanStatus(IntEnum):
    OPEN = 10
    FUNDED = 11
    PAID_OFF = 199
    RELEASED = 200
    CANCELLED = 404


ALLOWED_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.OPEN: frozenset({LoanStatus.FUNDED, LoanStatus.CANCELLED}),
    LoanStatus.FUNDED: frozenset({LoanStatus.FUNDED, LoanStatus.PAID_OFF, LoanStatus.RELEASED}),
    LoanStatus.PAID_OFF: frozenset({LoanStatus.RELEASED}),
    LoanStatus.CANCELLED: frozenset({LoanStatus.RELEASED}),
    LoanStatus.RELEASED: frozenset(),
}

# Operation names, used as TransactionOrigin.event_type
CREATE = "CREATE"
APPROVE = "APPROVE"
CANCEL = "CANCEL"
PAY = "PAY"
EXTEND = "EXTEND"
WITHDRAW = "WITHDRAW"


def check_transition(loan_id: int, current: LoanStatus, target: LoanStatus) -> None:
    """Raise WrongPhase unless current -> target is an edge of the status graph."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise WrongPhase(f"cannot move from {current.name} to {target.name}", loan_id)


def loan_symbol(loan_id: int) -> str:
    return f"LOAN_{loan_id}"


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoanTerms:
    """
    Loan terms proposed by the borrower, fixed for the life of the loan.

    Amounts are integer base units of ``currency``. interest_rate is a flat
    amount added to the principal before it is split into installments.
    nr_of_installments is the initial count; extensions live in LoanState.
    """
    borrower: str
    currency: str
    loan_amount: int
    assets_value: int
    interest_rate: int
    installment_frequency: int
    nr_of_installments: int
    collateral: Tuple[AssetRef, ...]

    def __post_init__(self):
        if not isinstance(self.collateral, tuple):
            object.__setattr__(self, 'collateral', tuple(normalize_assets(self.collateral)))

    def validate(self) -> "LoanTerms":
        """Raise InvalidTerms for any malformed field; return self."""
        for name in ("loan_amount", "assets_value", "interest_rate",
                     "installment_frequency", "nr_of_installments"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidTerms(f"{name} must be an integer, got {value!r}")
        if not self.borrower:
            raise InvalidTerms("borrower cannot be empty")
        if not self.currency:
            raise InvalidTerms("currency cannot be empty")
        if self.nr_of_installments <= 0:
            raise InvalidTerms("nr_of_installments must be positive")
        if self.loan_amount <= 0:
            raise InvalidTerms("loan_amount must be positive")
        if self.assets_value <= 0:
            raise InvalidTerms("assets_value must be positive")
        if self.installment_frequency <= 0:
            raise InvalidTerms("installment_frequency must be positive")
        if self.interest_rate < 0:
            raise InvalidTerms("interest_rate cannot be negative")
        if not self.collateral:
            raise InvalidTerms("at least one collateral asset is required")
        if len(set(self.collateral)) != len(self.collateral):
            raise InvalidTerms("collateral assets must be distinct")
        return self


@dataclass(frozen=True, slots=True)
class LoanState:
    """Mutable part of a loan record, as an immutable snapshot."""
    status: LoanStatus
    nr_of_installments: int
    nr_of_payments: int
    lender: Optional[str]
    loan_start: Optional[datetime]
    loan_end: Optional[datetime]
    created_at: datetime


@dataclass(frozen=True, slots=True)
class Loan:
    """Snapshot of a loan record: its id, terms and current state."""
    loan_id: int
    terms: LoanTerms
    state: LoanState

    @property
    def symbol(self) -> str:
        return loan_symbol(self.loan_id)

    @property
    def status(self) -> LoanStatus:
        return self.state.status

    @property
    def borrower(self) -> str:
        return self.terms.borrower

    @property
    def lender(self) -> Optional[str]:
        return self.state.lender

    @property
    def installment(self) -> int:
        return installment_amount(
            self.terms.loan_amount, self.terms.interest_rate, self.state.nr_of_installments
        )

    @property
    def remaining_installments(self) -> int:
        return self.state.nr_of_installments - self.state.nr_of_payments

    @property
    def is_fully_paid(self) -> bool:
        return self.state.nr_of_payments == self.state.nr_of_installments

    def is_expired(self, now: datetime) -> bool:
        """True once past the deadline. An unfunded loan has no deadline."""
        return self.state.loan_end is not None and now > self.state.loan_end


# ============================================================================
# ADAPTERS
# ============================================================================

def load_loan(view: LedgerView, symbol: str) -> Loan:
    """
    Read a loan record from the ledger as a typed snapshot.

    Example:
        loan = load_loan(view, "LOAN_0")
        loan.status, loan.installment
    """
    raw = view.get_unit_state(symbol)
    terms = LoanTerms(
        borrower=raw['borrower'],
        currency=raw['currency'],
        loan_amount=raw['loan_amount'],
        assets_value=raw['assets_value'],
        interest_rate=raw['interest_rate'],
        installment_frequency=raw['installment_frequency'],
        nr_of_installments=raw['initial_installments'],
        collateral=tuple((addr, token_id) for addr, token_id in raw['collateral']),
    )
    state = LoanState(
        status=LoanStatus(raw['status']),
        nr_of_installments=raw['nr_of_installments'],
        nr_of_payments=raw['nr_of_payments'],
        lender=raw.get('lender'),
        loan_start=raw.get('loan_start'),
        loan_end=raw.get('loan_end'),
        created_at=raw['created_at'],
    )
    return Loan(loan_id=raw['loan_id'], terms=terms, state=state)


def to_state_dict(loan: Loan) -> Dict[str, Any]:
    """Inverse of load_loan(): the unit state stored in the ledger."""
    terms, state = loan.terms, loan.state
    return {
        'loan_id': loan.loan_id,
        'borrower': terms.borrower,
        'currency': terms.currency,
        'loan_amount': terms.loan_amount,
        'assets_value': terms.assets_value,
        'interest_rate': terms.interest_rate,
        'installment_frequency': terms.installment_frequency,
        'initial_installments': terms.nr_of_installments,
        'collateral': [[addr, token_id] for addr, token_id in terms.collateral],
        'status': int(state.status),
        'nr_of_installments': state.nr_of_installments,
        'nr_of_payments': state.nr_of_payments,
        'lender': state.lender,
        'loan_start': state.loan_start,
        'loan_end': state.loan_end,
        'created_at': state.created_at,
    }


def create_loan_unit(loan_id: int, terms: LoanTerms, created_at: datetime) -> Unit:
    """
    The LOAN unit holding a new record in status OPEN.

    No wallet ever holds a balance of it; max_balance 0 enforces that.
    """
    loan = Loan(
        loan_id=loan_id,
        terms=terms,
        state=LoanState(
            status=LoanStatus.OPEN,
            nr_of_installments=terms.nr_of_installments,
            nr_of_payments=0,
            lender=None,
            loan_start=None,
            loan_end=None,
            created_at=created_at,
        ),
    )
    return Unit(
        symbol=loan_symbol(loan_id),
        name=f"Loan {loan_id} of {terms.borrower}",
        unit_type=UNIT_TYPE_LOAN,
        min_balance=Decimal("0"),
        max_balance=Decimal("0"),
        decimal_places=0,
        _frozen_state=_freeze_state(to_state_dict(loan)),
    )


def _origin(caller: str, symbol: str, event_type: str) -> TransactionOrigin:
    return TransactionOrigin(
        origin_type=OriginType.USER_ACTION,
        source_id=caller,
        unit_symbol=symbol,
        event_type=event_type,
    )


def _record_change(
    view: LedgerView, symbol: str, new_loan: Loan
) -> UnitStateChange:
    return UnitStateChange(
        unit=symbol,
        old_state=view.get_unit_state(symbol),
        new_state=to_state_dict(new_loan),
    )


def _require_amount(funds_sent, loan_id: int) -> None:
    if isinstance(funds_sent, bool) or not isinstance(funds_sent, int):
        raise InvalidTerms(f"funds_sent must be an integer, got {funds_sent!r}", loan_id)


# ============================================================================
# CREATE
# ============================================================================

def compute_create(
    view: LedgerView,
    loan_id: int,
    terms: LoanTerms,
    config: ProtocolConfig,
) -> PendingTransaction:
    """
    Open a loan: pledge every collateral item to escrow and create the record.

    The record only comes into existence if every collateral move succeeds.

    Raises:
        InvalidTerms: malformed terms, unregistered currency, or the
            loan-to-value ratio exceeds config.ltv
    """
    terms.validate()
    try:
        view.get_unit(terms.currency)
    except UnitNotRegistered as exc:
        raise InvalidTerms(f"currency {terms.currency} is not registered") from exc

    ratio = percentage(terms.loan_amount, terms.assets_value, config.ltv_precision)
    if ratio > config.ltv:
        raise InvalidTerms(f"loan-to-value {ratio} exceeds maximum {config.ltv}")

    symbol = loan_symbol(loan_id)
    moves = collateral_moves(terms.collateral, terms.borrower, config.escrow, f"pledge_{symbol}")
    unit = create_loan_unit(loan_id, terms, view.current_time)
    return build_transaction(
        view, moves,
        origin=_origin(terms.borrower, symbol, CREATE),
        units_to_create=(unit,),
    )


# ============================================================================
# APPROVE
# ============================================================================

def compute_approval(
    view: LedgerView,
    symbol: str,
    lender: str,
    funds_sent: int,
    config: ProtocolConfig,
) -> PendingTransaction:
    """
    Fund an open loan.

    The lender sends exactly loan_amount into escrow. Escrow pays the full
    principal to the borrower and the approval fee to the operator, the fee
    coming out of escrow's own reserve of the currency.

    Raises:
        AlreadyFunded: another lender got there first
        WrongPhase: loan is not OPEN (e.g. cancelled)
        Unauthorized: the borrower tries to fund their own loan
        InvalidTerms: funds_sent is not an integer, or the deadline
            falls outside the representable date range
        InsufficientFunds / OverFunds: funds_sent != loan_amount
    """
    loan = load_loan(view, symbol)
    loan_id = loan.loan_id

    if loan.lender is not None:
        raise AlreadyFunded(f"already funded by {loan.lender}", loan_id)
    if loan.state.nr_of_payments != 0:
        raise WrongPhase("payments already recorded", loan_id)
    if loan.status != LoanStatus.OPEN:
        raise WrongPhase(f"loan is {loan.status.name}", loan_id)
    if lender == loan.borrower:
        raise Unauthorized("borrower cannot fund their own loan", loan_id)
    _require_amount(funds_sent, loan_id)
    if funds_sent < loan.terms.loan_amount:
        raise InsufficientFunds(
            f"sent {funds_sent}, loan amount is {loan.terms.loan_amount}", loan_id
        )
    if funds_sent > loan.terms.loan_amount:
        raise OverFunds(
            f"sent {funds_sent}, loan amount is {loan.terms.loan_amount}", loan_id
        )
    check_transition(loan_id, loan.status, LoanStatus.FUNDED)

    now = view.current_time
    try:
        loan_end = loan_end_after(now, loan.state.nr_of_installments, loan.terms.installment_frequency)
    except InvalidTerms as exc:
        exc.loan_id = loan_id
        raise
    borrower_share, operator_share = approval_split(loan.terms.loan_amount, config.loan_fee)
    currency = loan.terms.currency
    contract_id = f"approve_{symbol}"
    moves = (
        fund_moves(currency, lender, config.escrow, funds_sent, contract_id)
        + fund_moves(currency, config.escrow, loan.borrower, borrower_share, contract_id)
        + fund_moves(currency, config.escrow, config.operator, operator_share, contract_id)
    )

    funded = replace(loan, state=replace(
        loan.state,
        status=LoanStatus.FUNDED,
        lender=lender,
        loan_start=now,
        loan_end=loan_end,
    ))
    return build_transaction(
        view, moves, [_record_change(view, symbol, funded)],
        origin=_origin(lender, symbol, APPROVE),
    )


# ============================================================================
# CANCEL
# ============================================================================

def compute_cancellation(view: LedgerView, symbol: str, caller: str) -> PendingTransaction:
    """
    Cancel an unfunded loan. No value moves; collateral stays in escrow
    until the borrower withdraws it.
    """
    loan = load_loan(view, symbol)
    loan_id = loan.loan_id

    if caller != loan.borrower:
        raise Unauthorized("only the borrower can cancel", loan_id)
    if loan.lender is not None:
        raise AlreadyFunded("cannot cancel a funded loan", loan_id)
    if loan.status != LoanStatus.OPEN:
        raise WrongPhase(f"loan is {loan.status.name}", loan_id)
    check_transition(loan_id, loan.status, LoanStatus.CANCELLED)

    cancelled = replace(loan, state=replace(
        loan.state, status=LoanStatus.CANCELLED, loan_end=view.current_time,
    ))
    return build_transaction(
        view, [], [_record_change(view, symbol, cancelled)],
        origin=_origin(caller, symbol, CANCEL),
    )


# ============================================================================
# PAY
# ============================================================================

def compute_payment(
    view: LedgerView,
    symbol: str,
    caller: str,
    funds_sent: int,
    config: ProtocolConfig,
) -> PendingTransaction:
    """
    Pay one or more whole installments.

    funds_sent must be an exact multiple of the installment amount and must
    not cover more installments than remain. The lender receives the payment
    minus the operator's interest_rate_to_company share.

    Example (installment 100, 3 remaining):
        250 -> ImpreciseFunds, 400 -> OverFunds, 200 -> two installments
    """
    loan = load_loan(view, symbol)
    loan_id = loan.loan_id
    now = view.current_time

    if caller != loan.borrower:
        raise Unauthorized("only the borrower can pay", loan_id)
    if loan.status >= LoanStatus.PAID_OFF:
        raise WrongPhase(f"loan is {loan.status.name}", loan_id)
    if loan.lender is None:
        raise NotYetFunded("loan has no lender yet", loan_id)
    if loan.is_expired(now):
        raise Expired(f"deadline {loan.state.loan_end} has passed", loan_id)
    if loan.is_fully_paid:
        raise WrongPhase("no installments remaining", loan_id)

    _require_amount(funds_sent, loan_id)
    installment = loan.installment
    if installment <= 0 or funds_sent < installment:
        raise InsufficientFunds(f"sent {funds_sent}, installment is {installment}", loan_id)
    total = funds_sent // installment
    if total > loan.remaining_installments:
        raise OverFunds(
            f"{total} installments sent, {loan.remaining_installments} remaining", loan_id
        )
    if total * installment != funds_sent:
        raise ImpreciseFunds(
            f"sent {funds_sent}, not a multiple of installment {installment}", loan_id
        )

    nr_of_payments = loan.state.nr_of_payments + total
    status = (
        LoanStatus.PAID_OFF if nr_of_payments == loan.state.nr_of_installments
        else LoanStatus.FUNDED
    )
    check_transition(loan_id, loan.status, status)

    lender_share, operator_share = payment_split(
        installment, total, config.interest_rate_to_company
    )
    currency = loan.terms.currency
    contract_id = f"pay_{symbol}"
    moves = (
        fund_moves(currency, caller, loan.lender, lender_share, contract_id)
        + fund_moves(currency, caller, config.operator, operator_share, contract_id)
    )

    paid = replace(loan, state=replace(
        loan.state, nr_of_payments=nr_of_payments, status=status,
    ))
    return build_transaction(
        view, moves, [_record_change(view, symbol, paid)],
        origin=_origin(caller, symbol, PAY),
    )


# ============================================================================
# EXTEND
# ============================================================================

def compute_extension(
    view: LedgerView,
    symbol: str,
    caller: str,
    nr_of_weeks: int,
) -> PendingTransaction:
    """
    Lender grants an extension.

    The deadline moves by nr_of_weeks days and nr_of_weeks installments are
    added and counted as paid at once, so the borrower owes nothing extra.
    """
    loan = load_loan(view, symbol)
    loan_id = loan.loan_id
    now = view.current_time

    if loan.lender is None:
        raise NotYetFunded("loan has no lender yet", loan_id)
    if caller != loan.lender:
        raise Unauthorized("only the lender can extend", loan_id)
    if isinstance(nr_of_weeks, bool) or not isinstance(nr_of_weeks, int) or nr_of_weeks <= 0:
        raise InvalidTerms(f"nr_of_weeks must be a positive integer, got {nr_of_weeks!r}", loan_id)
    if loan.status >= LoanStatus.PAID_OFF:
        raise WrongPhase(f"loan is {loan.status.name}", loan_id)
    if loan.is_fully_paid:
        raise WrongPhase("no installments remaining", loan_id)
    if loan.is_expired(now):
        raise Expired(f"deadline {loan.state.loan_end} has passed", loan_id)
    check_transition(loan_id, loan.status, LoanStatus.FUNDED)
    try:
        loan_end = loan.state.loan_end + timedelta(days=nr_of_weeks)
    except OverflowError as exc:
        raise InvalidTerms(f"extending by {nr_of_weeks} leaves the date range", loan_id) from exc

    extended = replace(loan, state=replace(
        loan.state,
        loan_end=loan_end,
        nr_of_payments=loan.state.nr_of_payments + nr_of_weeks,
        nr_of_installments=loan.state.nr_of_installments + nr_of_weeks,
    ))
    return build_transaction(
        view, [], [_record_change(view, symbol, extended)],
        origin=_origin(caller, symbol, EXTEND),
    )


# ============================================================================
# WITHDRAW
# ============================================================================

def collateral_recipient(loan: Loan) -> str:
    """Borrower if the loan was fully paid or cancelled, otherwise the lender."""
    if loan.is_fully_paid or loan.status == LoanStatus.CANCELLED or loan.lender is None:
        return loan.borrower
    return loan.lender


def compute_withdrawal(
    view: LedgerView,
    symbol: str,
    caller: str,
    config: ProtocolConfig,
) -> PendingTransaction:
    """
    Release the collateral from escrow, exactly once.

    Allowed once the loan is over: fully paid, cancelled, or past its
    deadline. An expired loan that is not fully paid defaults and the lender
    takes the collateral.
    """
    loan = load_loan(view, symbol)
    loan_id = loan.loan_id
    now = view.current_time

    if loan.status == LoanStatus.RELEASED:
        raise AlreadyReleased("collateral already withdrawn", loan_id)
    if caller not in (loan.borrower, loan.lender):
        raise Unauthorized("only the borrower or lender can withdraw", loan_id)
    if loan.status not in (LoanStatus.PAID_OFF, LoanStatus.CANCELLED, LoanStatus.FUNDED):
        raise WrongPhase(f"loan is {loan.status.name}", loan_id)
    ended = loan.state.loan_end is not None and now >= loan.state.loan_end
    if not (ended or loan.is_fully_paid):
        raise WrongPhase("loan still running", loan_id)
    check_transition(loan_id, loan.status, LoanStatus.RELEASED)

    recipient = collateral_recipient(loan)
    moves = collateral_moves(loan.terms.collateral, config.escrow, recipient, f"release_{symbol}")
    released = replace(loan, state=replace(loan.state, status=LoanStatus.RELEASED))
    return build_transaction(
        view, moves, [_record_change(view, symbol, released)],
        origin=_origin(caller, symbol, WITHDRAW),
    )


# ============================================================================
# DISPATCH
# ============================================================================

def transact(
    view: LedgerView,
    symbol: str,
    event_type: str,
    caller: str,
    config: ProtocolConfig,
    **kwargs,
) -> PendingTransaction:
    """
    Route a lifecycle operation on an existing loan to its compute_* function.

    Args:
        event_type: APPROVE (funds_sent), CANCEL, PAY (funds_sent),
            EXTEND (nr_of_weeks) or WITHDRAW

    Example:
        pending = transact(view, "LOAN_0", "PAY", "alice", config, funds_sent=200)
    """
    if event_type == APPROVE:
        funds_sent = kwargs.get('funds_sent')
        if funds_sent is None:
            raise ValueError(f"Missing 'funds_sent' parameter for APPROVE on {symbol}")
        return compute_approval(view, symbol, caller, funds_sent, config)

    elif event_type == CANCEL:
        return compute_cancellation(view, symbol, caller)

    elif event_type == PAY:
        funds_sent = kwargs.get('funds_sent')
        if funds_sent is None:
            raise ValueError(f"Missing 'funds_sent' parameter for PAY on {symbol}")
        return compute_payment(view, symbol, caller, funds_sent, config)

    elif event_type == EXTEND:
        nr_of_weeks = kwargs.get('nr_of_weeks')
        if nr_of_weeks is None:
            raise ValueError(f"Missing 'nr_of_weeks' parameter for EXTEND on {symbol}")
        return compute_extension(view, symbol, caller, nr_of_weeks)

    elif event_type == WITHDRAW:
        return compute_withdrawal(view, symbol, caller, config)

    else:
        raise ValueError(f"Unknown event type '{event_type}' for loan {symbol}")

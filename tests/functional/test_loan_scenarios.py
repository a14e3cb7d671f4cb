"""
test_loan_scenarios.py - End-to-end loan lifecycle scenarios

Tests complete loan lifecycles through the engine and a real ledger:
- Request, cancel, reclaim
- Funding rejected on the wrong amount
- Full repayment and collateral return
- Default and collateral seizure by the lender
- Extension then repayment
- Loans in the native currency
- Custody failures that must leave nothing behind
- Several independent loans side by side
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from lending import (
    LoanStatus, NATIVE_CURRENCY,
    build_transaction, fund_moves, owner_of,
    AlreadyFunded, AlreadyReleased, Expired, InsufficientFunds, NotAuthorized,
    TransferRejected, Unauthorized, WrongPhase, ImpreciseFunds, OverFunds,
)

from tests.market import T0, PUNKS, open_loan, usdc


class TestCancelledRequest:
    """Borrower opens a request, nobody funds it, borrower takes items back."""

    def test_create_cancel_withdraw(self, engine):
        loan_id = open_loan(engine, loan_amount=1000, assets_value=2000, nr_of_installments=5)
        assert engine.get_status(loan_id) == LoanStatus.OPEN
        assert owner_of(engine.ledger, PUNKS, 1) == "escrow"

        engine.advance_time(T0 + timedelta(hours=3))
        loan = engine.cancel_loan("alice", loan_id)
        assert loan.status == LoanStatus.CANCELLED
        assert loan.state.loan_end == T0 + timedelta(hours=3)

        loan = engine.withdraw_items("alice", loan_id)
        assert loan.status == LoanStatus.RELEASED
        assert owner_of(engine.ledger, PUNKS, 1) == "alice"

        with pytest.raises(AlreadyReleased):
            engine.withdraw_items("alice", loan_id)

    def test_cancelled_loan_cannot_be_funded(self, engine, open_loan_id):
        engine.cancel_loan("alice", open_loan_id)
        with pytest.raises(WrongPhase):
            engine.approve_loan("bob", open_loan_id, 1000)
        assert engine.get_loan(open_loan_id).lender is None

    def test_no_money_moves(self, engine, open_loan_id):
        before = usdc(engine.ledger, "alice")
        engine.cancel_loan("alice", open_loan_id)
        engine.withdraw_items("alice", open_loan_id)
        assert usdc(engine.ledger, "alice") == before


class TestFundingRejected:

    def test_short_funding_leaves_loan_open(self, engine, open_loan_id):
        before = usdc(engine.ledger, "bob")
        with pytest.raises(InsufficientFunds):
            engine.approve_loan("bob", open_loan_id, 999)
        loan = engine.get_loan(open_loan_id)
        assert loan.status == LoanStatus.OPEN
        assert loan.lender is None
        assert usdc(engine.ledger, "bob") == before

    def test_over_funding(self, engine, open_loan_id):
        with pytest.raises(OverFunds):
            engine.approve_loan("bob", open_loan_id, 1001)
        assert engine.get_status(open_loan_id) == LoanStatus.OPEN

    def test_second_lender_loses(self, engine, open_loan_id):
        engine.approve_loan("bob", open_loan_id, 1000)
        before = usdc(engine.ledger, "carol")
        with pytest.raises(AlreadyFunded):
            engine.approve_loan("carol", open_loan_id, 1000)
        assert engine.get_loan(open_loan_id).lender == "bob"
        assert usdc(engine.ledger, "carol") == before

    def test_empty_reserve_fails_atomically(self, engine, open_loan_id):
        ledger = engine.ledger
        ledger.execute(build_transaction(
            ledger, fund_moves("USDC", "escrow", "dave", 10_000, "drain"),
        ))
        before = {w: usdc(ledger, w) for w in ("alice", "bob", "escrow", "operator")}

        with pytest.raises(TransferRejected):
            engine.approve_loan("bob", open_loan_id, 1000)

        assert {w: usdc(ledger, w) for w in before} == before
        assert engine.get_loan(open_loan_id).lender is None
        assert engine.custody.allowance("bob", "USDC") == 10 ** 9

        engine.fund_reserve("admin", "USDC", 100)
        engine.approve_loan("bob", open_loan_id, 1000)
        assert usdc(ledger, "escrow") == Decimal("90")


class TestRepayment:

    def test_full_repayment(self, engine, open_loan_id):
        ledger = engine.ledger
        engine.approve_loan("bob", open_loan_id, 1000)
        assert usdc(ledger, "alice") == Decimal("101000")
        assert usdc(ledger, "bob") == Decimal("99000")
        assert usdc(ledger, "escrow") == Decimal("9990")
        assert usdc(ledger, "operator") == Decimal("10")

        for week in range(1, 6):
            engine.advance_time(T0 + timedelta(days=7 * week - 1))
            engine.pay_loan("alice", open_loan_id, 200)

        loan = engine.get_loan(open_loan_id)
        assert loan.status == LoanStatus.PAID_OFF
        assert loan.state.nr_of_payments == 5
        assert usdc(ledger, "alice") == Decimal("100000")
        assert usdc(ledger, "bob") == Decimal("99600")
        assert usdc(ledger, "operator") == Decimal("410")

        with pytest.raises(WrongPhase):
            engine.pay_loan("alice", open_loan_id, 200)

        engine.withdraw_items("bob", open_loan_id)
        assert owner_of(ledger, PUNKS, 1) == "alice"
        assert engine.get_status(open_loan_id) == LoanStatus.RELEASED

    def test_lump_sum(self, engine, funded_loan_id):
        engine.pay_loan("alice", funded_loan_id, 1000)
        assert engine.get_status(funded_loan_id) == LoanStatus.PAID_OFF
        engine.withdraw_items("alice", funded_loan_id)
        assert owner_of(engine.ledger, PUNKS, 1) == "alice"

    def test_payment_amount_rules(self, engine):
        # installment (300 + 0) // 3 == 100
        loan_id = open_loan(engine, loan_amount=300, assets_value=1000, nr_of_installments=3)
        engine.approve_loan("bob", loan_id, 300)
        assert engine.get_installment_amount(loan_id) == 100

        with pytest.raises(ImpreciseFunds):
            engine.pay_loan("alice", loan_id, 250)
        engine.pay_loan("alice", loan_id, 100)
        with pytest.raises(OverFunds):
            engine.pay_loan("alice", loan_id, 300)
        engine.pay_loan("alice", loan_id, 200)
        assert engine.get_nr_of_payments(loan_id) == 3

    def test_interest_is_part_of_installment(self, engine):
        loan_id = open_loan(engine, interest_rate=50)
        engine.approve_loan("bob", loan_id, 1000)
        assert engine.get_installment_amount(loan_id) == 210
        engine.pay_loan("alice", loan_id, 210)
        assert engine.get_nr_of_payments(loan_id) == 1

    def test_payment_without_allowance(self, engine, funded_loan_id):
        engine.custody.authorize_funds("alice", "USDC", 100)
        with pytest.raises(NotAuthorized):
            engine.pay_loan("alice", funded_loan_id, 200)
        assert engine.get_nr_of_payments(funded_loan_id) == 0


class TestDefault:

    def test_lender_takes_collateral(self, engine, funded_loan_id, after_deadline):
        engine.pay_loan("alice", funded_loan_id, 400)

        with pytest.raises(WrongPhase, match="still running"):
            engine.withdraw_items("bob", funded_loan_id)

        engine.advance_time(after_deadline)
        with pytest.raises(Expired):
            engine.pay_loan("alice", funded_loan_id, 200)
        with pytest.raises(Expired):
            engine.extend_loan("bob", funded_loan_id, 1)

        loan = engine.withdraw_items("alice", funded_loan_id)
        assert loan.status == LoanStatus.RELEASED
        assert owner_of(engine.ledger, PUNKS, 1) == "bob"

    def test_withdraw_exactly_at_deadline(self, engine, funded_loan_id):
        engine.advance_time(T0 + timedelta(days=35))
        engine.pay_loan("alice", funded_loan_id, 200)
        engine.withdraw_items("bob", funded_loan_id)
        assert owner_of(engine.ledger, PUNKS, 1) == "bob"

    def test_outsider_cannot_withdraw(self, engine, funded_loan_id, after_deadline):
        engine.advance_time(after_deadline)
        with pytest.raises(Unauthorized):
            engine.withdraw_items("dave", funded_loan_id)
        assert owner_of(engine.ledger, PUNKS, 1) == "escrow"


class TestExtension:

    def test_extend_then_repay(self, engine, funded_loan_id):
        engine.pay_loan("alice", funded_loan_id, 200)
        loan = engine.extend_loan("bob", funded_loan_id, 2)
        assert loan.state.loan_end == T0 + timedelta(days=37)
        assert loan.state.nr_of_payments == 3
        assert loan.state.nr_of_installments == 7

        # installment is recomputed over the new count: 1000 // 7
        assert engine.get_installment_amount(funded_loan_id) == 142
        engine.advance_time(T0 + timedelta(days=36))
        engine.pay_loan("alice", funded_loan_id, 142 * 4)
        assert engine.get_status(funded_loan_id) == LoanStatus.PAID_OFF

        engine.withdraw_items("alice", funded_loan_id)
        assert owner_of(engine.ledger, PUNKS, 1) == "alice"

    def test_no_extension_after_payoff(self, engine, funded_loan_id):
        engine.pay_loan("alice", funded_loan_id, 1000)
        with pytest.raises(WrongPhase):
            engine.extend_loan("bob", funded_loan_id, 1)

    def test_extension_keeps_remaining_count(self, engine, funded_loan_id):
        engine.pay_loan("alice", funded_loan_id, 800)
        loan = engine.extend_loan("bob", funded_loan_id, 1)
        assert loan.remaining_installments == 1
        assert loan.state.nr_of_installments == 6

    def test_borrower_cannot_extend(self, engine, funded_loan_id):
        with pytest.raises(Unauthorized):
            engine.extend_loan("alice", funded_loan_id, 1)


class TestNativeCurrency:

    def test_lifecycle_without_allowances(self, engine):
        ledger = engine.ledger
        loan_id = open_loan(engine, currency=NATIVE_CURRENCY)
        alice = ledger.get_balance("alice", NATIVE_CURRENCY)
        bob = ledger.get_balance("bob", NATIVE_CURRENCY)

        engine.approve_loan("bob", loan_id, 1000)
        engine.pay_loan("alice", loan_id, 1000)
        engine.withdraw_items("alice", loan_id)

        assert ledger.get_balance("alice", NATIVE_CURRENCY) == alice
        assert ledger.get_balance("bob", NATIVE_CURRENCY) == bob - Decimal("1000") + Decimal("600")
        assert ledger.get_balance("operator", NATIVE_CURRENCY) == Decimal("410")
        assert owner_of(ledger, PUNKS, 1) == "alice"


class TestCustodyFailure:

    def test_create_without_approval_leaves_nothing(self, engine):
        ledger = engine.ledger
        engine.custody.revoke_collateral("alice", PUNKS, 1)
        with pytest.raises(NotAuthorized):
            open_loan(engine)
        assert engine.loan_count() == 0
        assert engine.registry.next_id == 0
        assert not ledger.has_unit("LOAN_0")
        assert owner_of(ledger, PUNKS, 1) == "alice"
        assert engine.events.events == []

    def test_collateral_not_owned(self, engine):
        engine.custody.authorize_collateral("alice", PUNKS, 4)
        with pytest.raises(TransferRejected):
            open_loan(engine, collateral=[(PUNKS, 4)])
        assert not engine.ledger.has_unit("LOAN_0")
        assert owner_of(engine.ledger, PUNKS, 4) == "carol"

    def test_same_item_cannot_back_two_loans(self, engine, open_loan_id):
        engine.custody.authorize_collateral("alice", PUNKS, 1)
        with pytest.raises(TransferRejected):
            open_loan(engine)
        assert engine.loan_count() == 1


class TestIndependentLoans:

    def test_two_loans_two_outcomes(self, engine, after_deadline):
        first = open_loan(engine, collateral=[(PUNKS, 1), (PUNKS, 2)])
        second = open_loan(engine, borrower="carol", collateral=[(PUNKS, 4)])
        engine.approve_loan("bob", first, 1000)
        engine.approve_loan("dave", second, 1000)

        engine.pay_loan("alice", first, 1000)
        engine.advance_time(after_deadline)

        engine.withdraw_items("alice", first)
        engine.withdraw_items("dave", second)

        ledger = engine.ledger
        assert owner_of(ledger, PUNKS, 1) == "alice"
        assert owner_of(ledger, PUNKS, 2) == "alice"
        assert owner_of(ledger, PUNKS, 4) == "dave"
        assert [l.status for l in engine.list_loans()] == [LoanStatus.RELEASED] * 2

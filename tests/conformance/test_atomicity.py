"""
Atomicity Conformance Tests

INVARIANT: A loan operation is all-or-nothing.

    ∀ operation op:
        op succeeds ⟹ its moves, record change and event are all applied
        op raises   ⟹ balances, unit states, transaction log, event log,
                      next loan id and config are exactly as before

A rejected operation never consumes a loan id, leaves no half-created
loan unit behind and emits no event.
"""

import pytest
from hypothesis import given, settings, HealthCheck
from datetime import timedelta

from lending import (
    LedgerError, LoanError, LoanStatus, ConfigurationError,
    build_transaction, fund_moves,
    InvalidTerms, TransferRejected, NotAuthorized,
)

from tests.market import PUNKS, T0, apply_operation, build_engine, open_loan, snapshot
from tests.strategies import operations


class TestAtomicityProperties:
    """Property-based atomicity tests."""

    @given(operations)
    @settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_rejected_operation_changes_nothing(self, ops):
        """
        PROPERTY: Whatever the history, a rejected operation leaves every
        observable piece of state untouched.
        """
        engine = build_engine()
        for op in ops:
            before = snapshot(engine)
            try:
                apply_operation(engine, op)
            except (LoanError, LedgerError):
                assert snapshot(engine) == before, op

    @given(operations)
    @settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_successful_operation_emits_one_event(self, ops):
        """PROPERTY: Each successful loan operation publishes exactly one event."""
        engine = build_engine()
        for op in ops:
            events = len(engine.events.events)
            try:
                apply_operation(engine, op)
            except (LoanError, LedgerError):
                continue
            expected = 0 if op[0] == "advance" else 1
            assert len(engine.events.events) == events + expected


class TestAtomicityExamples:
    """Explicit atomicity examples."""

    def test_create_rejected_on_ltv_moves_no_collateral(self):
        engine = build_engine()
        before = snapshot(engine)
        with pytest.raises(LoanError):
            open_loan(engine, loan_amount=1500)
        assert snapshot(engine) == before

    def test_approval_rejected_after_lender_paid_in(self):
        """The lender's payment into escrow is undone when the fee cannot be paid."""
        engine = build_engine()
        loan_id = open_loan(engine)
        ledger = engine.ledger
        ledger.execute(build_transaction(ledger, fund_moves("USDC", "escrow", "dave", 10_000, "drain")))

        before = snapshot(engine)
        with pytest.raises(TransferRejected):
            engine.approve_loan("bob", loan_id, 1000)
        assert snapshot(engine) == before

    def test_payment_rejected_on_allowance(self):
        engine = build_engine()
        loan_id = open_loan(engine)
        engine.approve_loan("bob", loan_id, 1000)
        engine.custody.authorize_funds("alice", "USDC", 0)

        before = snapshot(engine)
        with pytest.raises(NotAuthorized):
            engine.pay_loan("alice", loan_id, 200)
        assert snapshot(engine) == before

    def test_rejected_pay_after_deadline_is_complete(self):
        engine = build_engine()
        loan_id = open_loan(engine)
        engine.approve_loan("bob", loan_id, 1000)
        engine.advance_time(T0 + timedelta(days=40))

        before = snapshot(engine)
        with pytest.raises(LoanError):
            engine.pay_loan("alice", loan_id, 200)
        assert snapshot(engine) == before
        assert engine.get_status(loan_id) == LoanStatus.FUNDED

    def test_rejected_config_change(self):
        engine = build_engine()
        before = snapshot(engine)
        with pytest.raises(ConfigurationError):
            engine.set_ltv("admin", 0)
        assert snapshot(engine) == before

    def test_failed_create_then_success_reuses_id(self):
        engine = build_engine()
        with pytest.raises(InvalidTerms):
            open_loan(engine, loan_amount=0)
        assert open_loan(engine, collateral=[(PUNKS, 2)]) == 0

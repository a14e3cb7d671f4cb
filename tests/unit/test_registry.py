"""
test_registry.py - Unit tests for LoanRegistry
"""

import pytest

from lending import LoanRegistry, LoanStatus, LoanNotFound, InvalidTerms, token

from tests.market import open_loan, PUNKS


class TestRegistry:

    def test_ids_start_at_zero(self, engine):
        assert engine.registry.next_id == 0
        assert open_loan(engine) == 0
        assert open_loan(engine, collateral=[(PUNKS, 2)]) == 1
        assert engine.registry.ids() == [0, 1]
        assert engine.registry.count() == 2

    def test_failed_creation_consumes_no_id(self, engine):
        with pytest.raises(InvalidTerms):
            open_loan(engine, loan_amount=5000)
        assert engine.registry.next_id == 0
        assert open_loan(engine) == 0

    def test_unknown_id(self, engine):
        with pytest.raises(LoanNotFound):
            engine.registry.get(0)
        with pytest.raises(LoanNotFound):
            engine.registry.get(-1)
        assert not engine.registry.exists("0")

    def test_get_is_snapshot(self, engine, open_loan_id):
        before = engine.registry.get(open_loan_id)
        engine.approve_loan("bob", open_loan_id, 1000)
        assert before.status == LoanStatus.OPEN
        assert engine.registry.get(open_loan_id).status == LoanStatus.FUNDED

    def test_filters(self, engine):
        first = open_loan(engine)
        second = open_loan(engine, borrower="carol", collateral=[(PUNKS, 4)])
        engine.approve_loan("bob", second, 1000)
        registry = engine.registry
        assert [l.loan_id for l in registry.by_borrower("alice")] == [first]
        assert [l.loan_id for l in registry.by_lender("bob")] == [second]
        assert [l.loan_id for l in registry.by_status(LoanStatus.OPEN)] == [first]
        assert registry.symbol_for(second) == "LOAN_1"

    def test_record_requires_next_id(self, market):
        registry = LoanRegistry(market)
        with pytest.raises(ValueError, match="expected loan id 0"):
            registry.record(3)

    def test_record_requires_loan_unit(self, market):
        market.register_unit(token("LOAN_0", "not a loan"))
        with pytest.raises(ValueError, match="not a loan unit"):
            LoanRegistry(market).record(0)

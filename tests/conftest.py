"""
conftest.py - Shared pytest fixtures for lending tests

Provides common fixtures used across unit, functional and conformance tests:
- A market ledger: USDC and native tokens, minted collateral, funded wallets
- An engine over that ledger with custody authorizations in place
- Open and funded loans
"""

import pytest
from datetime import timedelta

from lending import LoanLifecycleEngine, ProtocolConfig

from tests.market import T0, build_market, authorize_everything, open_loan


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def market():
    """Fresh market ledger."""
    return build_market()


@pytest.fixture
def engine(market):
    """Engine with default ProtocolConfig and all authorizations granted."""
    eng = LoanLifecycleEngine(market, ProtocolConfig())
    authorize_everything(eng)
    return eng


@pytest.fixture
def open_loan_id(engine):
    """Loan 0: alice borrows 1000 USDC over 5 weekly installments against punk #1."""
    return open_loan(engine)


@pytest.fixture
def funded_loan_id(engine, open_loan_id):
    """Loan 0, funded by bob. Installment 200, deadline 35 days out."""
    engine.approve_loan("bob", open_loan_id, 1000)
    return open_loan_id


@pytest.fixture
def after_deadline():
    """A time strictly after a 5 x 7 day loan funded at T0 ends."""
    return T0 + timedelta(days=36)

"""
Concurrency Conformance Tests

INVARIANT: Operations are serialized across all loans.

    ∀ concurrent approvals A1..An of one OPEN loan:
        exactly one succeeds, every other raises AlreadyFunded

    ∀ concurrent creates C1..Cn:
        successful creates receive distinct, gapless ids

Threads start together behind a barrier to maximize overlap.
"""

import threading
from decimal import Decimal

from lending import AlreadyFunded, LoanStatus

from tests.market import ALICE_ITEMS, CAROL_ITEMS, build_engine, open_loan, usdc


def run_together(targets):
    barrier = threading.Barrier(len(targets))
    results = [None] * len(targets)

    def worker(index, target):
        barrier.wait()
        try:
            results[index] = ("ok", target())
        except Exception as e:
            results[index] = ("error", e)

    threads = [threading.Thread(target=worker, args=(i, t)) for i, t in enumerate(targets)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results


class TestRacingLenders:

    def test_one_winner(self):
        for _ in range(10):
            engine = build_engine()
            loan_id = open_loan(engine)
            lenders = ["bob", "carol", "dave", "admin"]
            before = {lender: usdc(engine.ledger, lender) for lender in lenders}

            results = run_together([
                (lambda lender=lender: engine.approve_loan(lender, loan_id, 1000))
                for lender in lenders
            ])

            winners = [lenders[i] for i, (kind, _) in enumerate(results) if kind == "ok"]
            assert len(winners) == 1
            losers = [value for kind, value in results if kind == "error"]
            assert all(isinstance(e, AlreadyFunded) for e in losers)

            loan = engine.get_loan(loan_id)
            assert loan.lender == winners[0]
            assert loan.status == LoanStatus.FUNDED
            for lender in lenders:
                spent = Decimal("1000") if lender == winners[0] else Decimal("0")
                assert usdc(engine.ledger, lender) == before[lender] - spent


class TestRacingBorrowers:

    def test_distinct_ids(self):
        engine = build_engine()
        pledges = [("alice", item) for item in ALICE_ITEMS] + [("carol", item) for item in CAROL_ITEMS]

        results = run_together([
            (lambda borrower=borrower, item=item: open_loan(engine, borrower=borrower, collateral=[item]))
            for borrower, item in pledges
        ])

        assert all(kind == "ok" for kind, _ in results)
        assert sorted(loan_id for _, loan_id in results) == list(range(len(pledges)))
        assert engine.loan_count() == len(pledges)

    def test_concurrent_payments_stop_at_payoff(self):
        engine = build_engine()
        loan_id = open_loan(engine)
        engine.approve_loan("bob", loan_id, 1000)

        results = run_together([
            (lambda: engine.pay_loan("alice", loan_id, 200)) for _ in range(8)
        ])

        assert sum(1 for kind, _ in results if kind == "ok") == 5
        assert engine.get_status(loan_id) == LoanStatus.PAID_OFF
        assert engine.get_nr_of_payments(loan_id) == 5

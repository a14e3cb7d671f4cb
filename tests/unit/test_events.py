"""
test_events.py - Unit tests for LoanEvent and EventBus
"""

import logging
import pytest
from datetime import datetime

from lending import EventBus, LoanEvent, LOAN_CREATED, LOAN_PAYMENT, CONFIG_CHANGED


T0 = datetime(2025, 1, 1)


class TestLoanEvent:

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown event type"):
            LoanEvent("LoanExploded", 0, "alice", T0)

    def test_frozen(self):
        event = LoanEvent(LOAN_CREATED, 0, "alice", T0)
        with pytest.raises(AttributeError):
            event.actor = "bob"


class TestEventBus:

    def test_publish_appends_with_sequence(self):
        bus = EventBus()
        first = bus.publish(LOAN_CREATED, 0, "alice", T0, 10, loan_amount=1000)
        second = bus.publish(LOAN_PAYMENT, 0, "alice", T0, 11, funds_sent=200)
        assert [e.sequence for e in bus.events] == [0, 1]
        assert bus.events == [first, second]
        assert first.details == {"loan_amount": 1000}
        assert first.status == 10

    def test_params_sorted(self):
        event = EventBus().publish(CONFIG_CHANGED, None, "admin", T0, field="ltv", old=600, new=700)
        assert event.params == (("field", "ltv"), ("new", 700), ("old", 600))
        assert event.loan_id is None
        assert event.status is None

    def test_observers_notified_in_order(self):
        bus = EventBus()
        seen = []
        bus.subscribe(lambda e: seen.append(("a", e.sequence)))
        bus.subscribe(lambda e: seen.append(("b", e.sequence)))
        bus.publish(LOAN_CREATED, 0, "alice", T0)
        assert seen == [("a", 0), ("b", 0)]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        bus.publish(LOAN_CREATED, 0, "alice", T0)
        unsubscribe()
        unsubscribe()
        bus.publish(LOAN_CREATED, 1, "alice", T0)
        assert len(seen) == 1
        assert len(bus.events) == 2

    def test_failing_observer_is_logged_and_isolated(self, caplog):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        with caplog.at_level(logging.ERROR, logger="lending.events"):
            event = bus.publish(LOAN_CREATED, 0, "alice", T0)
        assert seen == [event]
        assert "observer" in caplog.text
        assert "boom" in caplog.text

    def test_events_for(self):
        bus = EventBus()
        bus.publish(LOAN_CREATED, 0, "alice", T0)
        bus.publish(LOAN_CREATED, 1, "carol", T0)
        bus.publish(LOAN_PAYMENT, 0, "alice", T0)
        assert [e.event_type for e in bus.events_for(0)] == [LOAN_CREATED, LOAN_PAYMENT]

"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the lending protocol.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. atomicity.py - A rejected operation changes nothing
2. conservation.py - Funds and collateral are never created, lost or duplicated
3. idempotency.py - Replayed and stale transitions are refused
4. determinism.py - Identical call sequences give identical outcomes
5. loan_invariants.py - LTV bound, payment counters, collateral routing
6. concurrency.py - Racing callers are serialized

These tests use hypothesis for property-based testing.
"""

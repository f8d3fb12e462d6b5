"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the credit facility.

The tests are organized by invariant:
1. reconciliation.py - Borrower and vault sides agree; tranches sum exactly
2. accrual.py - Index monotonicity, pile idempotence, rounding bounds

These tests use hypothesis for property-based testing.
"""

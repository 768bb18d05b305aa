"""
Conformance Test Suite

Behavior every lending market must keep, organized by invariant:
1. test_conservation.py - Assets and shares are moved, never created
2. test_atomicity.py - Rejected operations leave no trace
3. test_monotonicity.py - Rates, indexes and debt only move forward

These tests use hypothesis for property-based testing.
"""

"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of loan pools and bundles.

The tests are organized by invariant:
1. test_loan_conservation.py - No value is created or destroyed by any lifecycle
2. test_loan_atomicity.py - Failed operations leave every balance untouched
3. test_claim_idempotency.py - A claim is paid at most once
4. test_pro_rata.py - Sequential claims split a pool exactly
5. test_auction_price.py - Dutch-auction price schedule

These tests use hypothesis for property-based testing.
"""

"""
Auction Price Conformance Tests

INVARIANT: The auction price is a linear, non-increasing function of elapsed
ticks, floored at zero and truncated to the currency precision.

    price(k) = max(0, start - k * drop)    truncated to the currency quantum
    k1 <= k2 ⟹ price(k1) >= price(k2)
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

import pytest

from loanpool import compute_auction_price, InsufficientBid

from tests.helpers import build_active_loan, balances_snapshot


QUANTUM = Decimal("1e-18")


prices = st.decimals(min_value=Decimal("0"), max_value=Decimal("1000"), places=6)
drops = st.decimals(min_value=Decimal("0"), max_value=Decimal("10"), places=8)
elapsed_ticks = st.integers(min_value=0, max_value=100_000)


class TestPriceSchedule:
    """Properties of compute_auction_price."""

    @given(prices, drops, st.integers(min_value=0, max_value=10_000), elapsed_ticks)
    @settings(max_examples=200)
    def test_matches_linear_formula(self, start, drop, start_tick, elapsed):
        price = compute_auction_price(start, drop, start_tick, start_tick + elapsed)
        assert price == max(Decimal("0"), start - drop * elapsed)

    @given(prices, drops, elapsed_ticks, elapsed_ticks)
    @settings(max_examples=200)
    def test_non_increasing(self, start, drop, a, b):
        early, late = sorted((a, b))
        assert (compute_auction_price(start, drop, 0, early)
                >= compute_auction_price(start, drop, 0, late))

    @given(prices, drops, elapsed_ticks)
    @settings(max_examples=200)
    def test_never_negative(self, start, drop, elapsed):
        assert compute_auction_price(start, drop, 0, elapsed) >= 0

    @given(
        st.decimals(min_value=Decimal("0"), max_value=Decimal("1000"), places=30),
        st.decimals(min_value=Decimal("0"), max_value=Decimal("1"), places=30),
        elapsed_ticks,
    )
    @settings(max_examples=200)
    def test_truncation_within_one_quantum(self, start, drop, elapsed):
        exact = compute_auction_price(start, drop, 0, elapsed)
        truncated = compute_auction_price(start, drop, 0, elapsed, decimal_places=18)
        assert truncated <= exact
        assert exact - truncated < QUANTUM

    @given(prices, drops, st.integers(min_value=1, max_value=1000))
    @settings(max_examples=50)
    def test_before_start_rejected(self, start, drop, early_by):
        with pytest.raises(ValueError):
            compute_auction_price(start, drop, 1000, 1000 - early_by)


class TestAuctionSettlement:
    """Bids against a running auction."""

    @given(st.integers(min_value=0, max_value=60_000))
    @settings(max_examples=30)
    def test_bid_at_price_always_clears(self, elapsed):
        ledger, registry, loan = build_active_loan()
        ledger.advance_to(1000)
        loan.initiate_collateral_auction("buyer")
        ledger.advance_tick(elapsed)

        price = loan.get_price()
        assert price == max(Decimal("0"), Decimal("12") - Decimal("0.00023") * elapsed)
        assert loan.buy_collateral_during_auction("buyer", price) == price
        assert loan.held_balance == price
        assert registry.owner_of(6) == "buyer"

    @given(
        st.integers(min_value=0, max_value=50_000),
        st.decimals(min_value=Decimal("1e-18"), max_value=Decimal("5"), places=18),
    )
    @settings(max_examples=30)
    def test_underbid_changes_nothing(self, elapsed, shortfall):
        ledger, registry, loan = build_active_loan()
        ledger.advance_to(1000)
        loan.initiate_collateral_auction("buyer")
        ledger.advance_tick(elapsed)
        before = balances_snapshot(ledger)

        bid = loan.get_price() - shortfall
        with pytest.raises(InsufficientBid):
            loan.buy_collateral_during_auction("buyer", bid)
        assert balances_snapshot(ledger) == before
        assert loan.buyer is None

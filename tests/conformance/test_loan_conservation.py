"""
Conservation Law Conformance Tests

INVARIANT: For all units u, at all times t:
    Σ_{w ∈ wallets} balance(w, u, t) = 0    (system wallet included)

Funding, disbursement, repayment, auction settlement and claims only move
value between wallets. These tests drive loans through arbitrary operation
sequences and check the invariant after every step.
"""

from hypothesis import given, settings, note
from hypothesis import strategies as st
from decimal import Decimal

from loanpool import LedgerError, LoanStatus

from tests.helpers import ETH, build_active_loan, assert_conserved
from tests.conformance.strategies import operations, apply_operation, PARTIES


ISSUED_PER_WALLET = Decimal("1000")


@st.composite
def lifecycle(draw):
    """A settled lifecycle: repayment or auction, then claims in any order."""
    by_auction = draw(st.booleans())
    split = draw(st.lists(st.integers(min_value=1, max_value=40), min_size=1, max_size=4))
    claim_order = draw(st.permutations(range(len(split))))
    delay = draw(st.integers(min_value=0, max_value=60_000))
    excess = draw(st.decimals(min_value=Decimal("0"), max_value=Decimal("50"), places=18))
    return by_auction, split, list(claim_order), delay, excess


class TestLifecycleConservation:
    """Whole lifecycles conserve every unit."""

    @given(lifecycle())
    @settings(max_examples=40)
    def test_settled_lifecycle(self, params):
        by_auction, split, claim_order, delay, excess = params
        holders = [f"holder_{i}" for i in range(len(split))]
        ledger, registry, loan = build_active_loan(share_supply=sum(split), holders=holders)
        for holder, count in zip(holders, split):
            loan.shares.transfer("lender", holder, count)
        assert_conserved(ledger)

        if by_auction:
            ledger.advance_to(1000 + delay)
            loan.initiate_collateral_auction("buyer")
            ledger.advance_tick(delay)
            price = loan.get_price()
            loan.buy_collateral_during_auction("buyer", price + excess)
            pool = price
        else:
            ledger.advance_tick(delay)
            pool = Decimal("15.4") + excess
            loan.repay("borrower", pool)
        assert loan.held_balance == pool
        assert_conserved(ledger)

        paid = Decimal("0")
        for index in claim_order:
            paid += loan.claim_payment(holders[index])
            assert_conserved(ledger)
        assert paid == pool
        assert loan.held_balance == Decimal("0")

        # Every wallet's ETH moved only among participants
        participants = ["lender", "borrower", "buyer", *holders]
        total = sum(ledger.get_balance(w, ETH) for w in participants)
        assert total == ISSUED_PER_WALLET * len(participants)

    @given(
        st.booleans(),
        st.integers(min_value=0, max_value=60_000),
        st.decimals(min_value=Decimal("0"), max_value=Decimal("50"), places=18),
    )
    @settings(max_examples=20)
    def test_collateral_ends_with_exactly_one_owner(self, by_auction, delay, excess):
        ledger, registry, loan = build_active_loan()
        if by_auction:
            ledger.advance_to(1000)
            loan.initiate_collateral_auction("buyer")
            ledger.advance_tick(delay)
            loan.buy_collateral_during_auction("buyer", loan.get_price() + excess)
            expected_owner = "buyer"
        else:
            loan.repay("borrower", Decimal("15.4") + excess)
            expected_owner = "borrower"
        assert registry.owner_of(6) == expected_owner
        holders = [w for w in ledger.list_wallets() if ledger.get_balance(w, "NFT#6") > 0]
        assert holders == [expected_owner]


class TestOperationSequences:
    """Arbitrary operation sequences, successful or not, conserve every unit."""

    @given(st.lists(operations, min_size=1, max_size=25))
    @settings(max_examples=60)
    def test_conserved_after_every_step(self, ops):
        ledger, registry, loan = build_active_loan(holders=("keeper",))
        for op in ops:
            try:
                apply_operation(loan, op)
                note(f"applied {op}")
            except (LedgerError, ValueError) as e:
                note(f"failed {op}: {e}")
            assert_conserved(ledger)
            assert loan.held_balance >= 0
            assert all(ledger.get_balance(p, ETH) >= 0 for p in PARTIES)

    @given(st.lists(operations, min_size=1, max_size=25))
    @settings(max_examples=60)
    def test_status_only_moves_forward(self, ops):
        order = [
            LoanStatus.INITIATED, LoanStatus.REPAID,
            LoanStatus.AUCTION_ACTIVE, LoanStatus.AUCTION_ENDED,
        ]
        ledger, registry, loan = build_active_loan(holders=("keeper",))
        seen = [loan.status]
        for op in ops:
            try:
                apply_operation(loan, op)
            except (LedgerError, ValueError):
                pass
            if loan.status != seen[-1]:
                seen.append(loan.status)
        assert seen in (
            order[:1], order[:2],
            [order[0], order[2]], [order[0], order[2], order[3]],
        )

"""
test_reentrancy.py - Payees calling back into loans and bundles mid-payout

Receive hooks run after the paying transaction is applied. Each test installs
a hook that re-invokes an operation from inside the payout and checks that it
observes the updated state and cannot be paid twice.
"""

from decimal import Decimal

from loanpool import (
    LoanError, NoShares, AlreadyInitiated, AuctionEnded, AlreadyRepaid,
)


def _reentering_hook(unit, action, attempts):
    """Hook calling action() once per credit of unit, recording the outcome."""
    def hook(ledger, move):
        if move.unit_symbol != unit:
            return
        try:
            attempts.append(action())
        except LoanError as e:
            attempts.append(e.kind)
    return hook


class TestClaimReentrancy:
    """A claimant re-invoking claim_payment from inside its payout."""

    def test_no_double_payment(self, ledger, repaid_loan):
        attempts = []
        ledger.set_receive_hook(
            "lender", _reentering_hook("ETH", lambda: repaid_loan.claim_payment("lender"), attempts)
        )
        assert repaid_loan.claim_payment("lender") == Decimal("15.4")
        assert attempts == [NoShares.kind]
        assert ledger.get_balance("lender", "ETH") == Decimal("1005.4")
        assert repaid_loan.held_balance == Decimal("0")

    def test_hook_sees_burned_shares_and_reduced_pool(self, ledger, repaid_loan):
        repaid_loan.shares.transfer("lender", "alice", 50_000_000)
        observed = []

        def hook(ledger, move):
            if move.unit_symbol == "ETH":
                observed.append((repaid_loan.balance_of("alice"), repaid_loan.held_balance))

        ledger.set_receive_hook("alice", hook)
        repaid_loan.claim_payment("alice")
        assert observed == [(Decimal("0"), Decimal("7.7"))]

    def test_other_holder_claims_mid_payout(self, ledger, repaid_loan):
        repaid_loan.shares.transfer("lender", "alice", 25_000_000)
        attempts = []
        ledger.set_receive_hook(
            "alice", _reentering_hook("ETH", lambda: repaid_loan.claim_payment("lender"), attempts)
        )
        assert repaid_loan.claim_payment("alice") == Decimal("3.85")
        assert attempts == [Decimal("11.55")]
        assert repaid_loan.held_balance == Decimal("0")


class TestLifecycleReentrancy:
    """Borrower and bidder calling back during their payouts."""

    def test_borrower_reinitiates_during_disbursement(self, ledger, registry, funded_loan):
        attempts = []
        ledger.set_receive_hook(
            "borrower", _reentering_hook("ETH", lambda: funded_loan.initiate_loan("borrower"), attempts)
        )
        registry.set_approval_for_all("borrower", funded_loan.wallet, True)
        funded_loan.initiate_loan("borrower")
        assert attempts == [AlreadyInitiated.kind]
        assert ledger.get_balance("borrower", "ETH") == Decimal("1010")

    def test_borrower_repays_again_on_collateral_return(self, ledger, active_loan):
        attempts = []
        ledger.set_receive_hook(
            "borrower",
            _reentering_hook("NFT#6", lambda: active_loan.repay("borrower", Decimal("15.4")), attempts),
        )
        active_loan.repay("borrower", Decimal("15.4"))
        assert attempts == [AlreadyRepaid.kind]
        assert active_loan.held_balance == Decimal("15.4")

    def test_bidder_rebids_during_refund(self, ledger, auction_loan, registry):
        attempts = []
        ledger.set_receive_hook(
            "buyer",
            _reentering_hook(
                "ETH", lambda: auction_loan.buy_collateral_during_auction("buyer", Decimal("12")), attempts
            ),
        )
        auction_loan.buy_collateral_during_auction("buyer", Decimal("15"))
        assert attempts == [AuctionEnded.kind]
        assert registry.owner_of(6) == "buyer"
        assert ledger.get_balance("buyer", "ETH") == Decimal("988")


class TestBundleReentrancy:
    """A bundle wallet hook pulling again while a pull is being paid."""

    def test_repull_during_pull(self, ledger, make_settled_loan, make_bundle):
        loan = make_settled_loan()
        bundle = make_bundle([loan])
        loan.shares.transfer("lender", bundle.wallet, 1_000_000)
        attempts = []
        ledger.set_receive_hook(
            bundle.wallet,
            _reentering_hook("ETH", lambda: bundle.claim_payment_for_contract("keeper", 0), attempts),
        )
        assert bundle.claim_payment_for_contract("keeper", 0) == Decimal("15.4")
        assert attempts == [NoShares.kind]
        assert bundle.pulled_total == Decimal("15.4")
        assert bundle.held_balance == Decimal("15.4")

    def test_failing_hook_still_records_pull(self, ledger, make_settled_loan, make_bundle):
        loan = make_settled_loan()
        bundle = make_bundle([loan])
        loan.shares.transfer("lender", bundle.wallet, 1_000_000)

        def reverting(ledger, move):
            raise RuntimeError("bundle payee reverted")

        ledger.set_receive_hook(bundle.wallet, reverting)
        assert bundle.claim_payment_for_contract("keeper", 0) == Decimal("15.4")
        assert bundle.held_balance == bundle.pulled_total == Decimal("15.4")
        assert loan.balance_of(bundle.wallet) == Decimal("0")
        assert [e.name for e in bundle.events()][-1] == "PULLED"

#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: A Collateralized Loan, Step by Step

Walks one loan through funding, initiation and repayment, a second loan
through default and a Dutch auction, then pools the second in a bundle. Press
Enter to advance.

WHAT YOU'LL LEARN:
  1-3:  Loans     - Term sheet, funding for shares, custody and disbursement
  4-5:  Repayment - Collateral returned, holders claim pro rata
  6-7:  Default   - Expiry, the decaying auction price, bidding and refunds
  8:    Bundles   - Pulling member proceeds and redistributing them

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from decimal import Decimal
import sys

from loanpool import (
    Ledger, Move, build_transaction, cash, SYSTEM_WALLET,
    CollateralRegistry, LoanEngine, LoanBundle,
    CustodyNotAuthorized, InsufficientBid,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    principal: Decimal = Decimal("10")
    total_repayment: Decimal = Decimal("15.4")
    auction_start_price: Decimal = Decimal("12")
    auction_price_drop_per_tick: Decimal = Decimal("0.00023")
    expiry_tick: int = 1000
    share_supply: int = 100
    initial_eth: Decimal = Decimal("100")


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv

PARTICIPANTS = ("lender", "borrower", "bidder", "alice", "bob")


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    """Print a section header within a step."""
    print(f"\n--- {text} ---\n")


def show_balances(ledger: Ledger, wallets):
    for wallet in wallets:
        print(f"  {wallet:<14} {ledger.get_balance(wallet, 'ETH'):>12} ETH")


def make_loan(ledger: Ledger, registry: CollateralRegistry, symbol: str, item_id: int) -> LoanEngine:
    return LoanEngine.create(
        ledger, registry, f"LOAN-{symbol}", symbol,
        share_decimals=0, share_supply=CONFIG.share_supply,
        collateral_id=item_id, expiry_tick=CONFIG.expiry_tick, borrower="borrower",
        principal=CONFIG.principal, total_repayment=CONFIG.total_repayment,
        auction_start_price=CONFIG.auction_start_price,
        auction_price_drop_per_tick=CONFIG.auction_price_drop_per_tick,
        currency="ETH",
    )


# ============================================================================
# PHASE 1: LOANS (Steps 1-3)
# ============================================================================

def step_01_setup():
    """Create the ledger, the currency and the collateral."""
    step_header(1, "Ledger, Currency and Collateral",
        "See that money and collateral are both just units in one ledger.")

    ledger = Ledger("tutorial")
    ledger.register_unit(cash("ETH", "Ether", decimal_places=18))
    for wallet in PARTICIPANTS:
        ledger.register_wallet(wallet)
        pending = build_transaction(ledger, [
            Move(CONFIG.initial_eth, "ETH", SYSTEM_WALLET, wallet, f"faucet_{wallet}")
        ])
        ledger.execute(pending)

    registry = CollateralRegistry(ledger, "NFT")
    registry.mint(6, "borrower")
    registry.mint(7, "borrower")

    print(f"Units:        {ledger.list_units()}")
    print(f"Owner of #6:  {registry.owner_of(6)}")
    section_header("Balances")
    show_balances(ledger, PARTICIPANTS)
    return ledger, registry


def step_02_fund(ledger: Ledger, registry: CollateralRegistry):
    """Create a loan and fund it with exactly the principal."""
    step_header(2, "Funding",
        "The lender deposits the exact principal and receives every share.")

    loan = make_loan(ledger, registry, "LA1", 6)
    print(f">>> loan.fund_loan('lender', {CONFIG.principal})")
    loan.fund_loan("lender", CONFIG.principal)

    print(f"Status:          {loan.status.value}")
    print(f"Held balance:    {loan.held_balance} ETH")
    print(f"Lender shares:   {loan.balance_of('lender')} of {loan.total_supply()}")
    return loan


def step_03_initiate(ledger: Ledger, registry: CollateralRegistry, loan: LoanEngine):
    """Take custody of the collateral and pay out the principal."""
    step_header(3, "Initiation",
        "Custody and disbursement happen in one transaction, or not at all.")

    section_header("Without approval")
    try:
        loan.initiate_loan("borrower")
    except CustodyNotAuthorized as e:
        print(f"Rejected: {e}")

    section_header("With approval")
    registry.set_approval_for_all("borrower", loan.wallet, True)
    loan.initiate_loan("borrower")
    print(f"Owner of #6:     {registry.owner_of(6)}")
    print(f"Status:          {loan.status.value}")
    show_balances(ledger, ("lender", "borrower"))


# ============================================================================
# PHASE 2: REPAYMENT (Steps 4-5)
# ============================================================================

def step_04_repay(ledger: Ledger, registry: CollateralRegistry, loan: LoanEngine):
    """Repay and take the collateral back."""
    step_header(4, "Repayment",
        "The borrower pays the total repayment and the collateral comes home.")

    loan.shares.transfer("lender", "alice", 25)
    print("Lender sold 25 shares to alice before repayment.")
    loan.repay("borrower", CONFIG.total_repayment)
    print(f"Owner of #6:     {registry.owner_of(6)}")
    print(f"Held balance:    {loan.held_balance} ETH")


def step_05_claims(ledger: Ledger, loan: LoanEngine):
    """Holders claim their share of the pool."""
    step_header(5, "Claims",
        "Each claim is pro rata against what remains; the last holder empties the pool.")

    for holder in ("alice", "lender"):
        paid = loan.claim_payment(holder)
        print(f"  {holder:<8} claimed {paid} ETH (pool now {loan.held_balance})")
    print(f"\nDrained: {loan.is_drained}")


# ============================================================================
# PHASE 3: DEFAULT (Steps 6-7)
# ============================================================================

def step_06_expiry(ledger: Ledger, registry: CollateralRegistry):
    """A loan that is not repaid by expiry."""
    step_header(6, "Expiry and Auction",
        "After expiry anyone may start a Dutch auction of the collateral.")

    loan = make_loan(ledger, registry, "LA2", 7)
    loan.fund_loan("bob", CONFIG.principal)
    registry.set_approval_for_all("borrower", loan.wallet, True)
    loan.initiate_loan("bob")

    ledger.advance_to(CONFIG.expiry_tick)
    loan.initiate_collateral_auction("bidder")
    print(f"Tick {ledger.current_tick}: price {loan.get_price()}")
    for ticks in (3, 100, 1000):
        ledger.advance_tick(ticks)
        print(f"Tick {ledger.current_tick}: price {loan.get_price()}")
    return loan


def step_07_bid(ledger: Ledger, registry: CollateralRegistry, loan: LoanEngine):
    """Bid below, then above, the current price."""
    step_header(7, "Bidding",
        "Underbids are rejected; overbids clear at the current price with a refund.")

    price = loan.get_price()
    try:
        loan.buy_collateral_during_auction("bidder", price - Decimal("0.01"))
    except InsufficientBid as e:
        print(f"Rejected: {e}")

    before = ledger.get_balance("bidder", "ETH")
    loan.buy_collateral_during_auction("bidder", Decimal("20"))
    print(f"Cleared at {loan.clearing_price}; bidder paid {before - ledger.get_balance('bidder', 'ETH')}")
    print(f"Owner of #7:     {registry.owner_of(7)}")


# ============================================================================
# PHASE 4: BUNDLES (Step 8)
# ============================================================================

def step_08_bundle(ledger: Ledger, loan: LoanEngine):
    """Pool a loan's shares in a bundle and redistribute."""
    step_header(8, "Bundles",
        "A bundle is a claims pool whose assets are shares of other loans.")

    bundle = LoanBundle.create(
        ledger, "BUNDLE-1", "BND1", share_decimals=0, loans=[loan],
        share_supply=10, creator="alice", currency="ETH",
    )
    loan.shares.transfer("bob", bundle.wallet, CONFIG.share_supply)
    bundle.shares.transfer("alice", "bob", 4)

    pulled = bundle.claim_all_payments("alice")
    print(f"Pulled from members: {pulled} ETH")
    for holder in ("bob", "alice"):
        print(f"  {holder:<8} claimed {bundle.claim_payment(holder)} ETH")

    section_header("Conservation")
    result = ledger.verify_double_entry({symbol: Decimal("0") for symbol in ledger.list_units()})
    print(f"Every unit sums to zero: {result['valid']}")


def main():
    """Run the complete tutorial."""
    print("=" * 70)
    print("       LOANPOOL - INTERACTIVE TUTORIAL")
    print("=" * 70)

    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")

    wait_for_enter()

    ledger, registry = step_01_setup()
    wait_for_enter()

    loan = step_02_fund(ledger, registry)
    wait_for_enter()

    step_03_initiate(ledger, registry, loan)
    wait_for_enter()

    step_04_repay(ledger, registry, loan)
    wait_for_enter()

    step_05_claims(ledger, loan)
    wait_for_enter()

    defaulted = step_06_expiry(ledger, registry)
    wait_for_enter()

    step_07_bid(ledger, registry, defaulted)
    wait_for_enter()

    step_08_bundle(ledger, defaulted)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    Next steps:
      - See loanpool/loan.py for the loan state machine
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()

"""
conftest.py - Shared pytest fixtures for loanpool tests

Provides common fixtures used across unit, functional and conformance tests:
- A ledger with an 18-decimal currency and funded participant wallets
- A collateral registry with the borrower's item already minted
- A loan factory with the reference term sheet, plus loans at each stage
- Settled-loan and bundle factories
"""

import pytest
from decimal import Decimal

from loanpool import Ledger, cash, CollateralRegistry, LoanEngine, LoanBundle

from tests.helpers import ETH, issue, settle_by_repayment


COLLATERAL_ID = 6

PARTICIPANTS = ("lender", "borrower", "buyer", "alice", "bob", "carol", "keeper")

DEFAULT_TERMS = dict(
    name="LOAN-A1",
    symbol="LA1",
    share_decimals=6,
    share_supply=100_000_000,
    collateral_id=COLLATERAL_ID,
    expiry_tick=1000,
    borrower="borrower",
    principal=Decimal("10"),
    total_repayment=Decimal("15.4"),
    auction_start_price=Decimal("12"),
    auction_price_drop_per_tick=Decimal("0.00023"),
    currency=ETH,
)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def ledger():
    """Ledger with ETH (18 decimals) and funded participant wallets."""
    ledger = Ledger("test", verbose=False, test_mode=True)
    ledger.register_unit(cash(ETH, "Ether", decimal_places=18))
    for wallet in PARTICIPANTS:
        ledger.register_wallet(wallet)
        issue(ledger, wallet, Decimal("1000"))
    return ledger


@pytest.fixture
def registry(ledger):
    """Collateral registry with item 6 held by the borrower."""
    registry = CollateralRegistry(ledger, "NFT")
    registry.mint(COLLATERAL_ID, "borrower")
    return registry


@pytest.fixture
def make_loan(ledger, registry):
    """Factory creating loans from the reference terms with overrides."""
    def _make(**overrides) -> LoanEngine:
        terms = {**DEFAULT_TERMS, **overrides}
        return LoanEngine.create(ledger, registry, **terms)
    return _make


@pytest.fixture
def loan(make_loan):
    """Created, unfunded loan."""
    return make_loan()


@pytest.fixture
def funded_loan(loan):
    """Loan funded by the lender."""
    loan.fund_loan("lender", Decimal("10"))
    return loan


@pytest.fixture
def active_loan(funded_loan, registry):
    """Loan with the collateral in custody and the principal paid out."""
    registry.set_approval_for_all("borrower", funded_loan.wallet, True)
    funded_loan.initiate_loan("keeper")
    return funded_loan


@pytest.fixture
def repaid_loan(active_loan):
    """Loan repaid with exactly the total repayment."""
    active_loan.repay("borrower", Decimal("15.4"))
    return active_loan


@pytest.fixture
def auction_loan(active_loan, ledger):
    """Expired loan with its collateral auction started at tick 1000."""
    ledger.advance_to(1000)
    active_loan.initiate_collateral_auction("keeper")
    return active_loan


@pytest.fixture
def make_settled_loan(ledger):
    """
    Factory for loans repaid in full, each backed by a freshly minted item.

    Each loan is funded by 'lender' and repaid by its own borrower wallet.
    """
    registry = CollateralRegistry(ledger, "BUNDLED")
    counter = {'n': 0}

    def _make(principal=Decimal("10"), repayment=Decimal("15.4")) -> LoanEngine:
        counter['n'] += 1
        n = counter['n']
        borrower = f"borrower{n}"
        ledger.register_wallet(borrower)
        issue(ledger, borrower, Decimal("100"))
        registry.mint(n, borrower)
        loan = LoanEngine.create(
            ledger, registry, f"LOAN-{n}", f"L{n}",
            share_decimals=6, share_supply=1_000_000,
            collateral_id=n, expiry_tick=1000, borrower=borrower,
            principal=principal, total_repayment=repayment,
            auction_start_price=Decimal("12"),
            auction_price_drop_per_tick=Decimal("0.00023"),
            currency=ETH,
        )
        settle_by_repayment(loan, registry, repayment)
        return loan
    return _make


@pytest.fixture
def make_bundle(ledger):
    """Factory creating a bundle issued to 'alice' over the given loans."""
    def _make(loans, symbol="BND1", share_supply=1_000_000) -> LoanBundle:
        return LoanBundle.create(
            ledger, f"BUNDLE-{symbol}", symbol, share_decimals=6,
            loans=loans, share_supply=share_supply, creator="alice", currency=ETH,
        )
    return _make

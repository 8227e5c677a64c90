"""
helpers.py - Shared test helpers for loanpool tests

Issuance, conservation checks and lifecycle shortcuts used by fixtures and
by tests that build their own ledgers.
"""

from decimal import Decimal
from typing import Dict

from loanpool import (
    Ledger, Move, ExecuteResult, build_transaction, cash,
    CollateralRegistry, LoanEngine,
    SYSTEM_WALLET,
)


ETH = "ETH"


def issue(ledger: Ledger, wallet: str, amount, currency: str = ETH) -> None:
    """Issue currency to a wallet from the system wallet."""
    pending = build_transaction(ledger, [
        Move(Decimal(str(amount)), currency, SYSTEM_WALLET, wallet,
             f"issue_{ledger.next_sequence}")
    ])
    assert ledger.execute(pending) == ExecuteResult.APPLIED


def balances_snapshot(ledger: Ledger) -> Dict[str, Dict[str, Decimal]]:
    """Copy of every non-zero balance, keyed by wallet then unit."""
    return {
        wallet: {unit: qty for unit, qty in ledger.get_wallet_balances(wallet).items() if qty != 0}
        for wallet in sorted(ledger.list_wallets())
    }


def assert_conserved(ledger: Ledger) -> None:
    """Every unit sums to zero across all wallets, system included."""
    result = ledger.verify_double_entry(
        {symbol: Decimal("0") for symbol in ledger.list_units()}
    )
    assert result['valid'], result['discrepancies']


def settle_by_repayment(loan: LoanEngine, registry: CollateralRegistry, amount=Decimal("15.4")) -> None:
    """Drive a created loan through funding, initiation and repayment."""
    settle_to_initiated(loan, registry)
    loan.repay(loan.borrower, amount)



def build_active_loan(share_supply: int = 100, holders=(), funds=Decimal("1000")):
    """
    Fresh ledger with one initiated loan of 10 ETH repaying 15.4 ETH.

    For property tests, which cannot share function-scoped fixtures.
    The lender holds every share; holders are registered and funded.

    Returns:
        (ledger, registry, loan)
    """
    ledger = Ledger("property", verbose=False, test_mode=True)
    ledger.register_unit(cash(ETH, "Ether", decimal_places=18))
    for wallet in ("lender", "borrower", "buyer", *holders):
        ledger.register_wallet(wallet)
        issue(ledger, wallet, funds)
    registry = CollateralRegistry(ledger, "NFT")
    registry.mint(6, "borrower")
    loan = LoanEngine.create(
        ledger, registry, "LOAN-P", "LP",
        share_decimals=0, share_supply=share_supply,
        collateral_id=6, expiry_tick=1000, borrower="borrower",
        principal=Decimal("10"), total_repayment=Decimal("15.4"),
        auction_start_price=Decimal("12"),
        auction_price_drop_per_tick=Decimal("0.00023"),
        currency=ETH,
    )
    settle_to_initiated(loan, registry)
    return ledger, registry, loan


def settle_to_initiated(loan: LoanEngine, registry: CollateralRegistry) -> None:
    """Fund a created loan from 'lender' and take its collateral into custody."""
    loan.fund_loan("lender", loan.principal)
    registry.set_approval_for_all(loan.borrower, loan.wallet, True)
    loan.initiate_loan(loan.borrower)

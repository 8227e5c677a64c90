"""
loanpool - Collateralized Loans and Loan Bundles on a Double-Entry Ledger

Loans are funded by a lender, secured by a uniquely identified collateral
item, and settle either by repayment or by a Dutch auction of the
collateral. Proceeds are claimed pro rata by share holders. Bundles hold
shares of several loans and pass their proceeds on to their own holders.

Usage:
    from decimal import Decimal
    from loanpool import Ledger, CollateralRegistry, LoanEngine, cash, SYSTEM_WALLET

    ledger = Ledger("main")
    ledger.register_unit(cash("ETH", "Ether", decimal_places=18))
    for wallet in ("lender", "borrower"):
        ledger.register_wallet(wallet)

    registry = CollateralRegistry(ledger, "NFT")
    registry.mint(6, "borrower")

    loan = LoanEngine.create(
        ledger, registry, "LOAN-A1", "LA1",
        share_decimals=6, share_supply=100_000_000,
        collateral_id=6, expiry_tick=1000, borrower="borrower",
        principal="10", total_repayment="15.4",
        auction_start_price="12", auction_price_drop_per_tick="0.00023",
        currency="ETH",
    )
    loan.fund_loan("lender", Decimal("10"))
    registry.set_approval_for_all("borrower", loan.wallet, True)
    loan.initiate_loan("borrower")
    loan.repay("borrower", Decimal("15.4"))
    loan.claim_payment("lender")
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    to_decimal,
    cash,
    SYSTEM_WALLET,
    UNIT_TYPE_CASH,
    UNIT_TYPE_COLLATERAL,
    UNIT_TYPE_LOAN_SHARE,
    UNIT_TYPE_BUNDLE_SHARE,
    # Exceptions
    LedgerError,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    TransactionRejected,
    LoanError,
    AlreadyFunded,
    WrongAmount,
    Unfunded,
    AlreadyInitiated,
    NotInitiated,
    NotBorrower,
    CustodyNotAuthorized,
    AlreadyRepaid,
    NotEnded,
    AlreadyPaid,
    AlreadyAuctioning,
    AuctionNotStarted,
    AuctionEnded,
    InsufficientBid,
    NothingToClaim,
    NoShares,
)

# Ledger
from .ledger import Ledger

# Custody
from .custody import (
    CustodyRegistry,
    CollateralRegistry,
)

# Shares
from .shares import (
    ShareLedger,
    create_share_unit,
    outstanding_supply,
)

# Settlement
from .settlement import (
    ClaimPool,
    PoolEvent,
    compute_pro_rata_payout,
    build_claim_transaction,
    pool_wallet_id,
)

# Loans
from .loan import (
    LoanEngine,
    LoanTerms,
    LoanStatus,
    ALLOWED_TRANSITIONS,
    compute_auction_price,
    load_loan,
)

# Bundles
from .bundle import LoanBundle


__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType', 'build_transaction',
    'Unit', 'UnitStateChange', 'ExecuteResult', 'to_decimal', 'cash',
    'SYSTEM_WALLET', 'UNIT_TYPE_CASH', 'UNIT_TYPE_COLLATERAL',
    'UNIT_TYPE_LOAN_SHARE', 'UNIT_TYPE_BUNDLE_SHARE',
    # Exceptions
    'LedgerError', 'TransferRuleViolation', 'UnitNotRegistered',
    'WalletNotRegistered', 'TransactionRejected',
    'LoanError', 'AlreadyFunded', 'WrongAmount', 'Unfunded', 'AlreadyInitiated',
    'NotInitiated', 'NotBorrower', 'CustodyNotAuthorized', 'AlreadyRepaid',
    'NotEnded', 'AlreadyPaid', 'AlreadyAuctioning', 'AuctionNotStarted',
    'AuctionEnded', 'InsufficientBid', 'NothingToClaim', 'NoShares',
    # Ledger
    'Ledger',
    # Custody
    'CustodyRegistry', 'CollateralRegistry',
    # Shares
    'ShareLedger', 'create_share_unit', 'outstanding_supply',
    # Settlement
    'ClaimPool', 'PoolEvent', 'compute_pro_rata_payout',
    'build_claim_transaction', 'pool_wallet_id',
    # Loans
    'LoanEngine', 'LoanTerms', 'LoanStatus', 'ALLOWED_TRANSITIONS',
    'compute_auction_price', 'load_loan',
    # Bundles
    'LoanBundle',
]

__version__ = '1.0.0'

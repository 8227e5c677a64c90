"""
loan.py - Collateralized Loan with Dutch-Auction Liquidation

=== LOAN MODEL ===

A loan is a share unit plus a pool wallet. The unit's state holds the term
sheet and the lifecycle status; the wallet holds the loan's funds and, while
the loan is open, the collateral item.

    Created ──fund_loan──> Funded ──initiate_loan──> Initiated
    Initiated ──repay──> Repaid
    Initiated ──initiate_collateral_auction (tick >= expiry)──> AuctionActive
    AuctionActive ──buy_collateral_during_auction──> AuctionEnded
    Repaid | AuctionEnded ──claim_payment (0..n)──> drained

Moves per operation (one atomic transaction each):

    fund_loan:       principal lender -> pool; whole share supply system -> lender
    initiate_loan:   collateral borrower -> pool; principal pool -> borrower
    repay:           payment borrower -> pool; collateral pool -> borrower
    buy_collateral:  bid buyer -> pool; excess pool -> buyer; collateral pool -> buyer
    claim_payment:   shares holder -> system; pro-rata payout pool -> holder

=== AUCTION PRICE ===

    price(t) = max(0, start_price - drop_per_tick * (t - auction_start_tick))

computed on read from the ledger tick; nothing updates it in the background.

=== ORDERING ===

State changes travel in the same transaction as the moves, and receive hooks
(the payout side) run only after the ledger applied it. A payee that calls
back into the loan sees the new status and its burned shares.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from enum import Enum
import logging
from typing import Any, Dict, List, Optional, Tuple

from .core import (
    LedgerView, Move, UnitStateChange, TransactionOrigin, UnitState,
    AlreadyFunded, WrongAmount, Unfunded, AlreadyInitiated, NotInitiated,
    NotBorrower, AlreadyRepaid, NotEnded, AlreadyPaid, AlreadyAuctioning,
    AuctionNotStarted, AuctionEnded, InsufficientBid, NothingToClaim,
    build_transaction, to_decimal,
    UNIT_TYPE_LOAN_SHARE,
)
from .custody import CustodyRegistry
from .ledger import Ledger
from .settlement import ClaimPool, pool_wallet_id
from .shares import create_share_unit


logger = logging.getLogger(__name__)


# =============================================================================
# EVENTS
# =============================================================================

EVENT_FUNDED = "FUNDED"
EVENT_INITIATED = "INITIATED"
EVENT_REPAID = "REPAID"
EVENT_AUCTION_STARTED = "AUCTION_STARTED"
EVENT_AUCTION_ENDED = "AUCTION_ENDED"


# =============================================================================
# STATUS
# =============================================================================

class LoanStatus(str, Enum):
    """Lifecycle status of a loan."""
    CREATED = "created"                 # Deployed, waiting for the lender
    FUNDED = "funded"                   # Principal held, shares issued
    INITIATED = "initiated"             # Collateral in custody, borrower paid
    REPAID = "repaid"                   # Repayment held, collateral returned
    AUCTION_ACTIVE = "auction_active"   # Expired unpaid, price decaying
    AUCTION_ENDED = "auction_ended"     # Collateral sold, proceeds held


ALLOWED_TRANSITIONS: Dict[LoanStatus, Tuple[LoanStatus, ...]] = {
    LoanStatus.CREATED: (LoanStatus.FUNDED,),
    LoanStatus.FUNDED: (LoanStatus.INITIATED,),
    LoanStatus.INITIATED: (LoanStatus.REPAID, LoanStatus.AUCTION_ACTIVE),
    LoanStatus.REPAID: (),
    LoanStatus.AUCTION_ACTIVE: (LoanStatus.AUCTION_ENDED,),
    LoanStatus.AUCTION_ENDED: (),
}

SETTLED_STATUSES = (LoanStatus.REPAID, LoanStatus.AUCTION_ENDED)


def transition(current: LoanStatus, target: LoanStatus) -> LoanStatus:
    """
    Validate a lifecycle transition against ALLOWED_TRANSITIONS.

    Raises:
        ValueError: If target is not reachable from current in one step
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise ValueError(f"illegal loan transition {current.value} -> {target.value}")
    return target


# =============================================================================
# TERMS
# =============================================================================

@dataclass(frozen=True)
class LoanTerms:
    """
    Immutable term sheet of a loan.

    total_repayment >= principal is the caller's responsibility and is not
    checked.
    """
    collateral_id: int
    expiry_tick: int
    borrower: str
    principal: Decimal
    total_repayment: Decimal
    auction_start_price: Decimal
    auction_price_drop_per_tick: Decimal
    currency: str

    def __post_init__(self):
        if not self.borrower or not self.borrower.strip():
            raise ValueError("borrower cannot be empty")
        if not self.currency or not self.currency.strip():
            raise ValueError("currency cannot be empty")
        if self.expiry_tick < 0:
            raise ValueError(f"expiry_tick cannot be negative, got {self.expiry_tick}")
        for field_name in ('principal', 'total_repayment', 'auction_start_price',
                           'auction_price_drop_per_tick'):
            value = getattr(self, field_name)
            if not isinstance(value, Decimal):
                raise ValueError(f"{field_name} must be Decimal, got {type(value)}")
            if not value.is_finite() or value < 0:
                raise ValueError(f"{field_name} must be finite and non-negative, got {value}")


def to_state_dict(terms: LoanTerms, collection: Optional[str]) -> Dict[str, Any]:
    """Initial unit state for a freshly created loan."""
    return {
        'collateral_collection': collection,
        'collateral_id': terms.collateral_id,
        'expiry_tick': terms.expiry_tick,
        'borrower': terms.borrower,
        'principal': terms.principal,
        'total_repayment': terms.total_repayment,
        'auction_start_price': terms.auction_start_price,
        'auction_price_drop_per_tick': terms.auction_price_drop_per_tick,
        'currency': terms.currency,
        'status': LoanStatus.CREATED.value,
        'lender': None,
        'auction_start_tick': None,
        'buyer': None,
        'clearing_price': None,
        'repaid_amount': None,
    }


def load_loan(view: LedgerView, symbol: str) -> Tuple[LoanTerms, UnitState]:
    """Read a loan's terms and full state from the ledger."""
    state = view.get_unit_state(symbol)
    terms = LoanTerms(
        collateral_id=state['collateral_id'],
        expiry_tick=state['expiry_tick'],
        borrower=state['borrower'],
        principal=state['principal'],
        total_repayment=state['total_repayment'],
        auction_start_price=state['auction_start_price'],
        auction_price_drop_per_tick=state['auction_price_drop_per_tick'],
        currency=state['currency'],
    )
    return terms, state


# =============================================================================
# PURE FUNCTIONS
# =============================================================================

def compute_auction_price(
    start_price: Decimal,
    drop_per_tick: Decimal,
    start_tick: int,
    current_tick: int,
    decimal_places: Optional[int] = None,
) -> Decimal:
    """
    Linear Dutch-auction price, floored at zero.

    Args:
        start_price: Price at the tick the auction started
        drop_per_tick: Price reduction per elapsed tick
        start_tick: Tick the auction started
        current_tick: Tick to price at
        decimal_places: Truncate to this currency precision if given

    Returns:
        max(0, start_price - drop_per_tick * (current_tick - start_tick))

    Example:
        compute_auction_price(Decimal("12"), Decimal("0.00023"), 100, 103)
        # Decimal("11.99931")
    """
    elapsed = current_tick - start_tick
    if elapsed < 0:
        raise ValueError(f"current_tick {current_tick} precedes auction start {start_tick}")
    price = start_price - drop_per_tick * elapsed
    if price <= 0:
        return Decimal("0")
    if decimal_places is not None:
        price = price.quantize(Decimal(10) ** -decimal_places, rounding=ROUND_DOWN)
    return price


# =============================================================================
# LOAN ENGINE
# =============================================================================

class LoanEngine(ClaimPool):
    """
    One collateralized loan.

    Example:
        loan = LoanEngine.create(
            ledger, registry, "LOAN-A1", "LA1",
            share_decimals=6, share_supply=100_000_000,
            collateral_id=6, expiry_tick=1000, borrower="borrower",
            principal=Decimal("10"), total_repayment=Decimal("15.4"),
            auction_start_price=Decimal("12"),
            auction_price_drop_per_tick=Decimal("0.00023"),
            currency="ETH",
        )
        loan.fund_loan("lender", Decimal("10"))
        registry.set_approval_for_all("borrower", loan.wallet, True)
        loan.initiate_loan("anyone")
        loan.repay("borrower", Decimal("15.4"))
        loan.claim_payment("lender")   # Decimal("15.4")
    """

    def __init__(self, ledger: Ledger, registry: CustodyRegistry, symbol: str):
        state = ledger.get_unit_state(symbol)
        if ledger.get_unit(symbol).unit_type != UNIT_TYPE_LOAN_SHARE:
            raise ValueError(f"{symbol} is not a loan")
        super().__init__(ledger, symbol, state['currency'])
        self.registry = registry

    @classmethod
    def create(
        cls,
        ledger: Ledger,
        registry: CustodyRegistry,
        name: str,
        symbol: str,
        share_decimals: int,
        share_supply: int,
        collateral_id: int,
        expiry_tick: int,
        borrower: str,
        principal: Any,
        total_repayment: Any,
        auction_start_price: Any,
        auction_price_drop_per_tick: Any,
        currency: str,
    ) -> LoanEngine:
        """
        Register a new loan: its pool wallet and its share unit.

        Raises:
            ValueError: On invalid terms, or amounts finer than the currency allows
            UnitNotRegistered: If currency is not a registered unit
        """
        terms = LoanTerms(
            collateral_id=collateral_id,
            expiry_tick=expiry_tick,
            borrower=borrower,
            principal=to_decimal(principal),
            total_repayment=to_decimal(total_repayment),
            auction_start_price=to_decimal(auction_start_price),
            auction_price_drop_per_tick=to_decimal(auction_price_drop_per_tick),
            currency=currency,
        )
        wallet = pool_wallet_id(symbol)
        if symbol in ledger.units or ledger.is_registered(wallet):
            raise ValueError(f"loan {symbol} already exists")
        currency_unit = ledger.get_unit(currency)
        for field_name in ('principal', 'total_repayment', 'auction_start_price'):
            value = getattr(terms, field_name)
            if currency_unit.round(value) != value:
                raise ValueError(
                    f"{field_name} {value} exceeds {currency} precision of "
                    f"{currency_unit.decimal_places} places"
                )

        ledger.register_unit(create_share_unit(
            symbol, name, share_decimals, share_supply, UNIT_TYPE_LOAN_SHARE,
            state=to_state_dict(terms, getattr(registry, 'collection', None)),
        ))
        ledger.register_wallet(wallet)
        logger.info(
            "%s: created loan of %s %s against %s, expiring at tick %d",
            symbol, terms.principal, currency, collateral_id, expiry_tick,
        )
        return cls(ledger, registry, symbol)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def terms(self) -> LoanTerms:
        return load_loan(self.ledger, self.symbol)[0]

    @property
    def status(self) -> LoanStatus:
        return LoanStatus(self.state['status'])

    @property
    def share_supply(self) -> int:
        return self.state['share_supply']

    @property
    def collateral_id(self) -> int:
        return self.state['collateral_id']

    @property
    def expiry_tick(self) -> int:
        return self.state['expiry_tick']

    @property
    def borrower(self) -> str:
        return self.state['borrower']

    @property
    def principal(self) -> Decimal:
        return self.state['principal']

    @property
    def total_repayment(self) -> Decimal:
        return self.state['total_repayment']

    @property
    def auction_start_price(self) -> Decimal:
        return self.state['auction_start_price']

    @property
    def auction_price_drop_per_tick(self) -> Decimal:
        return self.state['auction_price_drop_per_tick']

    @property
    def auction_start_tick(self) -> Optional[int]:
        return self.state['auction_start_tick']

    @property
    def lender(self) -> Optional[str]:
        return self.state['lender']

    @property
    def buyer(self) -> Optional[str]:
        return self.state['buyer']

    @property
    def clearing_price(self) -> Optional[Decimal]:
        return self.state['clearing_price']

    @property
    def funded(self) -> bool:
        return self.status != LoanStatus.CREATED

    @property
    def initiated(self) -> bool:
        return self.status not in (LoanStatus.CREATED, LoanStatus.FUNDED)

    @property
    def repaid(self) -> bool:
        return self.status == LoanStatus.REPAID

    @property
    def auction_ended(self) -> bool:
        return self.status == LoanStatus.AUCTION_ENDED

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def fund_loan(self, caller: str, amount: Any) -> None:
        """
        Deposit exactly the principal and receive the whole share supply.

        Raises:
            AlreadyFunded: If the loan was funded before
            WrongAmount: If amount differs from the principal in either direction
        """
        amount = to_decimal(amount)
        terms, state = load_loan(self.ledger, self.symbol)
        if LoanStatus(state['status']) != LoanStatus.CREATED:
            raise AlreadyFunded("loan already funded")
        if amount != terms.principal:
            raise WrongAmount("must send loan value when constructing loan contract")

        moves: List[Move] = []
        if amount > 0:
            moves.append(Move(amount, self.currency, caller, self.wallet, f"{self.symbol}_fund"))
        moves.append(self.shares.mint_all_move(caller))

        self._apply(moves, state, LoanStatus.FUNDED, {'lender': caller},
                    EVENT_FUNDED, lender=caller, amount=amount)

    def initiate_loan(self, caller: str) -> None:
        """
        Take custody of the collateral and pay the principal to the borrower.

        Anyone may call this once the loan is funded; the borrower must have
        authorized the loan's wallet with the collateral registry.

        Raises:
            Unfunded: If the loan is not funded
            AlreadyInitiated: If the loan was initiated before
            CustodyNotAuthorized: If the registry refuses the custody transfer
        """
        terms, state = load_loan(self.ledger, self.symbol)
        status = LoanStatus(state['status'])
        if status == LoanStatus.CREATED:
            raise Unfunded("loan unfunded")
        if status != LoanStatus.FUNDED:
            raise AlreadyInitiated("loan was already borrowed")

        moves = [self.registry.custody_move(
            terms.collateral_id, terms.borrower, self.wallet, operator=self.wallet
        )]
        if terms.principal > 0:
            moves.append(Move(
                terms.principal, self.currency, self.wallet, terms.borrower,
                f"{self.symbol}_disburse",
            ))

        self._apply(moves, state, LoanStatus.INITIATED, {},
                    EVENT_INITIATED, caller=caller, borrower=terms.borrower)

    def repay(self, caller: str, amount: Any) -> None:
        """
        Pay at least the total repayment and take the collateral back.

        Allowed before or after expiry as long as no auction has started.
        Overpayment is kept in the pool and distributed to share holders.

        Raises:
            Unfunded: If the loan is not funded
            NotInitiated: If the collateral was never taken into custody
            AlreadyRepaid: If the loan was repaid before
            AlreadyAuctioning: If an auction is running
            AuctionEnded: If the collateral was already sold
            NotBorrower: If caller is not the borrower
            WrongAmount: If amount is below the total repayment
        """
        amount = to_decimal(amount)
        terms, state = load_loan(self.ledger, self.symbol)
        status = LoanStatus(state['status'])
        if status == LoanStatus.CREATED:
            raise Unfunded("loan unfunded")
        if status == LoanStatus.FUNDED:
            raise NotInitiated("loan not yet borrowed")
        if status == LoanStatus.REPAID:
            raise AlreadyRepaid("loan already repaid")
        if status == LoanStatus.AUCTION_ACTIVE:
            raise AlreadyAuctioning("collateral auction in progress")
        if status == LoanStatus.AUCTION_ENDED:
            raise AuctionEnded("collateral already auctioned")
        if caller != terms.borrower:
            raise NotBorrower(f"{caller} is not the borrower")
        if amount < terms.total_repayment:
            raise WrongAmount(
                f"repayment {amount} below required {terms.total_repayment}"
            )

        moves: List[Move] = []
        if amount > 0:
            moves.append(Move(amount, self.currency, caller, self.wallet, f"{self.symbol}_repay"))
        moves.append(self.registry.custody_move(
            terms.collateral_id, self.wallet, terms.borrower, operator=self.wallet
        ))

        self._apply(moves, state, LoanStatus.REPAID,
                    {'repaid_amount': amount, 'repaid_tick': self.ledger.current_tick},
                    EVENT_REPAID, borrower=caller, amount=amount)

    reclaim_collateral = repay

    def initiate_collateral_auction(self, caller: str) -> None:
        """
        Start the Dutch auction of the collateral of an expired, unpaid loan.

        Raises:
            NotEnded: If the current tick is before expiry
            AlreadyPaid: If the loan was repaid
            AlreadyAuctioning: If an auction was started before
            NotInitiated: If the collateral was never taken into custody
        """
        terms, state = load_loan(self.ledger, self.symbol)
        status = LoanStatus(state['status'])
        now = self.ledger.current_tick
        if now < terms.expiry_tick:
            raise NotEnded(f"loan has not ended: tick {now} < expiry {terms.expiry_tick}")
        if status == LoanStatus.REPAID:
            raise AlreadyPaid("loan already paid")
        if status in (LoanStatus.AUCTION_ACTIVE, LoanStatus.AUCTION_ENDED):
            raise AlreadyAuctioning("auction already started")
        if status != LoanStatus.INITIATED:
            raise NotInitiated("no collateral in custody to auction")

        self._apply([], state, LoanStatus.AUCTION_ACTIVE, {'auction_start_tick': now},
                    EVENT_AUCTION_STARTED, caller=caller, start_tick=now)

    def get_price(self) -> Decimal:
        """
        Current auction price.

        Raises:
            AuctionNotStarted: If no auction was started
        """
        terms, state = load_loan(self.ledger, self.symbol)
        return self._price(terms, state)

    def _price(self, terms: LoanTerms, state: UnitState) -> Decimal:
        start_tick = state['auction_start_tick']
        if start_tick is None:
            raise AuctionNotStarted("auction not started")
        return compute_auction_price(
            terms.auction_start_price,
            terms.auction_price_drop_per_tick,
            start_tick,
            self.ledger.current_tick,
            self.ledger.get_unit(self.currency).decimal_places,
        )

    def buy_collateral_during_auction(self, caller: str, amount: Any) -> Decimal:
        """
        Bid for the collateral at the current auction price.

        The pool keeps the clearing price; anything above it is refunded to
        the caller in the same transaction.

        Returns:
            The clearing price

        Raises:
            AuctionNotStarted: If no auction was started
            AuctionEnded: If the collateral was already sold
            InsufficientBid: If amount is below the current price
        """
        amount = to_decimal(amount)
        terms, state = load_loan(self.ledger, self.symbol)
        status = LoanStatus(state['status'])
        if status == LoanStatus.AUCTION_ENDED:
            raise AuctionEnded("auction already ended")
        if status != LoanStatus.AUCTION_ACTIVE:
            raise AuctionNotStarted("auction not started")
        price = self._price(terms, state)
        if amount < price:
            raise InsufficientBid(f"bid {amount} below current price {price}")

        moves: List[Move] = []
        if amount > 0:
            moves.append(Move(amount, self.currency, caller, self.wallet, f"{self.symbol}_bid"))
        refund = amount - price
        if refund > 0:
            moves.append(Move(refund, self.currency, self.wallet, caller, f"{self.symbol}_refund"))
        moves.append(self.registry.custody_move(
            terms.collateral_id, self.wallet, caller, operator=self.wallet
        ))

        self._apply(moves, state, LoanStatus.AUCTION_ENDED,
                    {'buyer': caller, 'clearing_price': price,
                     'auction_end_tick': self.ledger.current_tick},
                    EVENT_AUCTION_ENDED, buyer=caller, price=price, refund=refund)
        return price

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_claimable(self, state: UnitState) -> None:
        if LoanStatus(state['status']) not in SETTLED_STATUSES:
            raise NothingToClaim("loan has not been repaid or auctioned")

    def _apply(
        self,
        moves: List[Move],
        state: UnitState,
        target: LoanStatus,
        updates: Dict[str, Any],
        event: str,
        **attributes: Any,
    ) -> None:
        current = LoanStatus(state['status'])
        new_state = {**state, **updates, 'status': transition(current, target).value}
        pending = build_transaction(
            self.ledger,
            moves,
            [UnitStateChange(self.symbol, state, new_state)],
            TransactionOrigin.event(self.symbol, event, self.symbol, **attributes),
        )
        self._submit(pending)
        logger.info("%s: %s -> %s", self.symbol, current.value, target.value)

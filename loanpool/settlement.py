"""
settlement.py - Share-Weighted Claim Settlement

=== PRO-RATA CLAIMS ===

A pool (a loan's held funds, or a bundle's pulled funds) is distributed to
share holders one claim at a time. Each claim is computed against what
remains:

    payout = floor(pool_balance * holder_shares / outstanding_shares)

in the currency's smallest unit. The claimant's whole share balance is then
burned and the pool shrinks by exactly the payout. Because both the pool and
the outstanding supply shrink together, every claimant receives an exact
pro-rata split of whatever is left, and the last holder to claim takes the
remainder: the pool reaches zero exactly when the supply does.

=== PURE FUNCTIONS ===

    compute_pro_rata_payout(pool, holder, outstanding, decimal_places) -> Decimal
    build_claim_transaction(view, ...) -> (PendingTransaction, payout)

=== ClaimPool ===

Base class for LoanEngine and LoanBundle: a ledger wallet holding the pool,
a ShareLedger over the pool's share unit, and the claim_payment() operation.
Subclasses decide when claims are open (_require_claimable).
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
import logging
from typing import Any, Dict, List, Optional, Tuple

from .core import (
    LedgerView, Move, PendingTransaction, UnitStateChange, TransactionOrigin,
    ExecuteResult, NoShares, TransactionRejected, UnitState,
    build_transaction,
)
from .ledger import Ledger
from .shares import ShareLedger, outstanding_supply, share_burn_move


logger = logging.getLogger(__name__)

EVENT_CLAIMED = "CLAIMED"


def pool_wallet_id(symbol: str) -> str:
    """Wallet that holds a pool's funds (and, for loans, the collateral in custody)."""
    return f"pool:{symbol}"


def compute_pro_rata_payout(
    pool_balance: Decimal,
    holder_shares: Decimal,
    outstanding_shares: Decimal,
    decimal_places: Optional[int],
) -> Decimal:
    """
    Compute a holder's share of a pool, truncated to the currency quantum.

    Args:
        pool_balance: Funds currently held by the pool
        holder_shares: Shares held by the claimant
        outstanding_shares: Shares not yet burned, claimant's included
        decimal_places: Currency precision; None for unrounded currencies

    Returns:
        floor(pool_balance * holder_shares / outstanding_shares), or 0 when
        there is nothing to split

    Raises:
        ValueError: If holder_shares exceeds outstanding_shares

    Example:
        compute_pro_rata_payout(Decimal("15.4"), Decimal(25), Decimal(100), 18)
        # Decimal("3.850000000000000000")
    """
    if holder_shares > outstanding_shares:
        raise ValueError(
            f"holder shares {holder_shares} exceed outstanding supply {outstanding_shares}"
        )
    if pool_balance <= 0 or holder_shares <= 0 or outstanding_shares <= 0:
        return Decimal("0")
    if holder_shares == outstanding_shares:
        return pool_balance

    if decimal_places is None:
        return pool_balance * holder_shares / outstanding_shares

    # Exact integer arithmetic in the smallest currency unit
    quantum = Decimal(10) ** -decimal_places
    pool_units = int((pool_balance / quantum).to_integral_value(rounding=ROUND_DOWN))
    payout_units = pool_units * int(holder_shares) // int(outstanding_shares)
    return (Decimal(payout_units) * quantum).quantize(quantum)


def build_claim_transaction(
    view: LedgerView,
    share_symbol: str,
    pool_wallet: str,
    currency: str,
    claimant: str,
    state: UnitState,
    event_source: Optional[str] = None,
) -> Tuple[PendingTransaction, Decimal]:
    """
    Build the claim of one holder against a pool.

    The transaction burns the claimant's entire share balance, pays the
    pro-rata payout from the pool wallet and bumps the claim counters in the
    pool's state, so a replay of the same claim is a stale-state rejection.

    Args:
        view: Read-only ledger access
        share_symbol: Share unit of the pool (also holds the pool state)
        pool_wallet: Wallet holding the pool's funds
        currency: Cash unit the pool is denominated in
        claimant: Wallet claiming
        state: Current state of the share unit
        event_source: Origin source id (defaults to share_symbol)

    Returns:
        (PendingTransaction, payout)

    Raises:
        NoShares: If the claimant holds no shares
    """
    holder_shares = view.get_balance(claimant, share_symbol)
    if holder_shares <= 0:
        raise NoShares(f"{claimant} holds no {share_symbol} shares")

    outstanding = outstanding_supply(view, share_symbol)
    pool_balance = view.get_balance(pool_wallet, currency)
    payout = compute_pro_rata_payout(
        pool_balance, holder_shares, outstanding, view.get_unit(currency).decimal_places
    )

    # Burn before paying
    moves = [share_burn_move(share_symbol, claimant, holder_shares)]
    if payout > 0:
        moves.append(Move(payout, currency, pool_wallet, claimant, f"{share_symbol}_claim_{claimant}"))

    new_state = {
        **state,
        'claim_count': state.get('claim_count', 0) + 1,
        'claimed_total': state.get('claimed_total', Decimal("0")) + payout,
        'claimed_shares': state.get('claimed_shares', Decimal("0")) + holder_shares,
    }
    origin = TransactionOrigin.event(
        event_source or share_symbol, EVENT_CLAIMED, share_symbol,
        party=claimant, amount=payout, shares=holder_shares,
    )
    pending = build_transaction(
        view, moves, [UnitStateChange(share_symbol, state, new_state)], origin
    )
    return pending, payout


@dataclass(frozen=True)
class PoolEvent:
    """An observable event read back from the ledger audit trail."""
    name: str
    tick: int
    sequence: int
    attributes: Dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, key: str) -> Any:
        return self.attributes[key]


class ClaimPool(ABC):
    """
    A share-weighted claims pool living in a Ledger.

    The pool's funds are the cash balance of its own wallet; its lifecycle
    state is the state of its share unit. Every operation is a single
    transaction, so state and funds never diverge.
    """

    def __init__(self, ledger: Ledger, symbol: str, currency: str):
        self.ledger = ledger
        self.symbol = symbol
        self.currency = currency
        self.wallet = pool_wallet_id(symbol)
        self.shares = ShareLedger(ledger, symbol)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> UnitState:
        return self.ledger.get_unit_state(self.symbol)

    @property
    def name(self) -> str:
        return self.ledger.get_unit(self.symbol).name

    @property
    def decimals(self) -> int:
        return self.state['share_decimals']

    @property
    def held_balance(self) -> Decimal:
        return self.ledger.get_balance(self.wallet, self.currency)

    def balance_of(self, party: str) -> Decimal:
        return self.shares.balance_of(party)

    def total_supply(self) -> Decimal:
        return self.shares.total_supply()

    @property
    def is_drained(self) -> bool:
        """True once shares were issued and every one of them has been claimed."""
        state = self.state
        return state.get('claimed_shares', Decimal("0")) >= state['share_supply']

    def events(self) -> List[PoolEvent]:
        """Observable events of this pool, oldest first."""
        return [
            PoolEvent(
                name=tx.origin.event_type,
                tick=tx.execution_tick,
                sequence=tx.sequence_number,
                attributes=tx.origin.payload(),
            )
            for tx in self.ledger.transactions_for(self.symbol)
            if tx.origin.event_type
        ]

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    @abstractmethod
    def _require_claimable(self, state: UnitState) -> None:
        """Raise NothingToClaim unless claims are open."""

    def claim_payment(self, caller: str) -> Decimal:
        """
        Pay caller its pro-rata share of the pool and burn its shares.

        Returns:
            The amount paid

        Raises:
            NothingToClaim: If claims are not open (subclass rule)
            NoShares: If caller holds no shares
        """
        state = self.state
        self._require_claimable(state)
        if self.balance_of(caller) <= 0:
            raise NoShares(f"{caller} holds no {self.symbol} shares")

        pending, payout = build_claim_transaction(
            self.ledger, self.symbol, self.wallet, self.currency, caller, state
        )
        self._submit(pending)
        logger.info("%s: %s claimed %s %s", self.symbol, caller, payout, self.currency)
        return payout

    def _submit(self, pending: PendingTransaction) -> None:
        """
        Execute a transaction this pool built.

        Raises:
            TransactionRejected: If the ledger rejects it or has already applied it
        """
        result = self.ledger.execute(pending)
        if result == ExecuteResult.APPLIED:
            return
        if result == ExecuteResult.ALREADY_APPLIED:
            reason = f"intent {pending.intent_id} already applied"
        else:
            reason = self.ledger.last_rejection
        logger.warning("%s: %s rejected: %s", self.symbol, pending.origin.event_type, reason)
        raise TransactionRejected(f"{self.symbol}: {reason}")

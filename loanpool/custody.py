"""
custody.py - Collateral Custody Registry

=== CUSTODY MODEL ===

Each collateral item is its own unit in the ledger, issued once from the
system wallet with quantity 1 and max_balance 1:

    Mint:      Move(1, "NFT#6", "system", "borrower")
    Transfer:  Move(1, "NFT#6", "borrower", "loan:LA1", metadata={'operator': ...})

Exactly one wallet holds an item at any time, so "who holds item X" is the
single non-zero position of the item unit. The registry, not the holder's
memory, is the source of truth.

=== AUTHORIZATION ===

A custody transfer is authorized when the operator is the current holder or
holds blanket approval from the holder (set_approval_for_all). The check
runs twice: up front in require_authorized() so callers get
CustodyNotAuthorized, and again as the item unit's transfer rule when the
ledger executes the move.

Loans depend on the CustodyRegistry protocol; CollateralRegistry is the
ledger-backed implementation.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Optional, Protocol, Set, Tuple, runtime_checkable

from .core import (
    LedgerView, Move, Unit, TransactionOrigin, OriginType,
    CustodyNotAuthorized, TransactionRejected,
    build_transaction, _freeze_state,
    SYSTEM_WALLET, UNIT_TYPE_COLLATERAL, ExecuteResult,
)
from .ledger import Ledger


NOT_AUTHORIZED_MESSAGE = "transfer caller is not owner nor approved"

ONE = Decimal("1")


@runtime_checkable
class CustodyRegistry(Protocol):
    """Capability interface loans use to take and release custody of collateral."""

    def owner_of(self, item_id: int) -> str:
        """Return the wallet currently holding item_id."""
        ...

    def require_authorized(self, item_id: int, source: str, operator: str) -> None:
        """Raise CustodyNotAuthorized unless operator may move item_id out of source."""
        ...

    def custody_move(self, item_id: int, source: str, dest: str, operator: str) -> Move:
        """Return the authorized Move transferring item_id, for inclusion in a larger transaction."""
        ...

    def transfer_custody(self, item_id: int, source: str, dest: str, operator: str) -> None:
        """Transfer item_id from source to dest as a standalone transaction."""
        ...


class CollateralRegistry:
    """
    Ledger-backed registry of uniquely identified collateral items.

    Example:
        registry = CollateralRegistry(ledger, "NFT")
        registry.mint(6, "borrower")
        registry.set_approval_for_all("borrower", loan.wallet, True)
        registry.owner_of(6)   # "borrower"
    """

    def __init__(self, ledger: Ledger, collection: str):
        if not collection or not collection.strip():
            raise ValueError("collection cannot be empty")
        self.ledger = ledger
        self.collection = collection
        self._approvals: Set[Tuple[str, str]] = set()

    def item_symbol(self, item_id: int) -> str:
        return f"{self.collection}#{item_id}"

    # ------------------------------------------------------------------
    # Issuance and approvals
    # ------------------------------------------------------------------

    def mint(self, item_id: int, owner: str) -> str:
        """
        Issue a new item to owner and return its unit symbol.

        Raises:
            ValueError: If the item already exists
        """
        symbol = self.item_symbol(item_id)
        if symbol in self.ledger.units:
            raise ValueError(f"{symbol} already minted")
        self.ledger.register_unit(Unit(
            symbol=symbol,
            name=f"{self.collection} item {item_id}",
            unit_type=UNIT_TYPE_COLLATERAL,
            min_balance=Decimal("0"),
            max_balance=ONE,
            decimal_places=0,
            transfer_rule=self.transfer_rule,
            _frozen_state=_freeze_state({
                'collection': self.collection,
                'item_id': item_id,
            }),
        ))
        pending = build_transaction(
            self.ledger,
            [Move(ONE, symbol, SYSTEM_WALLET, owner, f"{symbol}_mint")],
            origin=TransactionOrigin(OriginType.SYSTEM, self.collection, symbol, "MINT"),
        )
        if self.ledger.execute(pending) != ExecuteResult.APPLIED:
            raise TransactionRejected(f"mint of {symbol} rejected: {self.ledger.last_rejection}")
        return symbol

    def set_approval_for_all(self, owner: str, operator: str, approved: bool) -> None:
        """Grant or revoke operator's blanket authority over every item owner holds."""
        if owner == operator:
            raise ValueError("approve to caller")
        if approved:
            self._approvals.add((owner, operator))
        else:
            self._approvals.discard((owner, operator))

    def is_approved_for_all(self, owner: str, operator: str) -> bool:
        return (owner, operator) in self._approvals

    # ------------------------------------------------------------------
    # Custody queries
    # ------------------------------------------------------------------

    def owner_of(self, item_id: int) -> str:
        """
        Return the wallet currently holding item_id.

        Raises:
            ValueError: If the item was never minted
        """
        return self._holder(self.ledger, self.item_symbol(item_id))

    @staticmethod
    def _holder(view: LedgerView, symbol: str) -> str:
        holders = [
            wallet for wallet, qty in view.get_positions(symbol).items()
            if wallet != SYSTEM_WALLET and qty > 0
        ]
        if not holders:
            raise ValueError(f"{symbol}: nonexistent item")
        return holders[0]

    def _is_authorized(self, holder: str, operator: Optional[str]) -> bool:
        return operator == holder or self.is_approved_for_all(holder, operator)

    def require_authorized(self, item_id: int, source: str, operator: str) -> None:
        """
        Raises:
            CustodyNotAuthorized: If source does not hold the item, or operator
                is neither the holder nor approved by it
        """
        holder = self.owner_of(item_id)
        if holder != source or not self._is_authorized(holder, operator):
            raise CustodyNotAuthorized(NOT_AUTHORIZED_MESSAGE)

    # ------------------------------------------------------------------
    # Custody transfer
    # ------------------------------------------------------------------

    def custody_move(self, item_id: int, source: str, dest: str, operator: str) -> Move:
        self.require_authorized(item_id, source, operator)
        symbol = self.item_symbol(item_id)
        return Move(
            ONE, symbol, source, dest, f"{symbol}_custody",
            metadata={'operator': operator},
        )

    def transfer_custody(self, item_id: int, source: str, dest: str, operator: str) -> None:
        move = self.custody_move(item_id, source, dest, operator)
        pending = build_transaction(
            self.ledger,
            [move],
            origin=TransactionOrigin(
                OriginType.USER_ACTION, operator, move.unit_symbol, "CUSTODY_TRANSFER",
                attributes=(('dest', dest), ('sequence', self.ledger.next_sequence)),
            ),
        )
        if self.ledger.execute(pending) != ExecuteResult.APPLIED:
            raise TransactionRejected(
                f"custody transfer of {move.unit_symbol} rejected: {self.ledger.last_rejection}"
            )

    def transfer_rule(self, view: LedgerView, move: Move) -> None:
        """
        Transfer rule installed on every item unit of this collection.

        Issuance from the system wallet is always allowed; any other move
        must name an operator authorized by the current holder.
        """
        if move.source == SYSTEM_WALLET:
            return
        holder = self._holder(view, move.unit_symbol)
        operator = (move.metadata or {}).get('operator')
        if move.source != holder or not self._is_authorized(holder, operator):
            raise CustodyNotAuthorized(NOT_AUTHORIZED_MESSAGE)

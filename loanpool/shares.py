"""
shares.py - Fixed-Supply Share Units

A share unit represents fractional claim entitlement over one pool (a loan
or a bundle). The supply is fixed when the unit is created, issued once from
the system wallet, and burned back to it when holders claim:

    Mint all:  Move(supply, "LA1", "system", lender)
    Burn:      Move(balance, "LA1", holder, "system")

Outstanding supply is therefore the sum of all non-system positions, and
the system wallet always carries its negative.

Shares are whole numbers of base units. ``decimals`` is display metadata,
as with ERC-20 tokens: 100_000_000 base units at 6 decimals read as 100.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, Optional

from .core import (
    LedgerView, Move, Unit, TransactionOrigin, OriginType,
    TransactionRejected, ExecuteResult,
    build_transaction, to_decimal, _freeze_state,
    SYSTEM_WALLET, UNIT_TYPE_LOAN_SHARE,
)
from .ledger import Ledger


def create_share_unit(
    symbol: str,
    name: str,
    decimals: int,
    supply: int,
    unit_type: str = UNIT_TYPE_LOAN_SHARE,
    state: Optional[Dict[str, Any]] = None,
) -> Unit:
    """
    Create a fixed-supply share unit.

    Args:
        symbol: Share symbol (e.g., "LA1")
        name: Human-readable name (e.g., "LOAN-A1")
        decimals: Display decimals
        supply: Total supply in base units, issued once
        unit_type: UNIT_TYPE_LOAN_SHARE or UNIT_TYPE_BUNDLE_SHARE
        state: Pool state stored on the unit (terms, status, counters)

    Raises:
        ValueError: On non-positive supply or negative decimals
    """
    if supply <= 0:
        raise ValueError(f"supply must be positive, got {supply}")
    if decimals < 0:
        raise ValueError(f"decimals cannot be negative, got {decimals}")
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=unit_type,
        min_balance=Decimal("0"),
        decimal_places=0,
        _frozen_state=_freeze_state({
            **(state or {}),
            'share_decimals': decimals,
            'share_supply': supply,
        }),
    )


def outstanding_supply(view: LedgerView, symbol: str) -> Decimal:
    """Sum of all non-system positions of a share unit."""
    return sum(
        (qty for wallet, qty in view.get_positions(symbol).items() if wallet != SYSTEM_WALLET),
        Decimal("0"),
    )


def share_burn_move(symbol: str, party: str, amount: Decimal) -> Move:
    """Move redeeming amount shares from party back to the system wallet."""
    return Move(amount, symbol, party, SYSTEM_WALLET, f"{symbol}_burn_{party}")


class ShareLedger:
    """
    Balance, supply and movement queries for one share unit.

    Mint and burn are returned as Moves so the owning pool can fold them into
    its own atomic transaction; transfer() is the holder-facing operation and
    executes on its own.
    """

    def __init__(self, ledger: Ledger, symbol: str):
        self.ledger = ledger
        self.symbol = symbol

    @property
    def unit(self) -> Unit:
        return self.ledger.get_unit(self.symbol)

    @property
    def supply_cap(self) -> Decimal:
        return Decimal(self.ledger.get_unit_state(self.symbol)['share_supply'])

    def is_minted(self) -> bool:
        return self.ledger.get_balance(SYSTEM_WALLET, self.symbol) != 0

    def balance_of(self, party: str) -> Decimal:
        if not self.ledger.is_registered(party):
            return Decimal("0")
        return self.ledger.get_balance(party, self.symbol)

    def total_supply(self) -> Decimal:
        """Outstanding shares: minted and not yet burned."""
        return outstanding_supply(self.ledger, self.symbol)

    def mint_all_move(self, to: str) -> Move:
        """
        Move issuing the whole supply to one party.

        Only checks that no shares are outstanding; pools guard against a
        second issuance after every share was burned.

        Raises:
            ValueError: If shares are currently outstanding
        """
        if self.is_minted():
            raise ValueError(f"{self.symbol} supply already minted")
        return Move(self.supply_cap, self.symbol, SYSTEM_WALLET, to, f"{self.symbol}_mint")

    def burn_move(self, party: str, amount: Decimal) -> Move:
        return share_burn_move(self.symbol, party, amount)

    def transfer(self, source: str, dest: str, amount: Any) -> None:
        """
        Transfer shares between holders.

        Raises:
            ValueError: On a non-positive or fractional amount
            TransactionRejected: If source holds fewer than amount
        """
        amount = to_decimal(amount)
        if amount <= 0 or amount != amount.to_integral_value():
            raise ValueError(f"share amount must be a positive whole number, got {amount}")
        # The sequence keeps repeated identical transfers distinct intents
        pending = build_transaction(
            self.ledger,
            [Move(amount, self.symbol, source, dest, f"{self.symbol}_transfer")],
            origin=TransactionOrigin(
                OriginType.USER_ACTION, source, self.symbol, "SHARE_TRANSFER",
                attributes=(('dest', dest), ('sequence', self.ledger.next_sequence)),
            ),
        )
        if self.ledger.execute(pending) != ExecuteResult.APPLIED:
            raise TransactionRejected(
                f"{self.symbol} transfer {source}->{dest} rejected: {self.ledger.last_rejection}"
            )

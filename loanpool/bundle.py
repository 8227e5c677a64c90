"""
bundle.py - Loan Bundle Claims Aggregator

A bundle holds shares of several loans and issues its own shares against
them. Proceeds flow in two hops:

    loan pool ──claim_payment_for_contract──> bundle pool ──claim_payment──> bundle holder

Pulling from a member is an ordinary loan claim with the bundle's wallet as
the claimant, so the bundle's portion of that loan is paid once and its loan
shares are burned. Pulled funds then sit in the bundle wallet and are split
pro rata among bundle share holders by the same settlement algorithm the
loans use.

Bundle state (on the bundle share unit):
    loans:        ordered member symbols, fixed at creation
    currency:     common currency of every member
    creator:      wallet that received the whole supply
    pulled:       {loan symbol: total pulled from it}
    pulled_total: sum of all pulls
"""

from __future__ import annotations
from decimal import Decimal
import logging
from typing import List, Sequence

from .core import (
    UnitStateChange, TransactionOrigin, UnitState,
    NothingToClaim, NoShares, WalletNotRegistered,
    build_transaction,
    UNIT_TYPE_BUNDLE_SHARE,
)
from .ledger import Ledger
from .loan import LoanEngine
from .settlement import ClaimPool, pool_wallet_id
from .shares import create_share_unit


logger = logging.getLogger(__name__)

EVENT_ISSUED = "ISSUED"
EVENT_PULLED = "PULLED"


class LoanBundle(ClaimPool):
    """
    Aggregates claims over a fixed, ordered list of loans.

    Example:
        bundle = LoanBundle.create(
            ledger, "BUNDLE-1", "BND1", share_decimals=6,
            loans=[loan_a, loan_b], share_supply=1_000_000,
            creator="issuer", currency="ETH",
        )
        loan_a.shares.transfer("lender", bundle.wallet, loan_a.balance_of("lender"))
        bundle.claim_all_payments("anyone")
        bundle.claim_payment("issuer")
    """

    def __init__(self, ledger: Ledger, symbol: str, loans: Sequence[LoanEngine]):
        state = ledger.get_unit_state(symbol)
        if ledger.get_unit(symbol).unit_type != UNIT_TYPE_BUNDLE_SHARE:
            raise ValueError(f"{symbol} is not a bundle")
        if tuple(loan.symbol for loan in loans) != tuple(state['loans']):
            raise ValueError(f"{symbol}: loans do not match the bundle's member list")
        super().__init__(ledger, symbol, state['currency'])
        self._loans: List[LoanEngine] = list(loans)

    @classmethod
    def create(
        cls,
        ledger: Ledger,
        name: str,
        symbol: str,
        share_decimals: int,
        loans: Sequence[LoanEngine],
        share_supply: int,
        creator: str,
        currency: str,
    ) -> LoanBundle:
        """
        Register a bundle over loans and issue its whole supply to creator.

        Raises:
            ValueError: On an empty or duplicated member list, or a member
                denominated in another currency
            WalletNotRegistered: If creator is not a registered wallet
            UnitNotRegistered: If currency is not a registered unit
        """
        loans = list(loans)
        if not loans:
            raise ValueError("bundle needs at least one loan")
        symbols = tuple(loan.symbol for loan in loans)
        if len(set(symbols)) != len(symbols):
            raise ValueError(f"duplicate loans in bundle: {symbols}")
        for loan in loans:
            if loan.currency != currency:
                raise ValueError(
                    f"loan {loan.symbol} is denominated in {loan.currency}, not {currency}"
                )
        ledger.get_unit(currency)
        if not ledger.is_registered(creator):
            raise WalletNotRegistered(f"Wallet {creator} not registered")
        wallet = pool_wallet_id(symbol)
        if symbol in ledger.units or ledger.is_registered(wallet):
            raise ValueError(f"bundle {symbol} already exists")

        ledger.register_unit(create_share_unit(
            symbol, name, share_decimals, share_supply, UNIT_TYPE_BUNDLE_SHARE,
            state={
                'loans': symbols,
                'currency': currency,
                'creator': creator,
                'pulled': {},
                'pulled_total': Decimal("0"),
            },
        ))
        ledger.register_wallet(wallet)

        bundle = cls(ledger, symbol, loans)
        pending = build_transaction(
            ledger,
            [bundle.shares.mint_all_move(creator)],
            origin=TransactionOrigin.event(
                symbol, EVENT_ISSUED, symbol, creator=creator, shares=share_supply
            ),
        )
        bundle._submit(pending)
        logger.info("%s: bundle of %d loans issued to %s", symbol, len(loans), creator)
        return bundle

    @property
    def loans(self) -> List[LoanEngine]:
        return list(self._loans)

    def loan_at(self, index: int) -> LoanEngine:
        """
        Member loan at a position in the bundle.

        Raises:
            IndexError: If index is outside the member list
        """
        if index < 0 or index >= len(self._loans):
            raise IndexError(f"{self.symbol}: no loan at index {index}")
        return self._loans[index]

    @property
    def pulled_total(self) -> Decimal:
        return self.state['pulled_total']

    def pulled_from(self, loan_symbol: str) -> Decimal:
        return self.state['pulled'].get(loan_symbol, Decimal("0"))

    # ------------------------------------------------------------------
    # Pulling from members
    # ------------------------------------------------------------------

    def claim_payment_for_contract(self, caller: str, loan_index: int) -> Decimal:
        """
        Claim the bundle's portion of one member loan into the bundle pool.

        Anyone may trigger a pull; proceeds always go to the bundle wallet.

        Returns:
            The amount pulled

        Raises:
            IndexError: If loan_index is outside the member list
            NothingToClaim: If the member is not settled yet, or every bundle
                share has already been claimed
            NoShares: If the bundle holds none of the member's shares
        """
        loan = self.loan_at(loan_index)
        # A drained bundle is inert
        if self.total_supply() <= 0:
            raise NothingToClaim(f"{self.symbol} has no outstanding shares")
        amount = loan.claim_payment(self.wallet)

        # Read after the member claim so receive hooks on the bundle wallet are seen
        state = self.state
        pulled = dict(state['pulled'])
        pulled[loan.symbol] = pulled.get(loan.symbol, Decimal("0")) + amount
        new_state = {
            **state,
            'pulled': pulled,
            'pulled_total': state['pulled_total'] + amount,
        }
        pending = build_transaction(
            self.ledger,
            [],
            [UnitStateChange(self.symbol, state, new_state)],
            TransactionOrigin.event(
                self.symbol, EVENT_PULLED, self.symbol,
                caller=caller, loan=loan.symbol, amount=amount,
                sequence=self.ledger.next_sequence,
            ),
        )
        self._submit(pending)
        logger.info("%s: pulled %s %s from %s", self.symbol, amount, self.currency, loan.symbol)
        return amount

    def claim_all_payments(self, caller: str) -> Decimal:
        """
        Pull from every member in order and return the total pulled.

        Members that are not settled, or in which the bundle holds no
        shares, are skipped. Any other failure propagates; pulls already
        made stay made.
        """
        total = Decimal("0")
        for index, loan in enumerate(self._loans):
            try:
                total += self.claim_payment_for_contract(caller, index)
            except (NothingToClaim, NoShares) as e:
                logger.debug("%s: skipping %s: %s", self.symbol, loan.symbol, e.kind)
        return total

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def _require_claimable(self, state: UnitState) -> None:
        if self.held_balance <= 0:
            raise NothingToClaim(f"{self.symbol} holds nothing to distribute")

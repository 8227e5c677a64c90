"""
fake_view.py - Test Helper for LedgerView

Provides a minimal LedgerView implementation for testing pure settlement and
pricing functions without requiring a full Ledger instance.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Dict, Set, Optional, Any

from loanpool.core import Unit


# Type aliases (matching core.py)
Positions = Dict[str, Decimal]
UnitState = Dict[str, Any]


class FakeView:
    """
    Minimal LedgerView implementation for testing pure functions.

    Example:
        view = FakeView(
            balances={'alice': {'LA1': Decimal(60)}, 'pool:LA1': {'ETH': Decimal("15.4")}},
            states={'LA1': {'share_supply': 100}},
            tick=1000,
            units={'ETH': cash('ETH', 'Ether', decimal_places=18)},
        )

        positions = view.get_positions('LA1')
        # Returns: {'alice': Decimal(60)}
    """

    def __init__(
        self,
        balances: Dict[str, Dict[str, Decimal]],
        states: Optional[Dict[str, UnitState]] = None,
        tick: int = 0,
        units: Optional[Dict[str, Unit]] = None
    ):
        self._balances = balances
        self._states = states or {}
        self._tick = tick
        self._units = units or {}

    @property
    def current_tick(self) -> int:
        return self._tick

    def get_balance(self, wallet: str, unit: str) -> Decimal:
        return self._balances.get(wallet, {}).get(unit, Decimal("0"))

    def get_unit_state(self, unit: str) -> UnitState:
        return dict(self._states.get(unit, {}))

    def get_positions(self, unit: str) -> Positions:
        return {
            w: b[unit]
            for w, b in self._balances.items()
            if unit in b and b[unit] != 0
        }

    def list_wallets(self) -> Set[str]:
        return set(self._balances.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Return the configured unit, or an unrounded cash unit."""
        if symbol in self._units:
            return self._units[symbol]
        return Unit(symbol=symbol, name=symbol, unit_type="CASH")

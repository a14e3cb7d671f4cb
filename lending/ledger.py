"""
ledger.py - Custody record for the lending market

Holds every balance the market touches: USDC and native-token holdings,
one-of-one collateral units, and the LOAN_<id> record units whose state is
the loan itself. Loan transitions are computed elsewhere as pending
transactions; this module is the only place they are applied.

A pending transaction lands whole or not at all. A loan record whose
old_state no longer matches is refused, so two lenders racing to fund the
same loan cannot both win.
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Set, Optional, Tuple
import copy

from .core import (
    Move, Transaction, Unit,
    PendingTransaction,
    ExecuteResult,
    Positions, UnitState, BalanceMap,
    QUANTITY_EPSILON, SYSTEM_WALLET,
    UnitNotRegistered, WalletNotRegistered, TransferRuleViolation,
    _freeze_state,
)
from .logging import get_logger

logger = get_logger(__name__)


class Ledger:
    """
    Balances, collateral ownership and loan records for one market.

    Not thread-safe; LoanLifecycleEngine holds its lock around every call
    that reads a view and then executes against it.

    Example:
        ledger = Ledger("market", datetime(2025, 1, 1))
        ledger.register_unit(token("USDC", "USD Coin"))
        ledger.register_wallet("alice")
        ledger.execute(build_transaction(
            ledger, fund_moves("USDC", SYSTEM_WALLET, "alice", 1000, "faucet")
        ))
    """

    def __init__(self, name: str, initial_time: Optional[datetime] = None):
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self._next_sequence: int = 0
        # unit -> {wallet -> quantity}; answers owner_of for collateral
        self._holders: Dict[str, Dict[str, Decimal]] = defaultdict(dict)

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ------------------------------------------------------------------
    # Read side (LedgerView)
    # ------------------------------------------------------------------

    @property
    def current_time(self) -> datetime:
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Raises WalletNotRegistered / UnitNotRegistered for unknown names."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Deep copy of a unit's state; callers may mutate it freely."""
        state = self.get_unit(unit_symbol).state
        return copy.deepcopy(state) if state else {}

    def get_positions(self, unit_symbol: str) -> Positions:
        return dict(self._holders.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def has_unit(self, symbol: str) -> bool:
        return symbol in self.units

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return dict(self.balances[wallet_id])

    def total_supply(self, unit_symbol: str) -> Decimal:
        """Sum over every wallet, SYSTEM_WALLET included; zero for fungible units."""
        self.get_unit(unit_symbol)
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0")) for w in sorted(self.registered_wallets)),
            Decimal("0"),
        )

    def is_registered(self, wallet_id: str) -> bool:
        return wallet_id in self.registered_wallets

    # ------------------------------------------------------------------
    # Clock and registration
    # ------------------------------------------------------------------

    def advance_time(self, new_time: datetime) -> None:
        """Move the clock forward; loan deadlines are read against it."""
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    def register_wallet(self, wallet_id: str) -> str:
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        logger.debug("Registered unit %s (%s) [%s]", unit.symbol, unit.name, unit.unit_type)

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Apply a pending transaction: new loan records, moves and state
        changes together.

        Returns APPLIED, ALREADY_APPLIED when the same intent_id landed
        before, or REJECTED with nothing changed.
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        if pending.intent_id in self.seen_intent_ids:
            logger.warning("ALREADY_APPLIED: intent_id=%s", pending.intent_id)
            return ExecuteResult.ALREADY_APPLIED

        created: List[str] = []
        for unit in pending.units_to_create:
            if unit.symbol in self.units:
                self._forget_units(created)
                logger.warning("REJECTED: unit already registered: %s", unit.symbol)
                return ExecuteResult.REJECTED
            self.register_unit(unit)
            created.append(unit.symbol)

        reason = self._rejection_reason(pending)
        if reason:
            self._forget_units(created)
            logger.warning("REJECTED: %s", reason)
            return ExecuteResult.REJECTED

        sequence = self._next_sequence
        self._next_sequence += 1
        micros = int(self._current_time.timestamp() * 1_000_000)

        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=f"exec:{self.name}:{sequence:012d}:{micros}",
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
            units_to_create=pending.units_to_create,
        )

        for move in tx.moves:
            self._shift(move.source, move.unit_symbol, -move.quantity)
            self._shift(move.dest, move.unit_symbol, move.quantity)

        for sc in tx.state_changes:
            new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
            self.units[sc.unit] = replace(self.units[sc.unit], _frozen_state=_freeze_state(new_state))

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)
        logger.debug("APPLIED%r", tx)
        return ExecuteResult.APPLIED

    def _forget_units(self, symbols: List[str]) -> None:
        for sym in symbols:
            del self.units[sym]

    def _rejection_reason(self, pending: PendingTransaction) -> str:
        """Why ``pending`` cannot be applied, or an empty string if it can."""
        if pending.timestamp > self._current_time:
            return "future timestamp"

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return f"unit not registered: {move.unit_symbol}"
            for wallet in (move.source, move.dest):
                if wallet not in self.registered_wallets:
                    return f"wallet not registered: {wallet}"
            rule = self.units[move.unit_symbol].transfer_rule
            if rule:
                try:
                    rule(self, move)
                except TransferRuleViolation as e:
                    return str(e)

        for sc in pending.state_changes:
            if sc.unit not in self.units:
                return f"unit not registered: {sc.unit}"
            if sc.old_state is not None:
                expected = sc.old_state if isinstance(sc.old_state, dict) else {}
                if expected != self.units[sc.unit].state:
                    return f"stale state for {sc.unit}"

        # Net per (wallet, unit) first: a lender may receive and pay in one step
        net: Dict[Tuple[str, str], Decimal] = defaultdict(lambda: Decimal("0"))
        for move in pending.moves:
            net[(move.source, move.unit_symbol)] -= move.quantity
            net[(move.dest, move.unit_symbol)] += move.quantity

        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            unit = self.units[unit_sym]
            proposed = unit.round(self.balances[wallet].get(unit_sym, Decimal("0")) + delta)
            if proposed < unit.min_balance:
                return f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        return ""

    def _shift(self, wallet_id: str, unit_symbol: str, delta: Decimal) -> None:
        unit = self.units[unit_symbol]
        balance = unit.round(self.balances[wallet_id][unit_symbol] + delta)
        self.balances[wallet_id][unit_symbol] = balance
        if abs(balance) > QUANTITY_EPSILON:
            self._holders[unit_symbol][wallet_id] = balance
        else:
            self._holders[unit_symbol].pop(wallet_id, None)

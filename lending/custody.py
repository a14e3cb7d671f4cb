"""
custody.py - Custody Gateway

The lifecycle engine never touches balances directly. Everything that moves
collateral or funds goes through a CustodyGateway, whose operations are
all-or-nothing and require prior authorization by the asset holder:

    transfer_collateral(owner_from, owner_to, assets)
    transfer_funds(token, source, dest, amount)
    settle(pending)          # a whole loan transition, moves + record changes

LedgerCustody implements the gateway on top of a Ledger. The escrow wallet
is the custodian: moves out of escrow need no authorization, moves out of any
other wallet need one of
    - a collateral approval (owner approved escrow for that item), or
    - a fund allowance (owner approved escrow for an amount of a token).
The native currency needs no allowance: its value travels with the call.
"""

from __future__ import annotations
from collections import defaultdict
from typing import Dict, Optional, Protocol, Sequence, Set, Tuple

from .core import (
    Move, PendingTransaction, Transaction, TransactionOrigin, OriginType,
    ExecuteResult, UNIT_TYPE_COLLATERAL, SYSTEM_WALLET,
    NotAuthorized, TransferRejected, UnitNotRegistered,
    build_transaction, fund_moves,
)
from .ledger import Ledger
from .logging import get_logger
from .units.collateral import AssetRef, collateral_moves, collateral_symbol

logger = get_logger(__name__)


class CustodyGateway(Protocol):
    """Atomic transfer primitives the lifecycle engine depends on."""

    escrow: str

    def transfer_collateral(
        self, owner_from: str, owner_to: str, assets: Sequence[AssetRef]
    ) -> Transaction:
        ...

    def transfer_funds(self, token: str, source: str, dest: str, amount: int) -> Transaction:
        ...

    def settle(self, pending: PendingTransaction) -> Transaction:
        ...


class LedgerCustody:
    """
    CustodyGateway backed by a Ledger.

    Example:
        custody = LedgerCustody(ledger, escrow="escrow", native_currency="NATIVE")
        custody.authorize_collateral("alice", "0xpunks", 7)
        custody.authorize_funds("bob", "USDC", 1000)
    """

    def __init__(self, ledger: Ledger, escrow: str, native_currency: str):
        self.ledger = ledger
        self.escrow = escrow
        self.native_currency = native_currency
        if not ledger.is_registered(escrow):
            ledger.register_wallet(escrow)
        # owner -> collateral symbols approved for escrow
        self._collateral_approvals: Dict[str, Set[str]] = defaultdict(set)
        # (owner, token) -> remaining allowance
        self._allowances: Dict[Tuple[str, str], int] = defaultdict(int)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorize_collateral(self, owner: str, contract_address: str, token_id: int) -> None:
        """Owner approves escrow to take one collateral item."""
        self._collateral_approvals[owner].add(collateral_symbol(contract_address, token_id))

    def revoke_collateral(self, owner: str, contract_address: str, token_id: int) -> None:
        self._collateral_approvals[owner].discard(collateral_symbol(contract_address, token_id))

    def is_collateral_authorized(self, owner: str, contract_address: str, token_id: int) -> bool:
        return collateral_symbol(contract_address, token_id) in self._collateral_approvals[owner]

    def authorize_funds(self, owner: str, token: str, amount: int) -> None:
        """Set (not add to) the allowance escrow may draw from owner's token balance."""
        if amount < 0:
            raise ValueError(f"allowance must be non-negative, got {amount}")
        self._allowances[(owner, token)] = amount

    def allowance(self, owner: str, token: str) -> int:
        return self._allowances[(owner, token)]

    def _check_authorization(self, moves: Sequence[Move]) -> Dict[Tuple[str, str], int]:
        """
        Verify every move leaving a non-escrow wallet is authorized.

        Returns the allowance amounts the moves would consume.
        Raises NotAuthorized on the first unauthorized move.
        """
        spend: Dict[Tuple[str, str], int] = defaultdict(int)
        for move in moves:
            if move.source in (self.escrow, SYSTEM_WALLET):
                continue
            if not self.ledger.has_unit(move.unit_symbol):
                raise UnitNotRegistered(f"Unit {move.unit_symbol} not registered")
            unit = self.ledger.get_unit(move.unit_symbol)
            if unit.unit_type == UNIT_TYPE_COLLATERAL:
                if move.unit_symbol not in self._collateral_approvals[move.source]:
                    raise NotAuthorized(
                        f"{move.source} has not authorized custody of {move.unit_symbol}"
                    )
            elif move.unit_symbol != self.native_currency:
                spend[(move.source, move.unit_symbol)] += int(move.quantity)

        for (owner, token), amount in spend.items():
            if self._allowances[(owner, token)] < amount:
                raise NotAuthorized(
                    f"{owner} allowance for {token} is {self._allowances[(owner, token)]}, "
                    f"{amount} required"
                )
        return spend

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------

    def settle(self, pending: PendingTransaction) -> Transaction:
        """
        Execute a pending transaction atomically.

        Raises:
            NotAuthorized: A move lacks the holder's authorization (nothing applied)
            TransferRejected: The ledger refused the transaction (nothing applied)
        """
        spend = self._check_authorization(pending.moves)

        result = self.ledger.execute(pending)
        if result != ExecuteResult.APPLIED:
            raise TransferRejected(
                f"custody transaction {pending.intent_id} was {result.value}"
            )

        for key, amount in spend.items():
            self._allowances[key] -= amount
        for move in pending.moves:
            if move.unit_symbol in self._collateral_approvals[move.source]:
                self._collateral_approvals[move.source].discard(move.unit_symbol)

        tx = self.ledger.transaction_log[-1]
        logger.debug("settled %s (%d moves)", tx.exec_id, len(tx.moves))
        return tx

    def transfer_collateral(
        self,
        owner_from: str,
        owner_to: str,
        assets: Sequence[AssetRef],
        origin: Optional[TransactionOrigin] = None,
    ) -> Transaction:
        """Move every asset from owner_from to owner_to, or none of them."""
        # sequence-qualified so a repeated transfer is a new intent
        contract_id = f"collateral_{owner_from}_{owner_to}_{len(self.ledger.transaction_log)}"
        moves = collateral_moves(assets, owner_from, owner_to, contract_id)
        if not moves:
            raise ValueError("no collateral to transfer")
        origin = origin or TransactionOrigin(OriginType.USER_ACTION, owner_from)
        return self.settle(build_transaction(self.ledger, moves, origin=origin))

    def transfer_funds(
        self,
        token: str,
        source: str,
        dest: str,
        amount: int,
        origin: Optional[TransactionOrigin] = None,
    ) -> Transaction:
        """Move ``amount`` of ``token`` from source to dest."""
        contract_id = f"funds_{source}_{dest}_{len(self.ledger.transaction_log)}"
        moves = fund_moves(token, source, dest, amount, contract_id)
        if not moves:
            raise ValueError("amount must be positive")
        origin = origin or TransactionOrigin(OriginType.USER_ACTION, source)
        return self.settle(build_transaction(self.ledger, moves, origin=origin))

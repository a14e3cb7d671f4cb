"""
collateral.py - Non-Fungible Collateral Units

Each pledgeable item is its own unit, identified by the contract that minted
it and its token id. Exactly one wallet can hold it at a time:

    min_balance = 0, max_balance = 1, decimal_places = 0

Minting is a move from SYSTEM_WALLET to the first owner. Pledging and
releasing are ordinary moves between the owner and the escrow wallet.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from ..core import (
    LedgerView, Move, Unit, PendingTransaction,
    SYSTEM_WALLET, UNIT_TYPE_COLLATERAL,
    build_transaction, _freeze_state,
)


# (contract_address, token_id)
AssetRef = Tuple[str, int]


def collateral_symbol(contract_address: str, token_id: int) -> str:
    """Ledger symbol of a collateral item, e.g. ``0xpunks#7``."""
    return f"{contract_address}#{token_id}"


def parse_collateral_symbol(symbol: str) -> AssetRef:
    """Inverse of collateral_symbol()."""
    contract_address, sep, token_id = symbol.rpartition("#")
    if not sep or not contract_address:
        raise ValueError(f"Not a collateral symbol: {symbol!r}")
    return contract_address, int(token_id)


def create_collateral_unit(
    contract_address: str,
    token_id: int,
    name: Optional[str] = None,
) -> Unit:
    """
    Create the unit for a single non-fungible item.

    Args:
        contract_address: Address of the collection contract
        token_id: Token id within the collection (non-negative)
        name: Optional human-readable name

    Example:
        punk = create_collateral_unit("0xpunks", 7)
        ledger.register_unit(punk)
        ledger.execute(mint_collateral(ledger, "0xpunks", 7, "alice"))
    """
    if not contract_address or not contract_address.strip():
        raise ValueError("contract_address cannot be empty")
    if "#" in contract_address:
        raise ValueError("contract_address cannot contain '#'")
    if not isinstance(token_id, int) or token_id < 0:
        raise ValueError(f"token_id must be a non-negative integer, got {token_id!r}")

    return Unit(
        symbol=collateral_symbol(contract_address, token_id),
        name=name or f"{contract_address} token {token_id}",
        unit_type=UNIT_TYPE_COLLATERAL,
        min_balance=Decimal("0"),
        max_balance=Decimal("1"),
        decimal_places=0,
        _frozen_state=_freeze_state({
            'contract_address': contract_address,
            'token_id': token_id,
        }),
    )


def mint_collateral(
    view: LedgerView,
    contract_address: str,
    token_id: int,
    owner: str,
) -> PendingTransaction:
    """Issue a collateral item to its first owner (SYSTEM_WALLET -> owner)."""
    symbol = collateral_symbol(contract_address, token_id)
    holder = owner_of(view, contract_address, token_id)
    if holder is not None:
        raise ValueError(f"{symbol} already minted, held by {holder}")
    return build_transaction(view, [
        Move(Decimal("1"), symbol, SYSTEM_WALLET, owner, f"mint_{symbol}"),
    ])


def collateral_moves(
    assets: Iterable[AssetRef],
    owner_from: str,
    owner_to: str,
    contract_id: str,
) -> List[Move]:
    """One move of quantity 1 per asset, in the given order."""
    return [
        Move(
            quantity=Decimal("1"),
            unit_symbol=collateral_symbol(contract_address, token_id),
            source=owner_from,
            dest=owner_to,
            contract_id=contract_id,
        )
        for contract_address, token_id in assets
    ]


def owner_of(view: LedgerView, contract_address: str, token_id: int) -> Optional[str]:
    """Wallet currently holding the item, or None if it was never minted."""
    positions = view.get_positions(collateral_symbol(contract_address, token_id))
    holders = [w for w, qty in positions.items() if qty > 0 and w != SYSTEM_WALLET]
    return holders[0] if holders else None


def normalize_assets(assets: Sequence[Sequence]) -> List[AssetRef]:
    """Coerce ``[(address, id), ...]`` input into a list of (str, int) tuples."""
    normalized = []
    for item in assets:
        if len(item) != 2:
            raise ValueError(f"collateral entries are (contract_address, token_id) pairs, got {item!r}")
        contract_address, token_id = item
        normalized.append((str(contract_address), int(token_id)))
    return normalized

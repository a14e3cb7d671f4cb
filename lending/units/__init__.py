"""
Units module - collateral items and loan records.

- Collateral units: one non-fungible item each, held by exactly one wallet
- Loan units: the loan record and its lifecycle transitions

All unit factories and related functions are re-exported here for convenience.
"""

# Collateral units
from .collateral import (
    AssetRef,
    collateral_symbol,
    parse_collateral_symbol,
    create_collateral_unit,
    mint_collateral,
    collateral_moves,
    owner_of,
    normalize_assets,
)

# Loan units
from .loan import (
    LoanStatus,
    ALLOWED_TRANSITIONS,
    check_transition,
    LoanTerms,
    LoanState,
    Loan,
    loan_symbol,
    load_loan,
    to_state_dict,
    create_loan_unit,
    compute_create,
    compute_approval,
    compute_cancellation,
    compute_payment,
    compute_extension,
    compute_withdrawal,
    collateral_recipient,
    transact as loan_transact,
)

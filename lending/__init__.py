"""
lending - Peer-to-peer NFT-collateralized lending

Borrowers pledge non-fungible items as collateral, lenders fund the loan in a
fungible token (or the native asset), and the loan walks a strict status graph
until it is repaid, cancelled or defaults.

Usage:
    from lending import Ledger, LoanLifecycleEngine, token, create_collateral_unit
    from lending import mint_collateral, build_transaction, fund_moves, SYSTEM_WALLET

    ledger = Ledger("main")
    ledger.register_unit(token("USDC", "USD Coin"))
    ledger.register_unit(create_collateral_unit("0xpunks", 7))
    for wallet in ("alice", "bob"):
        ledger.register_wallet(wallet)
    ledger.execute(mint_collateral(ledger, "0xpunks", 7, "alice"))
    ledger.execute(build_transaction(ledger, fund_moves("USDC", SYSTEM_WALLET, "bob", 5000, "faucet")))

    engine = LoanLifecycleEngine(ledger)
    engine.custody.authorize_collateral("alice", "0xpunks", 7)
    loan_id = engine.create_loan("alice", 1000, 7, 5, "USDC", 2000, 50, [("0xpunks", 7)])
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    fund_moves,
    Unit,
    UnitStateChange,
    ExecuteResult,
    LedgerError,
    InsufficientBalance,
    BalanceConstraintViolation,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    NotAuthorized,
    TransferRejected,
    LoanError,
    InvalidTerms,
    AlreadyFunded,
    NotYetFunded,
    Unauthorized,
    WrongPhase,
    InsufficientFunds,
    OverFunds,
    ImpreciseFunds,
    Expired,
    AlreadyReleased,
    LoanNotFound,
    token,
    native_token,
    SYSTEM_WALLET,
    ESCROW_WALLET,
    OPERATOR_WALLET,
    NATIVE_CURRENCY,
    UNIT_TYPE_TOKEN,
    UNIT_TYPE_COLLATERAL,
    UNIT_TYPE_LOAN,
)

# Ledger
from .ledger import Ledger

# Arithmetic
from .accounting import (
    percentage,
    installment_amount,
    approval_split,
    payment_split,
    loan_end_after,
)

# Configuration
from .config import ProtocolConfig, ConfigurationError

# Units
from .units import (
    AssetRef,
    collateral_symbol,
    parse_collateral_symbol,
    create_collateral_unit,
    mint_collateral,
    collateral_moves,
    owner_of,
    LoanStatus,
    LoanTerms,
    LoanState,
    Loan,
    loan_symbol,
    load_loan,
    check_transition,
    compute_create,
    compute_approval,
    compute_cancellation,
    compute_payment,
    compute_extension,
    compute_withdrawal,
    loan_transact,
)

# Custody, registry, events, engine
from .custody import CustodyGateway, LedgerCustody
from .registry import LoanRegistry
from .events import (
    EventBus,
    LoanEvent,
    LOAN_CREATED,
    LOAN_APPROVED,
    LOAN_CANCELLED,
    LOAN_PAYMENT,
    LOAN_EXTENDED,
    ITEMS_WITHDRAWN,
    CONFIG_CHANGED,
)
from .lifecycle_engine import LoanLifecycleEngine

# Logging
from .logging import setup_logging, get_logger, JsonFormatter


__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType', 'build_transaction', 'fund_moves',
    'Unit', 'UnitStateChange', 'ExecuteResult',
    # Errors
    'LedgerError', 'InsufficientBalance', 'BalanceConstraintViolation',
    'TransferRuleViolation', 'UnitNotRegistered', 'WalletNotRegistered',
    'NotAuthorized', 'TransferRejected',
    'LoanError', 'InvalidTerms', 'AlreadyFunded', 'NotYetFunded', 'Unauthorized',
    'WrongPhase', 'InsufficientFunds', 'OverFunds', 'ImpreciseFunds', 'Expired',
    'AlreadyReleased', 'LoanNotFound',
    # Units and constants
    'token', 'native_token',
    'SYSTEM_WALLET', 'ESCROW_WALLET', 'OPERATOR_WALLET', 'NATIVE_CURRENCY',
    'UNIT_TYPE_TOKEN', 'UNIT_TYPE_COLLATERAL', 'UNIT_TYPE_LOAN',
    # Ledger
    'Ledger',
    # Arithmetic
    'percentage', 'installment_amount', 'approval_split', 'payment_split',
    'loan_end_after',
    # Config
    'ProtocolConfig', 'ConfigurationError',
    # Collateral
    'AssetRef', 'collateral_symbol', 'parse_collateral_symbol',
    'create_collateral_unit', 'mint_collateral', 'collateral_moves', 'owner_of',
    # Loans
    'LoanStatus', 'LoanTerms', 'LoanState', 'Loan', 'loan_symbol', 'load_loan',
    'check_transition', 'compute_create', 'compute_approval',
    'compute_cancellation', 'compute_payment', 'compute_extension',
    'compute_withdrawal', 'loan_transact',
    # Services
    'CustodyGateway', 'LedgerCustody', 'LoanRegistry', 'LoanLifecycleEngine',
    'EventBus', 'LoanEvent',
    'LOAN_CREATED', 'LOAN_APPROVED', 'LOAN_CANCELLED', 'LOAN_PAYMENT',
    'LOAN_EXTENDED', 'ITEMS_WITHDRAWN', 'CONFIG_CHANGED',
    # Logging
    'setup_logging', 'get_logger', 'JsonFormatter',
]

__version__ = '1.0.0'

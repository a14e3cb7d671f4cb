#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: A Loan From Request to Release

A walkthrough of the lending protocol. Each step builds on the previous one.
Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:   Setup        - The market ledger, collateral items, custody approvals
  4-6:   Origination  - Requesting a loan, the LTV ceiling, funding it
  7-9:   Servicing    - Installments, payment rules, extensions
  10-11: Closing      - Releasing collateral after repayment and after default
  12:    Audit        - Event log and conservation proof

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
    python demo.py --log     # Also show the protocol's log lines
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import sys

from lending import (
    Ledger, LoanLifecycleEngine, ProtocolConfig,
    build_transaction, fund_moves, token, native_token,
    create_collateral_unit, mint_collateral, owner_of,
    percentage, approval_split, payment_split,
    SYSTEM_WALLET, NATIVE_CURRENCY,
    LoanError, setup_logging,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)

    # Initial funding
    wallet_funds: int = 50_000
    escrow_reserve: int = 5_000

    # Loan terms
    loan_amount: int = 1_000
    assets_value: int = 2_000
    interest_rate: int = 50
    installment_frequency: int = 7
    nr_of_installments: int = 5

    collection: str = "0xpunks"


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    """Print a section header within a step."""
    print(f"\n--- {text} ---\n")


def show_balances(ledger: Ledger, wallets, unit: str = "USDC"):
    for wallet in wallets:
        print(f"  {wallet:<10} {unit}: {ledger.get_balance(wallet, unit)}")


def show_loan(engine: LoanLifecycleEngine, loan_id: int):
    loan = engine.get_loan(loan_id)
    print(f"  status:        {loan.status.name} ({int(loan.status)})")
    print(f"  lender:        {loan.lender}")
    print(f"  payments:      {loan.state.nr_of_payments}/{loan.state.nr_of_installments}")
    print(f"  installment:   {loan.installment}")
    print(f"  loan_end:      {loan.state.loan_end}")


# ============================================================================
# PHASE 1: SETUP (Steps 1-3)
# ============================================================================

def step_01_market():
    """Create the ledger, tokens and funded wallets."""
    step_header(1, "The Market",
        "Loans are recorded on a double-entry ledger alongside the money they move.")

    print("""
    Everything the protocol touches lives on one ledger:

    - USDC and the native asset, whole base units, never below zero
    - One unit per collateral item, exactly one holder at a time
    - One unit per loan, carrying the loan record as its state

    escrow holds pledged items and a small reserve; operator collects fees.
    """)

    wait_for_enter()

    ledger = Ledger("demo", CONFIG.start_time)
    ledger.register_unit(token("USDC", "USD Coin"))
    ledger.register_unit(native_token())
    for wallet in ("alice", "bob", "carol", "admin", "operator", "escrow"):
        ledger.register_wallet(wallet)

    moves = []
    for wallet in ("alice", "bob", "carol", "admin"):
        moves += fund_moves("USDC", SYSTEM_WALLET, wallet, CONFIG.wallet_funds, f"faucet_{wallet}")
    moves += fund_moves("USDC", SYSTEM_WALLET, "escrow", CONFIG.escrow_reserve, "faucet_escrow")
    ledger.execute(build_transaction(ledger, moves))

    section_header("Balances")
    show_balances(ledger, ("alice", "bob", "carol", "escrow", "operator"))
    return ledger


def step_02_collateral(ledger: Ledger):
    """Mint collateral items."""
    step_header(2, "Collateral Items",
        "Each item is its own unit: contract address plus token id.")

    for token_id in (1, 2):
        ledger.register_unit(create_collateral_unit(CONFIG.collection, token_id))
        ledger.execute(mint_collateral(ledger, CONFIG.collection, token_id, "alice"))

    section_header("Owners")
    for token_id in (1, 2):
        print(f"  {CONFIG.collection}#{token_id}: {owner_of(ledger, CONFIG.collection, token_id)}")
    return ledger


def step_03_engine(ledger: Ledger):
    """Start the engine and grant custody approvals."""
    step_header(3, "Engine and Custody",
        "Nothing leaves a wallet without the owner's approval.")

    print("""
    The engine serializes every operation behind one lock. Value moves go
    through the custody gateway, which checks that the owner approved escrow
    for the item, or granted an allowance for the token.
    """)

    wait_for_enter()

    engine = LoanLifecycleEngine(ledger, ProtocolConfig())
    for token_id in (1, 2):
        engine.custody.authorize_collateral("alice", CONFIG.collection, token_id)
    for wallet in ("alice", "bob", "carol", "admin"):
        engine.custody.authorize_funds(wallet, "USDC", 10 * CONFIG.wallet_funds)

    section_header("Protocol parameters")
    config = engine.config
    print(f"  ltv:                      {config.ltv} (precision {config.ltv_precision})")
    print(f"  loan_fee:                 {config.loan_fee}%")
    print(f"  interest_rate_to_company: {config.interest_rate_to_company}%")
    return engine


# ============================================================================
# PHASE 2: ORIGINATION (Steps 4-6)
# ============================================================================

def step_04_ltv_ceiling(engine: LoanLifecycleEngine):
    """A request above the LTV ceiling is refused."""
    step_header(4, "The LTV Ceiling",
        "A loan may not exceed ltv / 10^precision of the collateral value.")

    too_much = CONFIG.assets_value * 7 // 10
    ratio = percentage(too_much, CONFIG.assets_value, engine.config.ltv_precision)
    print(f">>> create_loan(... loan_amount={too_much}, assets_value={CONFIG.assets_value} ...)")
    print(f"    ratio = {ratio}, ceiling = {engine.config.ltv}")
    try:
        engine.create_loan(
            "alice", too_much, CONFIG.installment_frequency, CONFIG.nr_of_installments,
            "USDC", CONFIG.assets_value, CONFIG.interest_rate, [(CONFIG.collection, 1)],
        )
    except LoanError as e:
        print(f"    rejected: {e}")

    section_header("Nothing moved")
    print(f"  {CONFIG.collection}#1 still held by {owner_of(engine.ledger, CONFIG.collection, 1)}")
    print(f"  loans on record: {engine.loan_count()}")


def step_05_request(engine: LoanLifecycleEngine):
    """Open a loan request."""
    step_header(5, "Requesting a Loan",
        "create_loan pledges the collateral to escrow and opens the request.")

    loan_id = engine.create_loan(
        "alice", CONFIG.loan_amount, CONFIG.installment_frequency, CONFIG.nr_of_installments,
        "USDC", CONFIG.assets_value, CONFIG.interest_rate, [(CONFIG.collection, 1)],
    )
    print(f">>> loan_id = {loan_id}")
    show_loan(engine, loan_id)
    print(f"\n  {CONFIG.collection}#1 now held by {owner_of(engine.ledger, CONFIG.collection, 1)}")
    return loan_id


def step_06_fund(engine: LoanLifecycleEngine, loan_id: int):
    """Fund the loan, first with the wrong amount."""
    step_header(6, "Funding",
        "The lender sends exactly loan_amount. The first valid approval wins.")

    section_header("Wrong amount")
    try:
        engine.approve_loan("bob", loan_id, CONFIG.loan_amount - 1)
    except LoanError as e:
        print(f"  rejected: {e}")

    section_header("Exact amount")
    engine.approve_loan("bob", loan_id, CONFIG.loan_amount)
    _, fee = approval_split(CONFIG.loan_amount, engine.config.loan_fee)
    print(f"  alice receives {CONFIG.loan_amount}, operator receives {fee} from the escrow reserve")
    show_loan(engine, loan_id)

    section_header("Second lender")
    try:
        engine.approve_loan("carol", loan_id, CONFIG.loan_amount)
    except LoanError as e:
        print(f"  rejected: {e}")

    show_balances(engine.ledger, ("alice", "bob", "escrow", "operator"))


# ============================================================================
# PHASE 3: SERVICING (Steps 7-9)
# ============================================================================

def step_07_installment(engine: LoanLifecycleEngine, loan_id: int):
    """Pay one installment."""
    step_header(7, "Paying an Installment",
        "installment = (loan_amount + interest_rate) // nr_of_installments")

    installment = engine.get_installment_amount(loan_id)
    lender_share, operator_share = payment_split(installment, 1, engine.config.interest_rate_to_company)
    engine.advance_time(CONFIG.start_time + timedelta(days=6))
    engine.pay_loan("alice", loan_id, installment)

    print(f"  paid {installment}: lender {lender_share}, operator {operator_share}")
    show_loan(engine, loan_id)


def step_08_payment_rules(engine: LoanLifecycleEngine, loan_id: int):
    """Only whole installments are accepted."""
    step_header(8, "Payment Rules",
        "Payments cover whole installments, and never more than remain.")

    installment = engine.get_installment_amount(loan_id)
    for amount in (installment // 2, installment + installment // 2, installment * 10):
        try:
            engine.pay_loan("alice", loan_id, amount)
        except LoanError as e:
            print(f"  {amount:>5}: {e}")

    engine.pay_loan("alice", loan_id, installment * 2)
    print(f"  {installment * 2:>5}: accepted, two installments")
    show_loan(engine, loan_id)


def step_09_extension(engine: LoanLifecycleEngine, loan_id: int):
    """The lender grants an extension."""
    step_header(9, "Extension",
        "extend_loan(n) moves the deadline n days and forgives n installments.")

    before = engine.get_loan(loan_id).state
    engine.extend_loan("bob", loan_id, 1)
    after = engine.get_loan(loan_id).state
    print(f"  loan_end:     {before.loan_end} -> {after.loan_end}")
    print(f"  payments:     {before.nr_of_payments} -> {after.nr_of_payments}")
    print(f"  installments: {before.nr_of_installments} -> {after.nr_of_installments}")


# ============================================================================
# PHASE 4: CLOSING (Steps 10-11)
# ============================================================================

def step_10_repay_and_release(engine: LoanLifecycleEngine, loan_id: int):
    """Finish paying and take the collateral back."""
    step_header(10, "Repayment and Release",
        "A fully paid loan returns the collateral to the borrower.")

    loan = engine.get_loan(loan_id)
    engine.pay_loan("alice", loan_id, loan.installment * loan.remaining_installments)
    show_loan(engine, loan_id)

    engine.withdraw_items("alice", loan_id)
    print(f"\n  {CONFIG.collection}#1 held by {owner_of(engine.ledger, CONFIG.collection, 1)}")
    try:
        engine.withdraw_items("alice", loan_id)
    except LoanError as e:
        print(f"  second withdraw: {e}")


def step_11_default(engine: LoanLifecycleEngine):
    """A loan that runs past its deadline."""
    step_header(11, "Default",
        "After the deadline an unpaid loan's collateral goes to the lender.")

    loan_id = engine.create_loan(
        "alice", CONFIG.loan_amount, CONFIG.installment_frequency, CONFIG.nr_of_installments,
        "USDC", CONFIG.assets_value, 0, [(CONFIG.collection, 2)],
    )
    engine.approve_loan("carol", loan_id, CONFIG.loan_amount)
    deadline = engine.get_loan(loan_id).state.loan_end
    engine.advance_time(deadline + timedelta(days=1))

    try:
        engine.pay_loan("alice", loan_id, engine.get_installment_amount(loan_id))
    except LoanError as e:
        print(f"  late payment: {e}")

    engine.withdraw_items("carol", loan_id)
    print(f"  {CONFIG.collection}#2 held by {owner_of(engine.ledger, CONFIG.collection, 2)}")


# ============================================================================
# PHASE 5: AUDIT (Step 12)
# ============================================================================

def step_12_audit(engine: LoanLifecycleEngine):
    """Replay the event log and prove conservation."""
    step_header(12, "Audit",
        "Every committed operation left one event; no value was created.")

    section_header("Event log")
    for event in engine.events.events:
        print(f"  #{event.sequence:<3} {event.timestamp:%Y-%m-%d} {event.event_type:<15} "
              f"loan={event.loan_id} actor={event.actor}")

    section_header("Conservation")
    ledger = engine.ledger
    for unit in ("USDC", NATIVE_CURRENCY):
        print(f"  total {unit:<7} (system included): {ledger.total_supply(unit)}")
    issued = 4 * CONFIG.wallet_funds + CONFIG.escrow_reserve
    held = sum(
        (ledger.get_balance(w, "USDC") for w in ledger.list_wallets() if w != SYSTEM_WALLET),
        Decimal("0"),
    )
    print(f"  USDC issued {issued}, held {held}")


def main():
    if "--log" in sys.argv:
        setup_logging("INFO")

    print("\n" + "=" * 70)
    print("       LENDING PROTOCOL TUTORIAL")
    print("=" * 70)

    ledger = step_01_market()
    wait_for_enter()
    ledger = step_02_collateral(ledger)
    wait_for_enter()
    engine = step_03_engine(ledger)
    wait_for_enter()

    step_04_ltv_ceiling(engine)
    wait_for_enter()
    loan_id = step_05_request(engine)
    wait_for_enter()
    step_06_fund(engine, loan_id)
    wait_for_enter()

    step_07_installment(engine, loan_id)
    wait_for_enter()
    step_08_payment_rules(engine, loan_id)
    wait_for_enter()
    step_09_extension(engine, loan_id)
    wait_for_enter()

    step_10_repay_and_release(engine, loan_id)
    wait_for_enter()
    step_11_default(engine)
    wait_for_enter()

    step_12_audit(engine)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    Next steps:
      - See lending/units/loan.py for the transition functions
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()

"""Protocol-wide configuration: LTV ceiling, fee rates and well-known wallets."""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any
import os

from .core import ESCROW_WALLET, NATIVE_CURRENCY, OPERATOR_WALLET


class ConfigurationError(ValueError):
    """Raised when a configuration value is invalid."""


@dataclass(frozen=True, slots=True)
class ProtocolConfig:
    """
    Global parameters read by every loan transition.

    ltv is a fixed-point percentage with ``ltv_precision`` implied decimals
    (600 with precision 3 = 60.0%). loan_fee and the interest rates are whole
    percentages (0-100).
    """
    ltv: int = 600
    ltv_precision: int = 3
    loan_fee: int = 1
    interest_rate_to_company: int = 40
    interest_rate_to_lender: int = 60
    admin: str = "admin"
    operator: str = OPERATOR_WALLET
    escrow: str = ESCROW_WALLET
    native_currency: str = NATIVE_CURRENCY
    log_level: str = "INFO"

    def validate(self) -> "ProtocolConfig":
        """Check every field; return self so calls can be chained."""
        if not isinstance(self.ltv, int) or self.ltv <= 0:
            raise ConfigurationError(f"ltv must be a positive integer, got {self.ltv!r}")
        if not isinstance(self.ltv_precision, int) or self.ltv_precision < 0:
            raise ConfigurationError(f"ltv_precision must be >= 0, got {self.ltv_precision!r}")
        for name in ("loan_fee", "interest_rate_to_company", "interest_rate_to_lender"):
            value = getattr(self, name)
            if not isinstance(value, int) or not 0 <= value <= 100:
                raise ConfigurationError(f"{name} must be an integer in 0..100, got {value!r}")
        wallets = [self.admin, self.operator, self.escrow]
        if any(not w or not w.strip() for w in wallets):
            raise ConfigurationError("admin, operator and escrow wallets must be non-empty")
        if len(set(wallets)) != len(wallets):
            raise ConfigurationError("admin, operator and escrow wallets must be distinct")
        return self

    def with_changes(self, **changes: Any) -> "ProtocolConfig":
        """Return a validated copy with the given fields replaced."""
        return replace(self, **changes).validate()

    @classmethod
    def from_env(cls) -> "ProtocolConfig":
        """Create config from ``LENDING_*`` environment variables."""
        defaults = cls()

        def _int(name: str, default: int) -> int:
            raw = os.getenv(name)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None

        return cls(
            ltv=_int("LENDING_LTV", defaults.ltv),
            ltv_precision=_int("LENDING_LTV_PRECISION", defaults.ltv_precision),
            loan_fee=_int("LENDING_LOAN_FEE", defaults.loan_fee),
            interest_rate_to_company=_int(
                "LENDING_INTEREST_RATE_TO_COMPANY", defaults.interest_rate_to_company
            ),
            interest_rate_to_lender=_int(
                "LENDING_INTEREST_RATE_TO_LENDER", defaults.interest_rate_to_lender
            ),
            admin=os.getenv("LENDING_ADMIN", defaults.admin),
            operator=os.getenv("LENDING_OPERATOR", defaults.operator),
            escrow=os.getenv("LENDING_ESCROW", defaults.escrow),
            native_currency=os.getenv("LENDING_NATIVE_CURRENCY", defaults.native_currency),
            log_level=os.getenv("LENDING_LOG_LEVEL", defaults.log_level),
        ).validate()

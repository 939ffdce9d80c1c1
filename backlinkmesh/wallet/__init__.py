"""
Abstract payment provider interface and registry.

Depends on: (nothing)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


class PaymentError(RuntimeError):
    """The payment backend refused or failed a request."""


@dataclass
class Invoice:
    payment_request: str
    payment_hash: str
    amount_sats: int
    memo: str = ""


@dataclass
class PaymentResult:
    payment_hash: str
    preimage: Optional[str] = None


@dataclass
class PaymentStatus:
    paid: bool
    preimage: Optional[str] = None
    amount_sats: Optional[int] = None


class PaymentProvider(ABC):
    """Abstract payment provider. Implement for each backend."""

    name: str

    @abstractmethod
    async def create_invoice(self, amount_sats: int, memo: str = "") -> Invoice:
        ...

    @abstractmethod
    async def pay_invoice(self, payment_request: str) -> PaymentResult:
        ...

    @abstractmethod
    async def check_payment(self, payment_hash: str) -> PaymentStatus:
        ...

    @abstractmethod
    async def get_balance(self) -> int:
        """Spendable balance in sats."""
        ...


# Registry
_providers: dict[str, PaymentProvider] = {}


def register_provider(provider: PaymentProvider) -> None:
    """Register a payment provider under its name."""
    _providers[provider.name] = provider


def get_provider(name: str) -> Optional[PaymentProvider]:
    """Get the payment provider registered as ``name``, or None."""
    return _providers.get(name)


def get_all_providers() -> dict[str, PaymentProvider]:
    """Get all registered payment providers."""
    return dict(_providers)

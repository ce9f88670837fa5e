from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict


class PaymentGatewayError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        definitive: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = str(code or "").strip() or None
        self.definitive = bool(definitive)


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str | None
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class SessionVerification:
    session_id: str
    paid: bool
    status: str
    amount: Decimal
    currency: str | None = None
    payment_intent_id: str | None = None
    order_id: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def gateway_reference(self) -> str:
        return self.session_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "paid": self.paid,
            "status": self.status,
            "amount": str(self.amount),
            "currency": self.currency,
            "payment_intent_id": self.payment_intent_id,
            "order_id": self.order_id,
        }


class PaymentGateway(ABC):
    @abstractmethod
    def create_checkout_session(
        self,
        *,
        order_id: str,
        order_number: str | None,
        amount: Decimal,
        currency: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        raise NotImplementedError

    @abstractmethod
    def verify_session(self, session_id: str) -> SessionVerification:
        raise NotImplementedError

    @abstractmethod
    def verify_transaction(self, transaction_ref: str, *, method: str) -> SessionVerification:
        """Checks a card/UPI transaction reported through the non-redirect path."""
        raise NotImplementedError

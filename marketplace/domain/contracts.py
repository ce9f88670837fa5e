from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True)
class ServiceOutput:
    payload: Dict[str, Any]
    status_code: int = 200


@dataclass(frozen=True)
class Actor:
    role: str
    user_id: str | None = None

    @property
    def party(self) -> str:
        return "buyer" if self.role == "buyer" else "seller"


@dataclass(frozen=True)
class CartCreateInput:
    title: str | None
    notes: str | None
    items: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class CartItemInput:
    product_name: str | None
    quantity: Any
    sku_code: str | None = None
    catalog_item_id: str | None = None
    customization_note: str | None = None


@dataclass(frozen=True)
class QuotationCreateInput:
    items: List[Dict[str, Any]]
    terms: str | None = None
    is_final_offer: bool = False
    currency: str | None = None


@dataclass(frozen=True)
class QuotationUpdateInput:
    items: List[Dict[str, Any]] | None = None
    terms: str | None = None
    is_final_offer: bool | None = None


@dataclass(frozen=True)
class CounterOfferInput:
    items: List[Dict[str, Any]]
    message: str | None = None


@dataclass(frozen=True)
class PaymentInitInput:
    method: str
    amount: Any
    transaction_ref: str | None = None
    payment_type: str | None = None


@dataclass(frozen=True)
class OrderStatusInput:
    status: str
    reason: str | None = None

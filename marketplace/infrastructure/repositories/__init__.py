from marketplace.infrastructure.repositories.base import BaseRepository, TenantScopeRequiredError
from marketplace.infrastructure.repositories.cart_repository import CartRepository
from marketplace.infrastructure.repositories.catalog_repository import CatalogRepository
from marketplace.infrastructure.repositories.negotiation_repository import NegotiationRepository
from marketplace.infrastructure.repositories.order_repository import OrderRepository
from marketplace.infrastructure.repositories.quotation_repository import QuotationRepository
from marketplace.infrastructure.repositories.reconciliation_marker_repository import ReconciliationMarkerRepository
from marketplace.infrastructure.repositories.status_event_repository import StatusEventRepository

__all__ = [
    "BaseRepository",
    "CartRepository",
    "CatalogRepository",
    "NegotiationRepository",
    "OrderRepository",
    "QuotationRepository",
    "ReconciliationMarkerRepository",
    "StatusEventRepository",
    "TenantScopeRequiredError",
]

"""Inventory availability classification for requested cart lines.

The report is recomputed from scratch on every run; nothing here is persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from marketplace.workflow.money import ZERO, to_money


FULLY_AVAILABLE = "fully_available"
PARTIALLY_AVAILABLE = "partially_available"
NEEDS_EXTERNAL_MANUFACTURER = "needs_external_manufacturer"
UNAVAILABLE = "unavailable"

INVENTORY_STATUSES = (FULLY_AVAILABLE, PARTIALLY_AVAILABLE, NEEDS_EXTERNAL_MANUFACTURER, UNAVAILABLE)

SOURCE_INTERNAL = "internal_inventory"
SOURCE_MANUFACTURER = "manufacturer"
SOURCE_MARKETPLACE = "marketplace"

RISK_STOCK_MISMATCH = "STOCK_MISMATCH"
RISK_MOQ_VIOLATION = "MOQ_VIOLATION"
RISK_LEAD_TIME = "LEAD_TIME_RISK"
RISK_NO_BASE_COST = "NO_BASE_COST"

DEFAULT_LEAD_TIME_RISK_DAYS = 30


def _optional_money(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    amount = to_money(value, default=Decimal("-1"))
    if amount < ZERO:
        return None
    return amount


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class InternalSource:
    sku_code: str
    available_qty: int
    unit_cost: Decimal | None = None
    lead_time_days: int | None = None
    moq: int | None = None
    location: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "InternalSource":
        return cls(
            sku_code=str(row.get("sku_code") or ""),
            available_qty=max(0, _optional_int(row.get("available_qty")) or 0),
            unit_cost=_optional_money(row.get("unit_cost")),
            lead_time_days=_optional_int(row.get("lead_time_days")),
            moq=_optional_int(row.get("moq")),
            location=row.get("location") or None,
        )


@dataclass(frozen=True)
class ManufacturerInfo:
    company_name: str
    contact_person: str | None = None
    email: str | None = None
    phone: str | None = None
    city: str | None = None
    country: str | None = None
    website: str | None = None
    min_order_value: Decimal | None = None
    avg_lead_time_days: int | None = None
    is_verified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "company_name": self.company_name,
            "contact_person": self.contact_person,
            "email": self.email,
            "phone": self.phone,
            "city": self.city,
            "country": self.country,
            "website": self.website,
            "min_order_value": None if self.min_order_value is None else str(self.min_order_value),
            "avg_lead_time_days": self.avg_lead_time_days,
            "is_verified": self.is_verified,
        }


@dataclass(frozen=True)
class ExternalSource:
    catalog_item_id: str
    source: str
    unit_cost_min: Decimal | None = None
    unit_cost_max: Decimal | None = None
    moq: int | None = None
    lead_time_days: int | None = None
    manufacturer: ManufacturerInfo | None = None

    @property
    def is_verified(self) -> bool:
        return bool(self.manufacturer and self.manufacturer.is_verified)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ExternalSource":
        manufacturer = None
        if row.get("company_name"):
            manufacturer = ManufacturerInfo(
                company_name=str(row.get("company_name")),
                contact_person=row.get("contact_person") or None,
                email=row.get("email") or None,
                phone=row.get("phone") or None,
                city=row.get("city") or None,
                country=row.get("country") or None,
                website=row.get("website") or None,
                min_order_value=_optional_money(row.get("min_order_value")),
                avg_lead_time_days=_optional_int(row.get("avg_lead_time_days")),
                is_verified=bool(row.get("is_verified")),
            )
        return cls(
            catalog_item_id=str(row.get("catalog_item_id") or row.get("id") or ""),
            source=str(row.get("source") or SOURCE_MANUFACTURER),
            unit_cost_min=_optional_money(row.get("unit_cost_min")),
            unit_cost_max=_optional_money(row.get("unit_cost_max")),
            moq=_optional_int(row.get("moq")),
            lead_time_days=_optional_int(row.get("lead_time_days")),
            manufacturer=manufacturer,
        )


@dataclass(frozen=True)
class ValidationRequest:
    cart_item_id: str
    product_name: str
    requested_qty: int
    sku_code: str | None = None
    source_type: str | None = None
    internal_sources: tuple[InternalSource, ...] = field(default_factory=tuple)
    external_sources: tuple[ExternalSource, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ValidationItem:
    cart_item_id: str
    product_name: str
    sku_code: str | None
    source_type: str | None
    requested_qty: int
    available_qty: int
    shortfall: int
    unfulfillable_qty: int
    inventory_status: str
    available_source: str | None
    internal_unit_cost: Decimal | None
    unit_cost_min: Decimal | None
    unit_cost_max: Decimal | None
    moq: int | None
    lead_time_days: int | None
    lead_time_display: str | None
    external_catalog_item_id: str | None
    manufacturer: ManufacturerInfo | None
    risk_flags: tuple[str, ...]

    @property
    def internal_cost(self) -> Decimal | None:
        if self.internal_unit_cost is None:
            return None
        allocated = min(self.available_qty, self.requested_qty)
        return (self.internal_unit_cost * allocated).quantize(Decimal("0.01"))

    @property
    def external_cost_range(self) -> tuple[Decimal, Decimal] | None:
        if self.shortfall <= 0:
            return None
        low = self.unit_cost_min if self.unit_cost_min is not None else self.unit_cost_max
        high = self.unit_cost_max if self.unit_cost_max is not None else self.unit_cost_min
        if low is None or high is None:
            return None
        return (low * self.shortfall).quantize(Decimal("0.01")), (high * self.shortfall).quantize(Decimal("0.01"))

    @property
    def low_confidence(self) -> bool:
        return RISK_NO_BASE_COST in self.risk_flags

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cart_item_id": self.cart_item_id,
            "product_name": self.product_name,
            "sku_code": self.sku_code,
            "source_type": self.source_type,
            "requested_qty": self.requested_qty,
            "available_qty": self.available_qty,
            "shortfall": self.shortfall,
            "unfulfillable_qty": self.unfulfillable_qty,
            "inventory_status": self.inventory_status,
            "available_source": self.available_source,
            "internal_unit_cost": None if self.internal_unit_cost is None else str(self.internal_unit_cost),
            "unit_cost_min": None if self.unit_cost_min is None else str(self.unit_cost_min),
            "unit_cost_max": None if self.unit_cost_max is None else str(self.unit_cost_max),
            "moq": self.moq,
            "lead_time_days": self.lead_time_days,
            "lead_time_display": self.lead_time_display,
            "external_catalog_item_id": self.external_catalog_item_id,
            "manufacturer_info": self.manufacturer.to_dict() if self.manufacturer else None,
            "risk_flags": list(self.risk_flags),
            "low_confidence": self.low_confidence,
        }


@dataclass(frozen=True)
class ValidationSummary:
    total_items: int
    fully_available: int
    partially_available: int
    needs_external_manufacturer: int
    unavailable: int
    total_requested_qty: int
    total_available_qty: int
    total_shortfall: int
    total_unfulfillable_qty: int
    estimated_internal_cost: Decimal
    estimated_external_cost_min: Decimal
    estimated_external_cost_max: Decimal
    longest_lead_time_days: int
    low_confidence_items: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_items": self.total_items,
            "fully_available": self.fully_available,
            "partially_available": self.partially_available,
            "needs_external_manufacturer": self.needs_external_manufacturer,
            "unavailable": self.unavailable,
            "total_requested_qty": self.total_requested_qty,
            "total_available_qty": self.total_available_qty,
            "total_shortfall": self.total_shortfall,
            "total_unfulfillable_qty": self.total_unfulfillable_qty,
            "estimated_internal_cost": str(self.estimated_internal_cost),
            "estimated_external_cost_min": str(self.estimated_external_cost_min),
            "estimated_external_cost_max": str(self.estimated_external_cost_max),
            "longest_lead_time_days": self.longest_lead_time_days,
            "low_confidence_items": self.low_confidence_items,
        }


@dataclass(frozen=True)
class ValidationReport:
    items: tuple[ValidationItem, ...]
    summary: ValidationSummary

    def bucket(self, status: str) -> List[ValidationItem]:
        return [item for item in self.items if item.inventory_status == status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "report": {status: [item.to_dict() for item in self.bucket(status)] for status in INVENTORY_STATUSES},
            "summary": self.summary.to_dict(),
        }


def format_lead_time(days: int | None) -> str | None:
    if days is None:
        return None
    if days <= 7:
        return f"{days} days"
    if days <= 30:
        weeks = -(-days // 7)
        return f"{weeks} week{'s' if weeks > 1 else ''}"
    months = -(-days // 30)
    return f"{months} month{'s' if months > 1 else ''}"


def best_internal_source(sources: Iterable[InternalSource]) -> InternalSource | None:
    candidates = list(sources)
    if not candidates:
        return None
    # Single best source: most stock, then cheapest known cost.
    return max(
        candidates,
        key=lambda source: (
            source.available_qty,
            source.unit_cost is not None,
            -(source.unit_cost or ZERO),
        ),
    )


def best_external_source(sources: Iterable[ExternalSource]) -> ExternalSource | None:
    candidates = list(sources)
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda source: (
            not source.is_verified,
            source.lead_time_days if source.lead_time_days is not None else 10**6,
            source.unit_cost_min if source.unit_cost_min is not None else Decimal("Infinity"),
            source.source != SOURCE_MANUFACTURER,
        ),
    )


def _risk_flags(
    *,
    requested: int,
    internal: InternalSource | None,
    external: ExternalSource | None,
    lead_time_days: int | None,
    has_cost: bool,
    lead_time_risk_days: int,
) -> tuple[str, ...]:
    flags: List[str] = []
    if internal is not None and internal.available_qty < requested:
        flags.append(RISK_STOCK_MISMATCH)
    moq = (internal.moq if internal is not None else None) or (external.moq if external is not None else None) or 0
    if moq > 0 and requested < moq:
        flags.append(RISK_MOQ_VIOLATION)
    if lead_time_days is not None and lead_time_days > lead_time_risk_days:
        flags.append(RISK_LEAD_TIME)
    if not has_cost:
        flags.append(RISK_NO_BASE_COST)
    return tuple(flags)


def classify_item(request: ValidationRequest, *, lead_time_risk_days: int = DEFAULT_LEAD_TIME_RISK_DAYS) -> ValidationItem:
    requested = max(0, int(request.requested_qty))
    internal = best_internal_source(request.internal_sources)
    external = best_external_source(request.external_sources)
    available = internal.available_qty if internal is not None else 0

    if requested == 0 or available >= requested:
        status = FULLY_AVAILABLE
        shortfall = 0
        unfulfillable = 0
    elif available > 0:
        status = PARTIALLY_AVAILABLE
        shortfall = requested - available
        unfulfillable = 0
    elif external is not None:
        status = NEEDS_EXTERNAL_MANUFACTURER
        shortfall = requested
        unfulfillable = 0
    else:
        status = UNAVAILABLE
        shortfall = 0
        unfulfillable = requested

    uses_external = status in {PARTIALLY_AVAILABLE, NEEDS_EXTERNAL_MANUFACTURER} and external is not None
    if status == FULLY_AVAILABLE or (status == PARTIALLY_AVAILABLE and external is None):
        available_source = SOURCE_INTERNAL
    elif uses_external:
        available_source = external.source
    else:
        available_source = None

    lead_times = []
    if internal is not None and available > 0 and internal.lead_time_days is not None:
        lead_times.append(internal.lead_time_days)
    if uses_external and external.lead_time_days is not None:
        lead_times.append(external.lead_time_days)
    lead_time_days = max(lead_times) if lead_times else None

    internal_unit_cost = internal.unit_cost if internal is not None and available > 0 else None
    unit_cost_min = external.unit_cost_min if uses_external else None
    unit_cost_max = external.unit_cost_max if uses_external else None
    has_cost = internal_unit_cost is not None or unit_cost_min is not None or unit_cost_max is not None

    return ValidationItem(
        cart_item_id=request.cart_item_id,
        product_name=request.product_name,
        sku_code=request.sku_code,
        source_type=request.source_type,
        requested_qty=requested,
        available_qty=available,
        shortfall=shortfall,
        unfulfillable_qty=unfulfillable,
        inventory_status=status,
        available_source=available_source,
        internal_unit_cost=internal_unit_cost,
        unit_cost_min=unit_cost_min,
        unit_cost_max=unit_cost_max,
        moq=(internal.moq if internal is not None and not uses_external else None)
        or (external.moq if uses_external else None),
        lead_time_days=lead_time_days,
        lead_time_display=format_lead_time(lead_time_days),
        external_catalog_item_id=external.catalog_item_id if uses_external else None,
        manufacturer=external.manufacturer if uses_external else None,
        risk_flags=_risk_flags(
            requested=requested,
            internal=internal,
            external=external if uses_external else None,
            lead_time_days=lead_time_days,
            has_cost=has_cost,
            lead_time_risk_days=lead_time_risk_days,
        ),
    )


def summarize(items: Sequence[ValidationItem]) -> ValidationSummary:
    internal_cost = ZERO
    external_min = ZERO
    external_max = ZERO
    for item in items:
        cost = item.internal_cost
        if cost is not None:
            internal_cost += cost
        cost_range = item.external_cost_range
        if cost_range is not None:
            external_min += cost_range[0]
            external_max += cost_range[1]

    def _count(status: str) -> int:
        return sum(1 for item in items if item.inventory_status == status)

    return ValidationSummary(
        total_items=len(items),
        fully_available=_count(FULLY_AVAILABLE),
        partially_available=_count(PARTIALLY_AVAILABLE),
        needs_external_manufacturer=_count(NEEDS_EXTERNAL_MANUFACTURER),
        unavailable=_count(UNAVAILABLE),
        total_requested_qty=sum(item.requested_qty for item in items),
        total_available_qty=sum(min(item.available_qty, item.requested_qty) for item in items),
        total_shortfall=sum(item.shortfall for item in items),
        total_unfulfillable_qty=sum(item.unfulfillable_qty for item in items),
        estimated_internal_cost=internal_cost,
        estimated_external_cost_min=external_min,
        estimated_external_cost_max=external_max,
        longest_lead_time_days=max((item.lead_time_days or 0 for item in items), default=0),
        low_confidence_items=sum(1 for item in items if item.low_confidence),
    )


def validate_inventory(
    requests: Sequence[ValidationRequest],
    *,
    lead_time_risk_days: int = DEFAULT_LEAD_TIME_RISK_DAYS,
) -> ValidationReport:
    items = tuple(classify_item(request, lead_time_risk_days=lead_time_risk_days) for request in requests)
    return ValidationReport(items=items, summary=summarize(items))


def all_items_validated(cart_items: Iterable[Mapping[str, Any]]) -> bool:
    rows = list(cart_items)
    return bool(rows) and all(str(row.get("inventory_status") or "") in INVENTORY_STATUSES for row in rows)

from __future__ import annotations

from typing import Any, Dict, List

from marketplace.infrastructure.repositories import CatalogRepository
from marketplace.tenant import DEFAULT_TENANT_ID


DEMO_MANUFACTURERS: List[Dict[str, Any]] = [
    {
        "key": "aurum",
        "company_name": "Aurum Crafts Pvt Ltd",
        "contact_person": "Meera Shah",
        "email": "sales@aurumcrafts.example",
        "city": "Jaipur",
        "country": "IN",
        "min_order_value": "50000.00",
        "avg_lead_time_days": 21,
        "moq": 10,
        "is_verified": True,
    },
    {
        "key": "coastal",
        "company_name": "Coastal Pearl Works",
        "contact_person": "Arun Pillai",
        "email": "orders@coastalpearl.example",
        "city": "Kochi",
        "country": "IN",
        "min_order_value": "20000.00",
        "avg_lead_time_days": 45,
        "moq": 25,
        "is_verified": False,
    },
]

DEMO_INVENTORY: List[Dict[str, Any]] = [
    {
        "sku_code": "RING-GLD-18K",
        "product_name": "18K gold band ring",
        "available_qty": 120,
        "unit_cost": "250.00",
        "lead_time_days": 3,
        "moq": 1,
        "location": "Mumbai vault",
    },
    {
        "sku_code": "NECK-PRL-22",
        "product_name": "Freshwater pearl necklace 22in",
        "available_qty": 15,
        "unit_cost": "480.00",
        "lead_time_days": 5,
        "moq": 1,
        "location": "Mumbai vault",
    },
]

DEMO_CATALOG: List[Dict[str, Any]] = [
    {
        "name": "Freshwater pearl necklace 22in",
        "sku_code": "NECK-PRL-22",
        "source": "manufacturer",
        "manufacturer": "coastal",
        "unit_cost_min": "410.00",
        "unit_cost_max": "520.00",
        "moq": 25,
        "lead_time_days": 45,
    },
    {
        "name": "Diamond tennis bracelet",
        "sku_code": "BRC-DIA-TEN",
        "source": "manufacturer",
        "manufacturer": "aurum",
        "unit_cost_min": "1800.00",
        "unit_cost_max": "2400.00",
        "moq": 5,
        "lead_time_days": 21,
    },
    {
        "name": "Emerald drop earrings",
        "sku_code": "EAR-EMR-DROP",
        "source": "marketplace",
        "manufacturer": None,
        "unit_cost_min": None,
        "unit_cost_max": None,
        "moq": 1,
        "lead_time_days": 10,
    },
]


def seed_demo_data(db, tenant_id: str | None = None) -> Dict[str, Any]:
    """Loads manufacturers, internal stock and catalog listings once per tenant."""
    tenant = (tenant_id or "").strip() or DEFAULT_TENANT_ID
    catalog = CatalogRepository(tenant_id=tenant)
    counts = catalog.count_rows(db)
    if counts["catalog_items"]:
        return {
            "seeded": False,
            "tenant_id": tenant,
            "manufacturers": counts["manufacturers"],
            "inventory_items": counts["inventory_skus"],
            "catalog_items": counts["catalog_items"],
        }

    manufacturer_ids: Dict[str, str] = {}
    for row in DEMO_MANUFACTURERS:
        fields = dict(row)
        key = fields.pop("key")
        manufacturer_ids[key] = catalog.insert_manufacturer(db, **fields)

    for row in DEMO_INVENTORY:
        catalog.upsert_inventory_sku(db, **row)

    catalog_ids: Dict[str, str] = {}
    for row in DEMO_CATALOG:
        fields = dict(row)
        manufacturer_key = fields.pop("manufacturer")
        fields["manufacturer_id"] = manufacturer_ids.get(manufacturer_key) if manufacturer_key else None
        catalog_ids[fields["sku_code"]] = catalog.insert_catalog_item(db, **fields)

    counts = catalog.count_rows(db)
    return {
        "seeded": True,
        "tenant_id": tenant,
        "manufacturers": counts["manufacturers"],
        "inventory_items": counts["inventory_skus"],
        "catalog_items": counts["catalog_items"],
        "catalog_item_ids": catalog_ids,
    }

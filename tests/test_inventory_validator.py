import unittest
from decimal import Decimal

from marketplace.workflow.inventory_validator import (
    FULLY_AVAILABLE,
    INVENTORY_STATUSES,
    NEEDS_EXTERNAL_MANUFACTURER,
    PARTIALLY_AVAILABLE,
    RISK_LEAD_TIME,
    RISK_MOQ_VIOLATION,
    RISK_NO_BASE_COST,
    RISK_STOCK_MISMATCH,
    UNAVAILABLE,
    ExternalSource,
    InternalSource,
    ManufacturerInfo,
    ValidationRequest,
    all_items_validated,
    classify_item,
    format_lead_time,
    validate_inventory,
)


def _internal(qty: int, cost: str | None = "250.00", lead: int | None = 3, moq: int | None = 1) -> InternalSource:
    return InternalSource(
        sku_code="RING-GLD-18K",
        available_qty=qty,
        unit_cost=None if cost is None else Decimal(cost),
        lead_time_days=lead,
        moq=moq,
    )


def _external(
    catalog_item_id: str = "cat-1",
    *,
    low: str | None = "400.00",
    high: str | None = "500.00",
    lead: int | None = 21,
    moq: int | None = None,
    verified: bool = False,
    source: str = "manufacturer",
) -> ExternalSource:
    return ExternalSource(
        catalog_item_id=catalog_item_id,
        source=source,
        unit_cost_min=None if low is None else Decimal(low),
        unit_cost_max=None if high is None else Decimal(high),
        moq=moq,
        lead_time_days=lead,
        manufacturer=ManufacturerInfo(company_name=f"Maker {catalog_item_id}", is_verified=verified),
    )


class InventoryValidatorTest(unittest.TestCase):
    def test_internal_stock_and_unmatched_item(self) -> None:
        report = validate_inventory(
            [
                ValidationRequest(
                    cart_item_id="ci-1",
                    product_name="Gold band",
                    requested_qty=3,
                    sku_code="RING-GLD-18K",
                    internal_sources=(_internal(10),),
                ),
                ValidationRequest(cart_item_id="ci-2", product_name="Custom tiara", requested_qty=2),
            ]
        )
        summary = report.summary
        self.assertEqual(summary.fully_available, 1)
        self.assertEqual(summary.unavailable, 1)
        self.assertEqual(summary.total_shortfall, 0)
        self.assertEqual(summary.total_unfulfillable_qty, 2)
        self.assertEqual(summary.estimated_internal_cost, Decimal("750.00"))

        payload = report.to_dict()
        self.assertEqual(set(payload["report"].keys()), set(INVENTORY_STATUSES))
        self.assertEqual([item["cart_item_id"] for item in payload["report"][FULLY_AVAILABLE]], ["ci-1"])
        self.assertEqual([item["cart_item_id"] for item in payload["report"][UNAVAILABLE]], ["ci-2"])
        self.assertEqual(payload["summary"]["unavailable"], 1)

    def test_every_item_lands_in_exactly_one_bucket(self) -> None:
        report = validate_inventory(
            [
                ValidationRequest("a", "A", 2, internal_sources=(_internal(5),)),
                ValidationRequest("b", "B", 8, internal_sources=(_internal(5),), external_sources=(_external(),)),
                ValidationRequest("c", "C", 4, external_sources=(_external(),)),
                ValidationRequest("d", "D", 1),
            ]
        )
        buckets = report.to_dict()["report"]
        bucketed = sorted(item["cart_item_id"] for items in buckets.values() for item in items)
        self.assertEqual(bucketed, ["a", "b", "c", "d"])
        self.assertEqual(
            [item.inventory_status for item in report.items],
            [FULLY_AVAILABLE, PARTIALLY_AVAILABLE, NEEDS_EXTERNAL_MANUFACTURER, UNAVAILABLE],
        )

    def test_partial_stock_reports_shortfall_and_external_range(self) -> None:
        item = classify_item(
            ValidationRequest(
                "ci-1",
                "Pearl necklace",
                40,
                internal_sources=(_internal(15, cost="480.00", lead=5),),
                external_sources=(_external(low="410.00", high="520.00", lead=45, moq=25),),
            )
        )
        self.assertEqual(item.inventory_status, PARTIALLY_AVAILABLE)
        self.assertEqual(item.available_qty, 15)
        self.assertEqual(item.shortfall, 25)
        self.assertEqual(item.available_source, "manufacturer")
        self.assertEqual(item.lead_time_days, 45)
        self.assertEqual(item.lead_time_display, "2 months")
        self.assertEqual(item.internal_cost, Decimal("7200.00"))
        self.assertEqual(item.external_cost_range, (Decimal("10250.00"), Decimal("13000.00")))
        self.assertIn(RISK_STOCK_MISMATCH, item.risk_flags)
        self.assertIn(RISK_LEAD_TIME, item.risk_flags)
        self.assertNotIn(RISK_MOQ_VIOLATION, item.risk_flags)

    def test_partial_stock_without_external_source_stays_internal(self) -> None:
        item = classify_item(ValidationRequest("ci-1", "Ring", 12, internal_sources=(_internal(4),)))
        self.assertEqual(item.inventory_status, PARTIALLY_AVAILABLE)
        self.assertEqual(item.available_source, "internal_inventory")
        self.assertEqual(item.shortfall, 8)
        self.assertIsNone(item.external_cost_range)

    def test_zero_quantity_never_reports_a_shortfall(self) -> None:
        for requested in (0, -2):
            item = classify_item(
                ValidationRequest(
                    "ci-1",
                    "Ring",
                    requested,
                    internal_sources=(_internal(4),),
                    external_sources=(_external(),),
                )
            )
            self.assertEqual(item.inventory_status, FULLY_AVAILABLE, msg=requested)
            self.assertEqual(item.requested_qty, 0)
            self.assertEqual(item.shortfall, 0)
            self.assertEqual(item.unfulfillable_qty, 0)

    def test_missing_costs_mark_item_low_confidence(self) -> None:
        item = classify_item(
            ValidationRequest(
                "ci-1",
                "Emerald drops",
                2,
                external_sources=(_external(low=None, high=None, lead=10, source="marketplace"),),
            )
        )
        self.assertEqual(item.inventory_status, NEEDS_EXTERNAL_MANUFACTURER)
        self.assertEqual(item.available_source, "marketplace")
        self.assertIn(RISK_NO_BASE_COST, item.risk_flags)
        self.assertTrue(item.low_confidence)
        self.assertTrue(item.to_dict()["low_confidence"])

        report = validate_inventory(
            [ValidationRequest("ci-1", "Emerald drops", 2, external_sources=(_external(low=None, high=None),))]
        )
        self.assertEqual(report.summary.low_confidence_items, 1)

    def test_moq_violation_for_external_sourcing(self) -> None:
        item = classify_item(ValidationRequest("ci-1", "Bracelet", 3, external_sources=(_external(moq=5),)))
        self.assertIn(RISK_MOQ_VIOLATION, item.risk_flags)
        self.assertEqual(item.moq, 5)

    def test_prefers_verified_then_fastest_manufacturer(self) -> None:
        item = classify_item(
            ValidationRequest(
                "ci-1",
                "Bracelet",
                5,
                external_sources=(
                    _external("fast-unverified", lead=7),
                    _external("slow-verified", lead=30, verified=True),
                    _external("fast-verified", lead=14, verified=True),
                ),
            )
        )
        self.assertEqual(item.external_catalog_item_id, "fast-verified")
        self.assertTrue(item.manufacturer.is_verified)

    def test_lead_time_risk_threshold_is_configurable(self) -> None:
        request = ValidationRequest("ci-1", "Bracelet", 5, external_sources=(_external(lead=21),))
        self.assertNotIn(RISK_LEAD_TIME, classify_item(request).risk_flags)
        self.assertIn(RISK_LEAD_TIME, classify_item(request, lead_time_risk_days=14).risk_flags)

    def test_format_lead_time(self) -> None:
        self.assertIsNone(format_lead_time(None))
        self.assertEqual(format_lead_time(3), "3 days")
        self.assertEqual(format_lead_time(7), "7 days")
        self.assertEqual(format_lead_time(8), "2 weeks")
        self.assertEqual(format_lead_time(30), "5 weeks")
        self.assertEqual(format_lead_time(31), "2 months")
        self.assertEqual(format_lead_time(60), "2 months")

    def test_all_items_validated(self) -> None:
        self.assertFalse(all_items_validated([]))
        self.assertFalse(all_items_validated([{"inventory_status": "fully_available"}, {"inventory_status": None}]))
        self.assertTrue(all_items_validated([{"inventory_status": "unavailable"}]))


if __name__ == "__main__":
    unittest.main()

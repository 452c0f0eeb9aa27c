"""Tests for checkout pricing: line items, totals, fulfillment options and status."""
import pytest

from agentic_checkout.models.checkout import Address, Item, Message
from agentic_checkout.services.pricing_service import (
    PricingEngine,
    ShippingMethod,
    calculate_status,
    compute_tax,
    item_param,
)

from conftest import SHIPPING_ADDRESS, fake_catalog


@pytest.fixture
def engine(clock):
    return PricingEngine(
        fake_catalog,
        tax_rate=0.10,
        shipping_tax_rate=0.0,
        shipping_methods=[
            ShippingMethod("shipping_standard", "Standard", "5-7 days", "USPS", 100, 5, 7),
            ShippingMethod("shipping_express", "Express", "2-3 days", "FedEx", 500, 2, 3),
        ],
        clock=clock,
    )


def amounts(totals):
    return {t.type: t.amount for t in totals}


class TestComputeTax:

    def test_rounds_half_up(self):
        assert compute_tax(5, 0.10) == 1
        assert compute_tax(4, 0.10) == 0
        assert compute_tax(125, 0.06) == 8

    def test_zero_rate(self):
        assert compute_tax(599, 0.0) == 0


class TestLineItems:

    @pytest.mark.asyncio
    async def test_line_item_amounts(self, engine):
        line_items, errors = await engine.build_line_items([Item(id="item_123", quantity=2)])

        assert errors == []
        line = line_items[0]
        assert line.base_amount == 600
        assert line.discount == 0
        assert line.subtotal == 600
        assert line.tax == 60
        assert line.total == 660

    @pytest.mark.asyncio
    async def test_discounted_item(self, engine):
        line_items, _ = await engine.build_line_items([Item(id="sale_item", quantity=1)])

        line = line_items[0]
        assert line.base_amount == 1000
        assert line.discount == 250
        assert line.subtotal == 750
        assert line.tax == 75
        assert line.total == 825

    @pytest.mark.asyncio
    async def test_unknown_item_becomes_error_message(self, engine):
        line_items, errors = await engine.build_line_items([
            Item(id="item_123", quantity=1),
            Item(id="nope", quantity=1),
        ])

        assert len(line_items) == 1
        assert len(errors) == 1
        assert errors[0].type == "error"
        assert errors[0].param == item_param("nope")
        assert "nope" in errors[0].content

    @pytest.mark.asyncio
    async def test_out_of_stock_item(self, engine):
        line_items, errors = await engine.build_line_items([Item(id="sold_out", quantity=1)])

        assert line_items == []
        assert errors[0].code == "out_of_stock"

    @pytest.mark.asyncio
    async def test_catalog_failure_is_reported_per_item(self, engine):
        line_items, errors = await engine.build_line_items([
            Item(id="catalog_error", quantity=1),
            Item(id="item_123", quantity=1),
        ])

        assert [li.item.id for li in line_items] == ["item_123"]
        assert errors[0].param == item_param("catalog_error")
        assert errors[0].content == "Error processing item catalog_error"
        assert "unavailable" not in errors[0].content


class TestFulfillmentOptions:

    def test_no_options_without_address(self, engine):
        assert engine.build_fulfillment_options(None) == []

    def test_options_with_address(self, engine, clock):
        options = engine.build_fulfillment_options(Address(**SHIPPING_ADDRESS))

        assert [o.id for o in options] == ["shipping_standard", "shipping_express"]
        standard = options[0]
        assert standard.subtotal == 100
        assert standard.tax == 0
        assert standard.total == 100
        assert standard.earliest_delivery_time > clock()
        assert standard.latest_delivery_time > standard.earliest_delivery_time


class TestTotals:

    @pytest.mark.asyncio
    async def test_totals_order_and_sum(self, engine):
        cart = await engine.price(
            [Item(id="item_123", quantity=1)], Address(**SHIPPING_ADDRESS), "shipping_standard"
        )

        assert [t.type for t in cart.totals] == ["items_base_amount", "subtotal", "fulfillment", "tax", "total"]
        assert amounts(cart.totals) == {
            "items_base_amount": 300,
            "subtotal": 300,
            "fulfillment": 100,
            "tax": 30,
            "total": 430,
        }

    @pytest.mark.asyncio
    async def test_items_discount_listed_when_present(self, engine):
        cart = await engine.price([Item(id="sale_item", quantity=2)], None, None)

        totals = amounts(cart.totals)
        assert totals["items_discount"] == 500
        assert totals["subtotal"] == 1500
        assert totals["total"] == 1650


class TestStatus:

    @pytest.mark.asyncio
    async def test_ready_when_complete(self, engine):
        cart = await engine.price(
            [Item(id="item_123", quantity=1)], Address(**SHIPPING_ADDRESS), "shipping_express"
        )
        assert cart.status == "ready_for_payment"
        assert cart.selected_option.id == "shipping_express"
        assert cart.messages == []

    @pytest.mark.asyncio
    async def test_missing_address_is_info(self, engine):
        cart = await engine.price([Item(id="item_123", quantity=1)], None, None)

        assert cart.status == "not_ready_for_payment"
        assert [m.type for m in cart.messages] == ["info"]
        assert cart.fulfillment_options == []

    @pytest.mark.asyncio
    async def test_missing_option_is_info(self, engine):
        cart = await engine.price([Item(id="item_123", quantity=1)], Address(**SHIPPING_ADDRESS), None)

        assert cart.status == "not_ready_for_payment"
        assert [m.type for m in cart.messages] == ["info"]

    @pytest.mark.asyncio
    async def test_invalid_option_is_blocking_error(self, engine):
        cart = await engine.price(
            [Item(id="item_123", quantity=1)], Address(**SHIPPING_ADDRESS), "shipping_teleport"
        )

        assert cart.status == "not_ready_for_payment"
        assert cart.selected_option is None
        assert cart.messages[0].type == "error"
        assert cart.messages[0].param == "$.fulfillment_option_id"

    @pytest.mark.asyncio
    async def test_option_without_address_is_blocking_error(self, engine):
        cart = await engine.price([Item(id="item_123", quantity=1)], None, "shipping_standard")

        assert cart.status == "not_ready_for_payment"
        assert cart.selected_option is None
        errors = [m for m in cart.messages if m.type == "error"]
        assert [m.param for m in errors] == ["$.fulfillment_option_id"]
        assert "shipping_standard" in errors[0].content

    @pytest.mark.asyncio
    async def test_error_message_blocks_otherwise_complete_cart(self, engine):
        cart = await engine.price(
            [Item(id="item_123", quantity=1), Item(id="nope", quantity=1)],
            Address(**SHIPPING_ADDRESS),
            "shipping_standard",
        )
        assert cart.status == "not_ready_for_payment"

    def test_calculate_status_requires_items(self):
        assert calculate_status(False, True, True, []) == "not_ready_for_payment"

    def test_calculate_status_error_wins(self):
        error = Message(type="error", code="invalid", content="bad")
        assert calculate_status(True, True, True, [error]) == "not_ready_for_payment"
        assert calculate_status(True, True, True, []) == "ready_for_payment"

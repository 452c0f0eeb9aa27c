"""
Checkout Pricing

Turns requested items, an address and a chosen fulfillment option into
line items, fulfillment options, totals, messages and the resulting
payability status. Pure computation apart from the Catalog Provider call.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Awaitable, Callable, List, Optional, Tuple

from ..mocks.catalog import PricedItem
from ..models.checkout import (
    Address,
    FulfillmentOption,
    Item,
    LineItem,
    Link,
    Message,
    SessionStatus,
    Total,
)
from ..timeutils import Clock, utcnow

logger = logging.getLogger(__name__)

CatalogLookup = Callable[[str], Awaitable[Optional[PricedItem]]]


@dataclass(frozen=True)
class ShippingMethod:
    id: str
    title: str
    subtitle: str
    carrier: str
    cost: int
    min_days: int
    max_days: int


def default_shipping_methods(standard_cost: int = 599, express_cost: int = 1999) -> List[ShippingMethod]:
    return [
        ShippingMethod(
            id="shipping_standard",
            title="Standard Shipping",
            subtitle="5-7 business days",
            carrier="USPS",
            cost=standard_cost,
            min_days=5,
            max_days=7,
        ),
        ShippingMethod(
            id="shipping_express",
            title="Express Shipping",
            subtitle="2-3 business days",
            carrier="FedEx",
            cost=express_cost,
            min_days=2,
            max_days=3,
        ),
    ]


@dataclass
class PricedCart:
    """Everything a checkout session derives from its inputs."""
    line_items: List[LineItem]
    fulfillment_options: List[FulfillmentOption]
    totals: List[Total]
    messages: List[Message]
    status: SessionStatus
    selected_option: Optional[FulfillmentOption] = None


def compute_tax(amount: int, rate: float) -> int:
    """Tax in minor units, rounded half up."""
    value = Decimal(amount) * Decimal(str(rate))
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def item_param(item_id: str) -> str:
    return f"$.items[?(@.id=='{item_id}')]"


def calculate_status(
    has_items: bool,
    has_address: bool,
    has_selected_shipping: bool,
    messages: List[Message]
) -> SessionStatus:
    """
    Completeness predicate.

    Any error message blocks payment regardless of the other inputs.
    """
    if any(m.type == "error" for m in messages):
        return "not_ready_for_payment"
    if not has_items:
        return "not_ready_for_payment"
    if not has_address:
        return "not_ready_for_payment"
    if not has_selected_shipping:
        return "not_ready_for_payment"
    return "ready_for_payment"


class PricingEngine:
    """Session pricing: line items, fulfillment options, totals and status."""

    def __init__(
        self,
        catalog: CatalogLookup,
        tax_rate: float = 0.08,
        shipping_tax_rate: float = 0.08,
        shipping_methods: Optional[List[ShippingMethod]] = None,
        base_url: str = "https://shop.example.com",
        clock: Clock = utcnow
    ):
        self._catalog = catalog
        self.tax_rate = tax_rate
        self.shipping_tax_rate = shipping_tax_rate
        self.shipping_methods = shipping_methods if shipping_methods is not None else default_shipping_methods()
        self.base_url = base_url.rstrip("/")
        self._clock = clock

    async def build_line_items(self, items: List[Item]) -> Tuple[List[LineItem], List[Message]]:
        """
        Resolve every requested item through the Catalog Provider.

        Unresolvable items are reported as error messages naming the item,
        never dropped silently.
        """
        line_items: List[LineItem] = []
        errors: List[Message] = []

        for index, item in enumerate(items):
            try:
                priced = await self._catalog(item.id)
            except Exception as e:
                logger.error(f"Catalog lookup failed for {item.id}: {e}", exc_info=True)
                errors.append(Message(
                    type="error",
                    code="invalid",
                    param=item_param(item.id),
                    content=f"Error processing item {item.id}",
                ))
                continue

            if priced is None:
                errors.append(Message(
                    type="error",
                    code="invalid",
                    param=item_param(item.id),
                    content=f"Product with ID {item.id} not found",
                ))
                continue

            if not priced.available:
                errors.append(Message(
                    type="error",
                    code="out_of_stock",
                    param=item_param(item.id),
                    content=f"Product {priced.name} ({item.id}) is out of stock",
                ))
                continue

            base_amount = priced.unit_amount * item.quantity
            discount = min(priced.unit_discount * item.quantity, base_amount)
            subtotal = base_amount - discount
            tax = compute_tax(subtotal, self.tax_rate)

            line_items.append(LineItem(
                id=f"line_{item.id}_{index}",
                item=Item(id=item.id, quantity=item.quantity),
                base_amount=base_amount,
                discount=discount,
                subtotal=subtotal,
                tax=tax,
                total=subtotal + tax,
            ))

        return line_items, errors

    def build_fulfillment_options(self, address: Optional[Address]) -> List[FulfillmentOption]:
        """Shipping options; none until an address is known."""
        if address is None:
            return []

        today = self._clock()
        options = []
        for method in self.shipping_methods:
            tax = compute_tax(method.cost, self.shipping_tax_rate)
            options.append(FulfillmentOption(
                id=method.id,
                title=method.title,
                subtitle=method.subtitle,
                carrier=method.carrier,
                earliest_delivery_time=today + timedelta(days=method.min_days),
                latest_delivery_time=today + timedelta(days=method.max_days),
                subtotal=method.cost,
                tax=tax,
                total=method.cost + tax,
            ))
        return options

    def build_totals(
        self,
        line_items: List[LineItem],
        selected: Optional[FulfillmentOption] = None
    ) -> List[Total]:
        """
        Ordered totals.

        total = subtotal - discount + fulfillment + tax + fee
        """
        totals = []

        items_base_amount = sum(li.base_amount for li in line_items)
        totals.append(Total(type="items_base_amount", display_text="Items Subtotal", amount=items_base_amount))

        items_discount = sum(li.discount for li in line_items)
        if items_discount > 0:
            totals.append(Total(type="items_discount", display_text="Items Discount", amount=items_discount))

        subtotal = items_base_amount - items_discount
        totals.append(Total(type="subtotal", display_text="Subtotal", amount=subtotal))

        # No cart-level discounts or fees are offered yet
        cart_discount = 0
        fees = 0

        fulfillment = selected.subtotal if selected else 0
        totals.append(Total(type="fulfillment", display_text="Shipping", amount=fulfillment))

        tax = sum(li.tax for li in line_items) + (selected.tax if selected else 0)
        totals.append(Total(type="tax", display_text="Tax", amount=tax))

        grand_total = subtotal - cart_discount + fulfillment + tax + fees
        totals.append(Total(type="total", display_text="Total", amount=grand_total))

        return totals

    def build_links(self) -> List[Link]:
        return [
            Link(type="terms_of_use", url=f"{self.base_url}/customer-care/terms-conditions"),
            Link(type="privacy_policy", url=f"{self.base_url}/customer-care/privacy-policy"),
        ]

    async def price(
        self,
        items: List[Item],
        address: Optional[Address],
        fulfillment_option_id: Optional[str]
    ) -> PricedCart:
        """
        Build the derived state of a session from its inputs.

        Args:
            items: Requested items
            address: Fulfillment address, if known
            fulfillment_option_id: Chosen option id, if any

        Returns:
            PricedCart with status from the completeness predicate
        """
        line_items, errors = await self.build_line_items(items)
        options = self.build_fulfillment_options(address)

        selected = None
        if fulfillment_option_id:
            selected = next((o for o in options if o.id == fulfillment_option_id), None)
            if selected is None:
                content = f"Invalid fulfillment option: {fulfillment_option_id}"
                if address is None:
                    content = f"Fulfillment option {fulfillment_option_id} requires a fulfillment address"
                errors.append(Message(
                    type="error",
                    code="invalid",
                    param="$.fulfillment_option_id",
                    content=content,
                ))

        info = []
        if address is None:
            info.append(Message(type="info", content="Please provide a shipping address to continue."))
        elif not fulfillment_option_id:
            info.append(Message(type="info", content="Please select a shipping method to continue."))

        messages = errors + info
        status = calculate_status(
            has_items=len(line_items) > 0,
            has_address=address is not None,
            has_selected_shipping=selected is not None,
            messages=messages,
        )

        return PricedCart(
            line_items=line_items,
            fulfillment_options=options,
            totals=self.build_totals(line_items, selected),
            messages=messages,
            status=status,
            selected_option=selected,
        )

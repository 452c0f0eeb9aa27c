"""
Mock Catalog Provider

Simulates the merchant's product catalog for checkout pricing.
Resolves an item id to a priced item, or None when the id is unknown.

Catalog Provider role: supplies price and availability, never sees
payment information.
"""
from typing import List, Optional, Dict
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)


@dataclass
class Product:
    """Product data structure."""
    product_id: str
    name: str
    category: str
    list_price_cents: int
    sale_price_cents: Optional[int]
    stock_status: str  # "in_stock" or "out_of_stock"
    delivery_estimate_days: int


@dataclass(frozen=True)
class PricedItem:
    """
    Catalog answer for one item id.

    unit_amount is the price actually charged per unit: the sale price when
    one is set, otherwise the list price.
    """
    item_id: str
    name: str
    unit_amount: int
    unit_discount: int = 0
    available: bool = True


PRODUCT_CATALOG: List[Product] = [
    # Living room
    Product(
        product_id="sofa_cindy_crawford_001",
        name="Cindy Crawford Home Sofa",
        category="Living Room",
        list_price_cents=129999,
        sale_price_cents=99999,
        stock_status="in_stock",
        delivery_estimate_days=7,
    ),
    Product(
        product_id="coffee_table_oak_001",
        name="Oak Lift-Top Coffee Table",
        category="Living Room",
        list_price_cents=34999,
        sale_price_cents=None,
        stock_status="in_stock",
        delivery_estimate_days=5,
    ),
    Product(
        product_id="recliner_power_001",
        name="Power Recliner",
        category="Living Room",
        list_price_cents=79999,
        sale_price_cents=None,
        stock_status="out_of_stock",
        delivery_estimate_days=14,
    ),

    # Bedroom
    Product(
        product_id="bed_queen_panel_001",
        name="Queen Panel Bed",
        category="Bedroom",
        list_price_cents=89999,
        sale_price_cents=69999,
        stock_status="in_stock",
        delivery_estimate_days=10,
    ),
    Product(
        product_id="nightstand_walnut_001",
        name="Walnut Nightstand",
        category="Bedroom",
        list_price_cents=19999,
        sale_price_cents=None,
        stock_status="in_stock",
        delivery_estimate_days=5,
    ),

    # Decor
    Product(
        product_id="throw_pillow_001",
        name="Accent Throw Pillow",
        category="Decor",
        list_price_cents=300,
        sale_price_cents=None,
        stock_status="in_stock",
        delivery_estimate_days=3,
    ),
]

_PRODUCTS_BY_ID: Dict[str, Product] = {p.product_id: p for p in PRODUCT_CATALOG}


def get_product_by_id(product_id: str) -> Optional[Product]:
    """
    Get specific product by ID.

    Args:
        product_id: Product identifier

    Returns:
        Product or None if not found
    """
    return _PRODUCTS_BY_ID.get(product_id)


async def lookup_item(item_id: str) -> Optional[PricedItem]:
    """
    Catalog Provider lookup used by checkout pricing.

    Args:
        item_id: Item identifier from the checkout request

    Returns:
        PricedItem, or None if the catalog has no such item
    """
    product = get_product_by_id(item_id)
    if product is None:
        logger.debug(f"Catalog miss: {item_id}")
        return None

    unit_amount = product.sale_price_cents or product.list_price_cents
    return PricedItem(
        item_id=product.product_id,
        name=product.name,
        unit_amount=unit_amount,
        available=product.stock_status == "in_stock",
    )

# Overview: Service-layer operations for inventory; stock reservation and restoration.

from __future__ import annotations

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Product
from ..errors import InsufficientStock, NotFound
"""
Marketplace Inventory Invariants (authoritative)

- Product.quantity is the warehouse's sellable stock and never goes negative.
- Stock moves only through this module, always as a single conditional UPDATE:
    quantity = quantity - n WHERE quantity >= n
  Two concurrent orders can therefore never both take the last units; the
  loser sees zero affected rows and gets InsufficientStock.
- Callers run inside a unit of work, so a failed reservation rolls back every
  earlier write of the same command (order row, items, other lines).
- Every reservation is paired with at most one restoration:
  order cancellation / soft delete restores order items,
  return completion restores return items.
"""


def get_product_for_warehouse(warehouse_id: int, product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None or product.warehouse_id != warehouse_id:
        raise NotFound(
            f"Product {product_id} not found in this warehouse",
            product_id=product_id,
            warehouse_id=warehouse_id,
        )
    return product


def reserve_stock(product_id: int, quantity: int) -> None:
    """
    Atomically take `quantity` units from stock.

    Raises InsufficientStock when the row no longer has enough units at the
    moment of the UPDATE, which also covers a concurrent order that got there
    first.
    """
    stmt = (
        update(Product)
        .where(Product.id == product_id, Product.quantity >= quantity)
        .values(quantity=Product.quantity - quantity)
        .execution_options(synchronize_session="evaluate")
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        raise InsufficientStock(
            f"Insufficient stock for product {product_id}",
            product_id=product_id,
            requested=quantity,
        )


def restore_stock(product_id: int, quantity: int) -> None:
    """Atomically put `quantity` units back into stock."""
    stmt = (
        update(Product)
        .where(Product.id == product_id)
        .values(quantity=Product.quantity + quantity)
        .execution_options(synchronize_session="evaluate")
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        current_app.logger.warning(
            "Stock restore skipped: product %s no longer exists (qty=%s)", product_id, quantity
        )


def restore_order_stock(order) -> None:
    """Return every reserved unit of an order to its product."""
    for item in order.items:
        restore_stock(item.product_id, item.quantity)


def restore_return_stock(return_request) -> None:
    """Put the goods of a completed return back on the warehouse's shelf."""
    for item in return_request.items:
        restore_stock(item.product_id, item.quantity)

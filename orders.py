"""
Order workflow

place_order runs in three stages:

  1. assemble_order  reads the cart, checks every line against current stock
                     and captures the unit price of each line
  2. reserve_stock   decrements stock with one conditional update per line
                     (the filter requires stock >= quantity, so two checkouts
                     can never both take the last units)
  3. write_order     inserts the order header and its items, then clears the cart

There is no multi-document transaction. Each stage undoes the writes of the
previous ones if it fails (release reserved stock, delete the header). A
compensation is attempted once; if it fails too, the failure is logged and the
original error is still raised to the caller.
"""
import logging
from typing import List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
from cart import clear_cart, load_lines, product_snapshots
from database import create_document, get_documents, now, pagination, serialize, to_object_id
from errors import Forbidden, InsufficientStock, Internal, InvalidState, NotFound, ValidationFailed
from schemas import NON_CANCELLABLE, Order, OrderItem, OrderStatus, Role

logger = logging.getLogger(__name__)

_NON_CANCELLABLE = [s.value for s in NON_CANCELLABLE]


# Assembly

def assemble_order(db: Database, user_id: str) -> Tuple[List[dict], float]:
    """Stage one item per cart line. Raises before anything is written."""
    lines = load_lines(db, user_id)
    if not lines:
        raise ValidationFailed("Cart is empty")

    total_price = 0.0
    staged = []
    for line in lines:
        product = line["product"]
        if product is None:
            raise NotFound("Product not found")
        name = product.get("name", line["product_id"])
        if config.ENFORCE_ACTIVE_AT_CHECKOUT and not product.get("is_active", True):
            raise ValidationFailed(f"{name} is no longer available")
        if product.get("stock", 0) < line["quantity"]:
            raise InsufficientStock(name)

        unit_price = float(product.get("price", 0.0))
        total_price += unit_price * line["quantity"]
        staged.append({
            "product_id": line["product_id"],
            "name": name,
            "quantity": line["quantity"],
            "unit_price": unit_price,
        })
    return staged, total_price


# Stock

def _change_stock(db: Database, product_id: str, delta: int, minimum: Optional[int] = None) -> bool:
    filt = {"_id": ObjectId(product_id)}
    if minimum is not None:
        filt["stock"] = {"$gte": minimum}
    result = db["product"].update_one(filt, {"$inc": {"stock": delta}, "$set": {"updated_at": now()}})
    return result.matched_count == 1


def release_stock(db: Database, items: List[dict]) -> None:
    """Give reserved units back. Used as a compensation, so failures are logged, not raised."""
    for item in items:
        try:
            _change_stock(db, item["product_id"], item["quantity"])
        except PyMongoError:
            logger.exception("Could not release %s units of product %s", item["quantity"], item["product_id"])


def reserve_stock(db: Database, staged: List[dict]) -> None:
    reserved = []
    for item in staged:
        try:
            ok = _change_stock(db, item["product_id"], -item["quantity"], minimum=item["quantity"])
        except PyMongoError:
            release_stock(db, reserved)
            raise
        if not ok:
            # stock moved since assembly
            release_stock(db, reserved)
            raise InsufficientStock(item["name"])
        reserved.append(item)


# Writing

def _discard_header(db: Database, order_id: ObjectId) -> None:
    try:
        db["order"].delete_one({"_id": order_id})
    except PyMongoError:
        logger.exception("Could not remove orphaned order %s", order_id)


def write_order(db: Database, user_id: str, shipping_address: str, staged: List[dict], total_price: float) -> dict:
    """Persist header and items for already-reserved stock, then empty the cart."""
    order = Order(user_id=user_id, total_price=total_price, shipping_address=shipping_address)
    try:
        header = create_document(db, "order", order.model_dump())
    except PyMongoError:
        logger.exception("Failed to create order for user %s", user_id)
        release_stock(db, staged)
        raise Internal("Failed to create order")

    order_id = str(header["_id"])
    items = [
        OrderItem(order_id=order_id, product_id=s["product_id"], quantity=s["quantity"],
                  unit_price=s["unit_price"]).model_dump()
        for s in staged
    ]
    try:
        db["orderitem"].insert_many(items)
    except PyMongoError:
        logger.exception("Failed to create items for order %s, rolling back", order_id)
        _discard_header(db, header["_id"])
        release_stock(db, staged)
        raise Internal("Failed to create order items")

    try:
        clear_cart(db, user_id)
    except PyMongoError:
        # the order stands; the user can clear the leftover lines
        logger.exception("Order %s placed but the cart of user %s was not cleared", order_id, user_id)
    return header


def place_order(db: Database, user_id: str, shipping_address: str) -> dict:
    staged, total_price = assemble_order(db, user_id)
    reserve_stock(db, staged)
    header = write_order(db, user_id, shipping_address, staged, total_price)
    logger.info("Order %s placed by user %s: %d item(s), total %.2f",
                header["_id"], user_id, len(staged), total_price)
    return with_items(db, header)


# Reading

def with_items(db: Database, order: dict) -> dict:
    """Serialized order with its items, each carrying a product snapshot."""
    out = serialize(order)
    items = get_documents(db, "orderitem", {"order_id": out["id"]})
    products = product_snapshots(db, [it["product_id"] for it in items])
    out["items"] = []
    for it in items:
        item = serialize(it)
        p = products.get(it["product_id"])
        item["product"] = {
            "id": str(p["_id"]),
            "name": p.get("name"),
            "image_url": p.get("image_url"),
            "store": p.get("store"),
        } if p else None
        out["items"].append(item)
    return out


def _load(db: Database, order_id: str) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "Order")})
    if not order:
        raise NotFound("Order not found")
    return order


def list_orders(db: Database, user_id: str, page: int = 1, limit: int = 10) -> Tuple[List[dict], dict]:
    filt = {"user_id": user_id}
    total = db["order"].count_documents(filt)
    orders = get_documents(db, "order", filt, sort=[("created_at", -1), ("_id", -1)],
                           skip=(page - 1) * limit, limit=limit)
    return [with_items(db, o) for o in orders], pagination(page, limit, total)


def get_order(db: Database, order_id: str, user: dict) -> dict:
    order = _load(db, order_id)
    if order["user_id"] != str(user["_id"]) and user.get("role") != Role.ADMIN.value:
        raise Forbidden("Not authorized to view this order")
    return with_items(db, order)


# Lifecycle

def cancel_order(db: Database, order_id: str, user_id: str) -> dict:
    order = _load(db, order_id)
    if order["user_id"] != user_id:
        raise Forbidden("Not authorized to cancel this order")
    if order["status"] in _NON_CANCELLABLE:
        raise InvalidState(f"Cannot cancel order with status: {order['status']}")

    # Guarded on status so a concurrent cancel cannot restore stock twice
    cancelled = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$nin": _NON_CANCELLABLE}},
        {"$set": {"status": OrderStatus.CANCELLED.value, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if cancelled is None:
        current = _load(db, order_id)
        raise InvalidState(f"Cannot cancel order with status: {current['status']}")

    for item in get_documents(db, "orderitem", {"order_id": str(order["_id"])}):
        if not ObjectId.is_valid(item["product_id"]) or not _change_stock(db, item["product_id"], item["quantity"]):
            logger.warning("Order %s: product %s no longer exists, stock not restored",
                           order["_id"], item["product_id"])

    logger.info("Order %s cancelled by user %s", order["_id"], user_id)
    return with_items(db, cancelled)


def update_status(db: Database, order_id: str, status: OrderStatus) -> dict:
    """Set any status. Store owners use this for corrections, so transitions are not checked."""
    updated = db["order"].find_one_and_update(
        {"_id": to_object_id(order_id, "Order")},
        {"$set": {"status": OrderStatus(status).value, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFound("Order not found")
    logger.info("Order %s status set to %s", updated["_id"], updated["status"])
    return with_items(db, updated)

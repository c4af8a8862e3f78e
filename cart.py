"""
Cart operations

A cart is the set of `cartitem` documents owned by one user, at most one per
product. Reads join each line with a snapshot of its product (and the
product's store) taken at read time.
"""
import logging
from typing import Dict, List

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents, now, serialize, to_object_id
from errors import InsufficientStock, NotFound, ValidationFailed
from schemas import CartItem

logger = logging.getLogger(__name__)


def product_snapshots(db: Database, product_ids: List[str]) -> Dict[str, dict]:
    """Load products by string id, keyed by that id. Unknown or malformed ids are left out."""
    oids = [ObjectId(pid) for pid in set(product_ids) if _valid(pid)]
    if not oids:
        return {}
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": oids}})}
    store_ids = [ObjectId(p["store_id"]) for p in products.values() if _valid(p.get("store_id"))]
    stores = {str(s["_id"]): s for s in db["store"].find({"_id": {"$in": store_ids}})} if store_ids else {}
    for p in products.values():
        s = stores.get(p.get("store_id"))
        p["store"] = {"id": str(s["_id"]), "name": s.get("name")} if s else None
    return products


def _valid(value) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value)


def _product_view(p: dict) -> dict:
    return {
        "id": str(p["_id"]),
        "name": p.get("name"),
        "price": p.get("price", 0.0),
        "image_url": p.get("image_url"),
        "stock": p.get("stock", 0),
        "is_active": p.get("is_active", True),
        "store_id": p.get("store_id"),
        "store": p.get("store"),
    }


def load_lines(db: Database, user_id: str) -> List[dict]:
    """Cart lines of a user, newest first, each with its product document under "product" (None if deleted)."""
    lines = get_documents(db, "cartitem", {"user_id": user_id}, sort=[("created_at", -1), ("_id", -1)])
    products = product_snapshots(db, [ln["product_id"] for ln in lines])
    for ln in lines:
        ln["product"] = products.get(ln["product_id"])
    return lines


def read_cart(db: Database, user_id: str) -> dict:
    items = []
    subtotal = 0.0
    for ln in load_lines(db, user_id):
        product = ln.pop("product")
        if product is None:
            # product deleted after it was added; it can no longer be ordered
            logger.warning("Cart line %s references missing product %s", ln["_id"], ln["product_id"])
            continue
        item_total = product.get("price", 0.0) * ln["quantity"]
        subtotal += item_total
        item = serialize(ln)
        item["product"] = _product_view(product)
        item["item_total"] = item_total
        items.append(item)
    return {"items": items, "subtotal": subtotal, "itemCount": len(items)}


def _get_product(db: Database, product_id: str) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id, "Product")})
    if not product:
        raise NotFound("Product not found")
    return product


def add_to_cart(db: Database, user_id: str, product_id: str, quantity: int = 1):
    """Add `quantity` units to the cart. Returns (line, created)."""
    if quantity < 1:
        raise ValidationFailed("Quantity must be at least 1")
    product = _get_product(db, product_id)
    if not product.get("is_active", True):
        raise ValidationFailed("Product is not available")
    if product.get("stock", 0) < quantity:
        raise InsufficientStock()

    existing = db["cartitem"].find_one({"user_id": user_id, "product_id": product_id})
    if existing:
        return _increment(db, existing, quantity, product), False

    line = CartItem(user_id=user_id, product_id=product_id, quantity=quantity)
    try:
        doc = create_document(db, "cartitem", line.model_dump())
    except DuplicateKeyError:
        # a concurrent add created the line first
        existing = db["cartitem"].find_one({"user_id": user_id, "product_id": product_id})
        return _increment(db, existing, quantity, product), False
    return serialize(doc), True


def _increment(db: Database, existing: dict, quantity: int, product: dict) -> dict:
    new_quantity = existing["quantity"] + quantity
    if product.get("stock", 0) < new_quantity:
        raise ValidationFailed("Insufficient stock for requested quantity")
    updated = db["cartitem"].find_one_and_update(
        {"_id": existing["_id"]},
        {"$inc": {"quantity": quantity}, "$set": {"updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    return serialize(updated)


def update_cart_item(db: Database, user_id: str, product_id: str, quantity: int) -> dict:
    if quantity < 1:
        raise ValidationFailed("Quantity must be at least 1")
    line = db["cartitem"].find_one({"user_id": user_id, "product_id": product_id})
    if not line:
        raise NotFound("Item not found in cart")
    product = db["product"].find_one({"_id": to_object_id(product_id, "Product")})
    if product and product.get("stock", 0) < quantity:
        raise InsufficientStock()
    updated = db["cartitem"].find_one_and_update(
        {"_id": line["_id"]},
        {"$set": {"quantity": quantity, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    return serialize(updated)


def remove_from_cart(db: Database, user_id: str, product_id: str) -> int:
    return db["cartitem"].delete_many({"user_id": user_id, "product_id": product_id}).deleted_count


def clear_cart(db: Database, user_id: str) -> int:
    return db["cartitem"].delete_many({"user_id": user_id}).deleted_count


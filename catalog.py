"""
Catalog store: products, stock arithmetic and the low-stock signal.

Stock is only ever changed through single-document updates whose filter
carries the guard (``quantity >= n`` for decrements), so concurrent writers
cannot drive a product below zero.
"""
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, parse_id, utcnow
from errors import DuplicateEntry, InsufficientStock, NotFound, ValidationError
from schemas import BUNDLE_CATEGORIES, product_adapter, validate_as

logger = logging.getLogger(__name__)

LowStockListener = Callable[[Dict[str, Any]], None]


def log_low_stock(product: Dict[str, Any]) -> None:
    logger.warning("Low stock alert for product %s (%s): %s left, threshold %s",
                   product.get("name"), product.get("_id"), product.get("quantity"),
                   product.get("low_stock_threshold"))


# Restock notifications are delivered by whatever is registered here.
low_stock_listeners: List[LowStockListener] = [log_low_stock]


def is_low_stock(product: Dict[str, Any]) -> bool:
    return product.get("quantity", 0) <= product.get("low_stock_threshold", 0)


def notify_low_stock(product: Dict[str, Any]) -> None:
    for listener in low_stock_listeners:
        try:
            listener(product)
        except Exception:
            logger.exception("Low stock listener %r failed", listener)


def _name_filter(name: str) -> Dict[str, Any]:
    return {"name": {"$regex": f"^{re.escape(name)}$", "$options": "i"}}


def list_products(db: Database, q: Optional[str] = None, category: Optional[str] = None,
                  sort: Optional[str] = None) -> List[dict]:
    filt: Dict[str, Any] = {}
    if q:
        filt["name"] = {"$regex": re.escape(q), "$options": "i"}
    if category:
        filt["category"] = category
    cursor = db["product"].find(filt)
    if sort == "price_asc":
        cursor = cursor.sort("price", 1)
    elif sort == "price_desc":
        cursor = cursor.sort("price", -1)
    elif sort == "newest":
        cursor = cursor.sort("created_at", -1)
    return list(cursor)


def get_product(db: Database, product_id: Any) -> dict:
    product = db["product"].find_one({"_id": parse_id(product_id, "Product")})
    if not product:
        raise NotFound(f"Product with id {product_id} not found")
    return product


def create_product(db: Database, payload: Dict[str, Any]) -> dict:
    product = validate_as(product_adapter, payload)
    if db["product"].find_one(_name_filter(product.name)):
        raise DuplicateEntry("A product with this name already exists")
    inserted_id = create_document(db, "product", product)
    logger.info("Created product %s (%s)", product.name, inserted_id)
    return db["product"].find_one({"_id": inserted_id})


def update_product(db: Database, product_id: Any, patch: Dict[str, Any]) -> dict:
    existing = get_product(db, product_id)
    merged = {k: v for k, v in existing.items() if k not in ("_id", "created_at", "updated_at")}
    merged.update(patch)
    product = validate_as(product_adapter, merged)
    if product.name.lower() != existing["name"].lower():
        clash = db["product"].find_one({**_name_filter(product.name), "_id": {"$ne": existing["_id"]}})
        if clash:
            raise DuplicateEntry("A product with this name already exists")
    # quantity only moves through the stock operations unless the patch sets it
    update = product.model_dump(exclude=None if "quantity" in patch else {"quantity"})
    update["updated_at"] = utcnow()
    return db["product"].find_one_and_update(
        {"_id": existing["_id"]},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )


def delete_product(db: Database, product_id: Any) -> None:
    result = db["product"].delete_one({"_id": parse_id(product_id, "Product")})
    if result.deleted_count == 0:
        raise NotFound(f"Product with id {product_id} not found")


def reserve_stock(db: Database, product_id: Any, quantity: int) -> Optional[dict]:
    """Take ``quantity`` units if at least that many remain; None when the guard fails."""
    return db["product"].find_one_and_update(
        {"_id": product_id, "quantity": {"$gte": quantity}},
        {"$inc": {"quantity": -quantity}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def release_stock(db: Database, product_id: Any, quantity: int) -> None:
    db["product"].update_one(
        {"_id": product_id},
        {"$inc": {"quantity": quantity}, "$set": {"updated_at": utcnow()}},
    )


def adjust_stock(db: Database, product_id: Any, quantity: int, operation: str) -> dict:
    oid = parse_id(product_id, "Product")
    if operation == "set":
        product = db["product"].find_one_and_update(
            {"_id": oid},
            {"$set": {"quantity": quantity, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    elif operation == "add":
        product = db["product"].find_one_and_update(
            {"_id": oid},
            {"$inc": {"quantity": quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    elif operation == "subtract":
        product = reserve_stock(db, oid, quantity)
        if product is None:
            current = get_product(db, oid)
            raise InsufficientStock(f"Insufficient stock. Available: {current.get('quantity', 0)}")
    else:
        raise ValidationError(f"Unknown stock operation: {operation}")
    if product is None:
        raise NotFound(f"Product with id {product_id} not found")

    logger.info("Stock for product %s: %s %s -> %s", oid, operation, quantity, product["quantity"])
    if is_low_stock(product):
        notify_low_stock(product)
    return product


def low_stock_products(db: Database) -> List[dict]:
    return [p for p in db["product"].find() if is_low_stock(p)]


def available_for_bundles(db: Database) -> List[dict]:
    return list(db["product"].find({
        "quantity": {"$gt": 0},
        "category": {"$in": list(BUNDLE_CATEGORIES)},
    }))

"""
Order ledger: persistence, ownership checks and the status/payment transitions.

Orders are written once by the checkout coordinator. Afterwards only
``status``, ``payment_status`` and ``payment_method`` change; ``total_amount``
and the line items are never recomputed.
"""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, get_documents, parse_id, utcnow
from errors import Forbidden, NotFound, ValidationError
from schemas import PAYMENT_METHODS, Order
from security import is_admin

logger = logging.getLogger(__name__)

REFERENCE_KEYS = ("product", "service", "course")


def _to_document(order: Order) -> Dict[str, Any]:
    doc = order.model_dump()
    if doc["client"].get("user"):
        doc["client"]["user"] = ObjectId(doc["client"]["user"])
    for item in doc["items"]:
        for key in REFERENCE_KEYS:
            if item.get(key) is None:
                item.pop(key, None)
            else:
                item[key] = ObjectId(item[key])
    if doc.get("preferred_dates") is None:
        doc.pop("preferred_dates", None)
    return doc


def insert_order(db: Database, order: Order) -> ObjectId:
    return create_document(db, "order", _to_document(order))


def delete_order(db: Database, order_id: ObjectId) -> None:
    db["order"].delete_one({"_id": order_id})


def get_order(db: Database, order_id: Any) -> dict:
    order = db["order"].find_one({"_id": parse_id(order_id, "Order")})
    if not order:
        raise NotFound("Order not found")
    return order


def owner_of(order: dict) -> Optional[ObjectId]:
    return order.get("client", {}).get("user")


def check_access(order: dict, user: Optional[dict], strict: bool = True) -> None:
    """
    Admins may touch any order. Everyone else only their own.

    With ``strict=False`` (the public cart flow) anonymous callers and guest
    orders are let through; an authenticated caller is still refused another
    account's order.
    """
    if is_admin(user):
        return
    owner = owner_of(order)
    if not strict and (user is None or owner is None):
        return
    if user is None or owner != user["_id"]:
        raise Forbidden("Not authorized to access this order")


def list_orders(db: Database, filt: Optional[Dict[str, Any]] = None) -> List[dict]:
    return get_documents(db, "order", filt, sort=[("created_at", -1)])


def orders_for_user(db: Database, user_id: ObjectId) -> List[dict]:
    return list_orders(db, {"client.user": user_id})


def purchases_for_user(db: Database, user_id: ObjectId) -> List[dict]:
    """Distinct products from the caller's completed and paid orders."""
    orders = list_orders(db, {
        "client.user": user_id,
        "status": "completed",
        "payment_status": {"$in": ["paid", "completed"]},
    })
    seen = []
    for order in orders:
        for item in order.get("items", []):
            if item.get("product") and item["product"] not in seen:
                seen.append(item["product"])
    return [p for p in (db["product"].find_one({"_id": pid}) for pid in seen) if p]


def orders_for_product(db: Database, product_id: Any) -> List[dict]:
    oid = parse_id(product_id, "Product")
    rows = []
    for order in list_orders(db, {"items.product": oid}):
        line = next(i for i in order["items"] if i.get("product") == oid)
        rows.append({
            "_id": order["_id"],
            "client": order.get("client"),
            "quantity": line["quantity"],
            "total_amount": line["price"] * line["quantity"],
            "created_at": order.get("created_at"),
            "status": order.get("status"),
            "payment_status": order.get("payment_status"),
        })
    return rows


def _update(db: Database, order_id: Any, fields: Dict[str, Any]) -> dict:
    fields["updated_at"] = utcnow()
    order = db["order"].find_one_and_update(
        {"_id": parse_id(order_id, "Order")},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if not order:
        raise NotFound("Order not found")
    return order


def set_status(db: Database, order_id: Any, status: str) -> dict:
    order = _update(db, order_id, {"status": status})
    logger.info("Order %s status -> %s", order["_id"], status)
    return order


def set_payment_status(db: Database, order_id: Any, payment_status: str) -> dict:
    order = _update(db, order_id, {"payment_status": payment_status})
    logger.info("Order %s payment status -> %s", order["_id"], payment_status)
    return order


def confirm_payment(db: Database, order_id: Any, payment_method: Optional[str], user: Optional[dict]) -> dict:
    order = get_order(db, order_id)
    check_access(order, user, strict=False)
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError("Invalid payment method")
    order = _update(db, order["_id"], {
        "payment_status": "paid",
        "payment_method": payment_method,
        "status": "processing",
    })
    logger.info("Order %s paid by %s", order["_id"], payment_method)
    return order

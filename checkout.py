"""
Checkout coordinator.

Turns a product purchase, a course enrollment or a service request into one
ledger entry plus whatever stock or enrollment change it implies. Each path
validates against the current state first, then applies its guarded write;
when a later step fails the earlier ones are undone so the caller never sees
an order without its side effect (or the other way round).
"""
import logging
from typing import List, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import PyMongoError

import accounts
import catalog
import courses
import installations
import ledger
from errors import InsufficientStock, InternalError, ValidationError
from schemas import ContactIn, CourseOrderRequest, Order, ProductOrderRequest, ServiceRequest, validate_as

logger = logging.getLogger(__name__)

CONTACT_FIELDS = ("name", "email", "phone", "location")


def resolve_client(db: Database, user: Optional[dict], contact: ContactIn, link_by_email: bool = False) -> dict:
    """
    Build the order's client snapshot.

    An authenticated caller's profile wins and the request fills its gaps.
    With ``link_by_email`` an anonymous caller using a registered email gets
    the order attached to that account, but the contact details still come
    from the request.
    """
    supplied = contact.model_dump(include=set(CONTACT_FIELDS))
    if user is not None:
        client = {
            "name": user.get("name") or supplied["name"],
            "email": user.get("email") or supplied["email"],
            "phone": user.get("phone") or supplied["phone"],
            "location": user.get("address") or supplied["location"],
            "user": str(user["_id"]),
        }
    else:
        client = dict(supplied, user=None)
        if link_by_email and contact.email:
            account = accounts.find_by_email(db, contact.email)
            if account:
                client["user"] = str(account["_id"])

    if any(not client.get(f) for f in CONTACT_FIELDS):
        raise ValidationError("Please provide all required information: name, email, phone, and location")
    return client


def _release(db: Database, order_id: ObjectId, reserved: List[Tuple[ObjectId, int]]) -> None:
    for product_id, quantity in reserved:
        try:
            catalog.release_stock(db, product_id, quantity)
        except PyMongoError:
            logger.exception("Could not restore %s units of product %s for order %s", quantity, product_id, order_id)
    try:
        ledger.delete_order(db, order_id)
    except PyMongoError:
        logger.exception("Could not delete order %s after failed stock update", order_id)
    else:
        logger.info("Rolled back order %s", order_id)


def place_product_order(db: Database, request: ProductOrderRequest, user: Optional[dict] = None,
                        link_by_email: bool = False) -> dict:
    if not request.items:
        raise ValidationError("Cart is empty")
    client = resolve_client(db, user, request.contact(), link_by_email=link_by_email)

    lines = []
    for item in request.items:
        product = catalog.get_product(db, item.product_id)
        available = product.get("quantity", 0)
        if available < item.quantity:
            raise InsufficientStock(f"Insufficient stock for {product['name']}. Available: {available}")
        lines.append((product, item.quantity))

    order = validate_as(Order, {
        "order_type": "product",
        "client": client,
        "items": [
            {"product": str(p["_id"]), "name": p["name"], "price": p["price"], "quantity": qty}
            for p, qty in lines
        ],
        "total_amount": sum(p["price"] * qty for p, qty in lines),
        "status": "pending",
        "payment_status": "pending",
    })
    order_id = ledger.insert_order(db, order)

    reserved: List[Tuple[ObjectId, int]] = []
    running_low = []
    try:
        for product, qty in lines:
            updated = catalog.reserve_stock(db, product["_id"], qty)
            if updated is None:
                raise InsufficientStock(f"Insufficient stock for {product['name']}")
            reserved.append((product["_id"], qty))
            if catalog.is_low_stock(updated):
                running_low.append(updated)
    except InsufficientStock:
        logger.warning("Stock changed during checkout of order %s, rolling back", order_id)
        _release(db, order_id, reserved)
        raise
    except PyMongoError as exc:
        logger.exception("Stock update failed for order %s, rolling back", order_id)
        _release(db, order_id, reserved)
        raise InternalError("Failed to update product stock") from exc

    for product in running_low:
        catalog.notify_low_stock(product)
    logger.info("Product order %s placed, total %.2f", order_id, order.total_amount)
    return ledger.get_order(db, order_id)


def place_course_order(db: Database, request: CourseOrderRequest, user: dict) -> dict:
    course = courses.get_course(db, request.course_id)
    courses.check_can_enroll(course, user["_id"])
    client = resolve_client(db, user, request)

    order = validate_as(Order, {
        "order_type": "course",
        "client": client,
        "items": [{"course": str(course["_id"]), "name": course["name"], "price": course["price"], "quantity": 1}],
        "total_amount": course["price"],
        "status": "processing",
    })
    course = courses.enroll(db, course["_id"], user["_id"])
    try:
        order_id = ledger.insert_order(db, order)
    except PyMongoError as exc:
        logger.exception("Could not record course order, withdrawing enrollment of %s", user["_id"])
        try:
            courses.unenroll(db, course["_id"], user["_id"])
        except PyMongoError:
            logger.exception("Could not withdraw enrollment of %s from course %s", user["_id"], course["_id"])
        raise InternalError("Failed to create course order") from exc

    logger.info("Course order %s placed for course %s", order_id, course["_id"])
    return {"order": ledger.get_order(db, order_id), "course": course}


def place_service_order(db: Database, service_id, request: ServiceRequest, user: Optional[dict] = None) -> dict:
    service = installations.get_service(db, service_id)
    client = resolve_client(db, user, request)
    if request.start_date is None or request.end_date is None:
        raise ValidationError("Please provide preferred start_date and end_date")
    if request.end_date < request.start_date:
        raise ValidationError("end_date must not be before start_date")

    order = validate_as(Order, {
        "order_type": "service",
        "client": client,
        "items": [{"service": str(service["_id"]), "name": service["name"], "price": service["total_cost"], "quantity": 1}],
        "total_amount": service["total_cost"],
        "preferred_dates": {"start_date": request.start_date, "end_date": request.end_date},
        "status": "pending",
    })
    order_id = ledger.insert_order(db, order)
    logger.info("Service request %s placed for service %s", order_id, service["_id"])
    return ledger.get_order(db, order_id)

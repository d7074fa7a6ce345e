"""
Installation service definitions.

A service bundles one product for each of the panel, battery, controller and
cable slots plus labor. ``total_cost`` is derived from current product prices
every time a definition is saved and is never taken from the caller.
"""
import logging
from typing import Any, Dict, List, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, parse_id, to_object_id, utcnow
from errors import InsufficientStock, NotFound
from schemas import SERVICE_NAME, SERVICE_SLOTS, Service, validate_as

logger = logging.getLogger(__name__)


def price_bundle(db: Database, service: Service) -> Tuple[Dict[str, Any], float]:
    """Resolve the four slots and return (stored slot documents, total_cost)."""
    slots: Dict[str, Any] = {}
    products_cost = 0.0
    for slot_name in SERVICE_SLOTS:
        slot = getattr(service.products, slot_name)
        oid = to_object_id(slot.product)
        product = db["product"].find_one({"_id": oid}) if oid else None
        if not product:
            raise NotFound(f"{slot_name} product not found")
        if product.get("quantity", 0) < slot.quantity:
            raise InsufficientStock(f"Insufficient quantity for {slot_name}")
        products_cost += product["price"] * slot.quantity
        slots[slot_name] = {"product": product["_id"], "quantity": slot.quantity}
    return slots, products_cost + service.labor_cost


def _document(db: Database, payload: Dict[str, Any]) -> Dict[str, Any]:
    service = validate_as(Service, payload)
    slots, total_cost = price_bundle(db, service)
    doc = service.model_dump()
    doc.update({"name": SERVICE_NAME, "products": slots, "total_cost": total_cost})
    return doc


def populate(db: Database, service: dict) -> dict:
    """Replace slot product ids with the product documents they point at."""
    products = dict(service.get("products", {}))
    for slot_name in SERVICE_SLOTS:
        slot = products.get(slot_name)
        if slot:
            products[slot_name] = {**slot, "product": db["product"].find_one({"_id": slot["product"]})}
    return {**service, "products": products}


def list_services(db: Database) -> List[dict]:
    return list(db["service"].find().sort("created_at", -1))


def get_service(db: Database, service_id: Any) -> dict:
    service = db["service"].find_one({"_id": parse_id(service_id, "Service")})
    if not service:
        raise NotFound("Service not found")
    return service


def create_service(db: Database, payload: Dict[str, Any]) -> dict:
    doc = _document(db, payload)
    inserted_id = create_document(db, "service", doc)
    logger.info("Created service %s with total cost %.2f", inserted_id, doc["total_cost"])
    return db["service"].find_one({"_id": inserted_id})


def update_service(db: Database, service_id: Any, patch: Dict[str, Any]) -> dict:
    existing = get_service(db, service_id)
    merged = {
        "description": existing.get("description"),
        "labor_cost": existing.get("labor_cost"),
        "installation_date": existing.get("installation_date"),
        "estimated_duration": existing.get("estimated_duration"),
        "products": {
            name: {"product": str(slot["product"]), "quantity": slot["quantity"]}
            for name, slot in existing.get("products", {}).items()
        },
    }
    merged.update({k: v for k, v in patch.items() if k != "products"})
    if isinstance(patch.get("products"), dict):
        merged["products"].update(patch["products"])
    doc = _document(db, merged)
    doc["updated_at"] = utcnow()
    updated = db["service"].find_one_and_update(
        {"_id": existing["_id"]},
        {"$set": doc},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Updated service %s, total cost now %.2f", existing["_id"], doc["total_cost"])
    return updated


def delete_service(db: Database, service_id: Any) -> None:
    result = db["service"].delete_one({"_id": parse_id(service_id, "Service")})
    if result.deleted_count == 0:
        raise NotFound("Service not found")

import itertools
import os

os.environ.pop("DATABASE_URL", None)
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["LOW_STOCK_THRESHOLD"] = "3"

import mongomock
import pytest
from fastapi.testclient import TestClient

import accounts
import catalog
import courses
import installations
from database import ensure_indexes, get_db
from main import app
from security import create_token

SPECS = {
    "Solar Panel": {"wattage": 200, "voltage": 24, "dimensions": "1650x990x35mm"},
    "Battery": {"voltage": 12, "capacity": 200, "type": "Lithium"},
    "Controller": {"voltage": 24, "max_current": 60, "features": "MPPT"},
    "Cable": {"length": 50, "gauge": "6mm2", "material": "Copper"},
    "Other": {},
}

_seq = itertools.count(1)


def specs_for(category, **overrides):
    specs = {"manufacturer": "SunPower", "model": "SP-1", "warranty": "10 years"}
    specs.update(SPECS[category])
    specs.update(overrides)
    return specs


def product_payload(category="Solar Panel", /, **fields):
    payload = {
        "name": f"{category} {next(_seq)}",
        "description": f"A {category.lower()}",
        "category": category,
        "price": 200,
        "quantity": 10,
        "specifications": specs_for(category),
    }
    payload.update(fields)
    return payload


def course_payload(**fields):
    payload = {
        "name": f"Solar basics {next(_seq)}",
        "description": "Sizing and wiring a home system",
        "level": "beginner",
        "category": "installation",
        "price": 150,
        "start_date": "2026-11-01T09:00:00",
        "end_date": "2026-11-05T17:00:00",
        "max_students": 10,
    }
    payload.update(fields)
    return payload


@pytest.fixture
def db():
    database = mongomock.MongoClient()["solar_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(role="customer", **fields):
        n = next(_seq)
        params = {
            "name": f"User {n}",
            "email": f"user{n}@example.com",
            "password": "password123",
            "role": role,
            "phone": "+237600000000",
            "address": "Douala",
        }
        params.update(fields)
        return accounts.create_account(db, **params)
    return _make


@pytest.fixture
def auth():
    def _header(user):
        return {"Authorization": f"Bearer {create_token(user)}"}
    return _header


@pytest.fixture
def admin(make_user):
    return make_user(role="admin")


@pytest.fixture
def make_product(db):
    def _make(category="Solar Panel", **fields):
        return catalog.create_product(db, product_payload(category, **fields))
    return _make


@pytest.fixture
def make_course(db):
    def _make(**fields):
        return courses.create_course(db, course_payload(**fields))
    return _make


@pytest.fixture
def bundle_products(make_product):
    return {
        "panel": make_product("Solar Panel", price=200, quantity=20),
        "battery": make_product("Battery", price=500, quantity=10),
        "controller": make_product("Controller", price=150, quantity=10),
        "cable": make_product("Cable", price=2, quantity=100),
    }


def service_payload(products, **fields):
    payload = {
        "description": "Rooftop 1.6kW installation",
        "products": {
            "panel": {"product": str(products["panel"]["_id"]), "quantity": 8},
            "battery": {"product": str(products["battery"]["_id"]), "quantity": 2},
            "controller": {"product": str(products["controller"]["_id"]), "quantity": 1},
            "cable": {"product": str(products["cable"]["_id"]), "quantity": 30},
        },
        "labor_cost": 300,
        "installation_date": "2026-12-01T08:00:00",
        "estimated_duration": "2 days",
    }
    payload.update(fields)
    return payload


@pytest.fixture
def make_service(db, bundle_products):
    def _make(**fields):
        return installations.create_service(db, service_payload(bundle_products, **fields))
    return _make


CONTACT = {
    "name": "Guest Buyer",
    "email": "guest@example.com",
    "phone": "+237611111111",
    "location": "Yaounde",
}

import pytest

import catalog
from conftest import product_payload, specs_for
from errors import ValidationError


def test_create_product_strips_foreign_specifications(client, admin, auth):
    payload = product_payload("Battery", specifications=specs_for("Battery", wattage=300, dimensions="big"))
    res = client.post("/products", json=payload, headers=auth(admin))
    assert res.status_code == 201
    specs = res.json()["data"]["specifications"]
    assert specs["capacity"] == 200
    assert specs["type"] == "Lithium"
    assert "wattage" not in specs
    assert "dimensions" not in specs


def test_create_product_requires_category_specifications(client, admin, auth):
    specs = specs_for("Solar Panel")
    del specs["wattage"]
    res = client.post("/products", json=product_payload("Solar Panel", specifications=specs), headers=auth(admin))
    assert res.status_code == 400
    assert "wattage" in res.json()["message"]


def test_create_product_rejects_unknown_category(client, admin, auth):
    res = client.post("/products", json=product_payload("Other", category="Inverter"), headers=auth(admin))
    assert res.status_code == 400


def test_create_product_rejects_negative_values(client, admin, auth):
    res = client.post("/products", json=product_payload(price=-1), headers=auth(admin))
    assert res.status_code == 400
    res = client.post("/products", json=product_payload(quantity=-5), headers=auth(admin))
    assert res.status_code == 400


def test_product_name_is_unique_case_insensitively(client, admin, auth, make_product):
    make_product(name="Mono 400W")
    res = client.post("/products", json=product_payload(name="mono 400w"), headers=auth(admin))
    assert res.status_code == 400
    assert res.json()["message"] == "A product with this name already exists"


def test_product_mutation_is_admin_only(client, make_user, auth):
    customer = make_user()
    assert client.post("/products", json=product_payload()).status_code == 401
    assert client.post("/products", json=product_payload(), headers=auth(customer)).status_code == 403


def test_public_reads(client, make_product):
    panel = make_product(price=120)
    make_product("Cable", price=3)
    res = client.get("/products")
    assert res.status_code == 200
    assert len(res.json()["data"]) == 2

    res = client.get("/products", params={"category": "Cable"})
    assert [p["category"] for p in res.json()["data"]] == ["Cable"]

    res = client.get(f"/products/{panel['_id']}")
    assert res.json()["data"]["price"] == 120


def test_get_missing_product(client):
    assert client.get("/products/64b000000000000000000000").status_code == 404
    assert client.get("/products/not-an-id").status_code == 404


def test_update_product_revalidates_category_change(client, admin, auth, make_product):
    product = make_product("Other")
    res = client.put(f"/products/{product['_id']}", json={"category": "Cable"}, headers=auth(admin))
    assert res.status_code == 400

    res = client.put(f"/products/{product['_id']}", headers=auth(admin), json={
        "category": "Cable",
        "specifications": specs_for("Cable"),
        "price": 4.5,
    })
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["category"] == "Cable"
    assert data["price"] == 4.5
    assert data["specifications"]["gauge"] == "6mm2"


def test_update_product_name_clash(client, admin, auth, make_product):
    make_product(name="Taken")
    other = make_product(name="Free")
    res = client.put(f"/products/{other['_id']}", json={"name": "TAKEN"}, headers=auth(admin))
    assert res.status_code == 400


def test_update_product_keeps_stock_sold_after_the_read(db, make_product, monkeypatch):
    product = make_product(quantity=10)
    real_get = catalog.get_product

    def get_product(database, product_id):
        current = real_get(database, product_id)
        catalog.reserve_stock(database, current["_id"], 6)
        return current

    monkeypatch.setattr(catalog, "get_product", get_product)
    updated = catalog.update_product(db, product["_id"], {"description": "new copy"})
    assert updated["description"] == "new copy"
    assert db["product"].find_one({"_id": product["_id"]})["quantity"] == 4


def test_update_product_can_set_quantity_explicitly(client, admin, auth, make_product):
    product = make_product(quantity=10)
    res = client.put(f"/products/{product['_id']}", json={"quantity": 25}, headers=auth(admin))
    assert res.status_code == 200
    assert res.json()["data"]["quantity"] == 25


def test_delete_product(client, admin, auth, make_product, db):
    product = make_product()
    res = client.delete(f"/products/{product['_id']}", headers=auth(admin))
    assert res.status_code == 200
    assert db["product"].count_documents({}) == 0
    assert client.delete(f"/products/{product['_id']}", headers=auth(admin)).status_code == 404


def test_stock_operations(client, admin, auth, make_product):
    product = make_product(quantity=10)
    url = f"/products/{product['_id']}/stock"

    res = client.put(url, json={"quantity": 5, "operation": "add"}, headers=auth(admin))
    assert res.json()["data"]["quantity"] == 15

    res = client.put(url, json={"quantity": 4, "operation": "subtract"}, headers=auth(admin))
    assert res.json()["data"]["quantity"] == 11

    res = client.put(url, json={"quantity": 100, "operation": "set"}, headers=auth(admin))
    assert res.json()["data"]["quantity"] == 100


def test_subtract_never_goes_negative(client, admin, auth, make_product, db):
    product = make_product(quantity=3)
    res = client.put(f"/products/{product['_id']}/stock", json={"quantity": 4, "operation": "subtract"},
                     headers=auth(admin))
    assert res.status_code == 400
    assert "Insufficient stock" in res.json()["message"]
    assert db["product"].find_one({"_id": product["_id"]})["quantity"] == 3


def test_stock_rejects_unknown_operation(client, admin, auth, make_product):
    product = make_product()
    res = client.put(f"/products/{product['_id']}/stock", json={"quantity": 1, "operation": "multiply"},
                     headers=auth(admin))
    assert res.status_code == 400


def test_adjust_stock_unknown_operation_is_a_validation_error(db, make_product):
    product = make_product(quantity=5)
    with pytest.raises(ValidationError):
        catalog.adjust_stock(db, product["_id"], 1, "multiply")
    assert db["product"].find_one({"_id": product["_id"]})["quantity"] == 5


def test_low_stock_signal(db, make_product, monkeypatch):
    seen = []
    monkeypatch.setattr(catalog, "low_stock_listeners", [seen.append])
    product = make_product(quantity=10, low_stock_threshold=4)

    catalog.adjust_stock(db, product["_id"], 5, "subtract")
    assert seen == []

    catalog.adjust_stock(db, product["_id"], 1, "subtract")
    assert [p["quantity"] for p in seen] == [4]


def test_failing_listener_does_not_break_adjustment(db, make_product, monkeypatch):
    def broken(product):
        raise RuntimeError("smtp down")

    monkeypatch.setattr(catalog, "low_stock_listeners", [broken])
    product = make_product(quantity=2)
    updated = catalog.adjust_stock(db, product["_id"], 1, "subtract")
    assert updated["quantity"] == 1


def test_low_stock_listing(client, admin, auth, make_product):
    make_product(quantity=2)
    make_product(quantity=50)
    make_product(quantity=10, low_stock_threshold=10)
    res = client.get("/products/low-stock", headers=auth(admin))
    assert res.status_code == 200
    assert sorted(p["quantity"] for p in res.json()["data"]) == [2, 10]

import re

import pytest
from bson.objectid import ObjectId

import orders
from conftest import ADDRESS
from errors import Conflict

CODE_RE = re.compile(r"^ORD\d{6}[A-Z0-9]{5}$")


def _stock(db, pid):
    return db["product"].find_one({"_id": ObjectId(pid)})["stock"]


def _fill_cart(client, headers, *lines):
    for pid, qty in lines:
        assert client.post("/cart/items", json={"product_id": pid, "quantity": qty}, headers=headers).status_code == 200


def _place(client, headers, address=ADDRESS):
    body = {"shipping_address": address} if address is not None else None
    return client.post("/orders", json=body, headers=headers)


def test_create_order_snapshots_cart(client, db, make_product, user_headers):
    phone = make_product(title="Phone", amount=250.5, stock=5)
    case = make_product(title="Case", amount=10, stock=10)
    _fill_cart(client, user_headers, (phone, 2), (case, 3))

    r = _place(client, user_headers)
    assert r.status_code == 201
    order = r.json()["order"]
    assert order["status"] == "PENDING"
    assert order["total_price"] == {"amount": 531.0, "currency": "BDT"}
    assert order["payment"]["method"] == "COD"
    assert order["payment"]["status"] == "PENDING"
    assert CODE_RE.match(order["order_code"])
    assert order["shipping_address"]["street_address"] == ADDRESS["street_address"]

    first = order["items"][0]
    assert first["product_id"] == phone
    assert first["unit_price"]["amount"] == 250.5
    assert first["price"]["amount"] == 501.0

    assert _stock(db, phone) == 3
    assert _stock(db, case) == 7
    assert db["product"].find_one({"_id": ObjectId(phone)})["sold"] == 2
    assert client.get("/cart", headers=user_headers).json()["cart"]["items"] == []


def test_snapshot_survives_price_change(client, db, make_product, user_headers):
    pid = make_product(amount=100)
    _fill_cart(client, user_headers, (pid, 1))
    order_id = _place(client, user_headers).json()["order"]["id"]

    db["product"].update_one({"_id": ObjectId(pid)}, {"$set": {"price.amount": 999}})
    order = client.get(f"/orders/{order_id}", headers=user_headers).json()["order"]
    assert order["total_price"]["amount"] == 100


def test_create_uses_saved_address(client, make_user, make_product):
    from conftest import bearer

    headers = bearer(make_user(email="saved@example.com", shipping_address=ADDRESS))
    _fill_cart(client, headers, (make_product(), 1))

    r = _place(client, headers, address=None)
    assert r.status_code == 201
    assert r.json()["order"]["shipping_address"]["thana"] == "Gulshan"


def test_create_requires_address(client, make_product, user_headers):
    _fill_cart(client, user_headers, (make_product(), 1))
    r = _place(client, user_headers, address=None)
    assert r.status_code == 400


def test_create_rejects_empty_cart(client, user_headers):
    r = _place(client, user_headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "Cart is empty"


def test_create_rejects_insufficient_stock(client, db, make_product, user_headers):
    pid = make_product(stock=1)
    _fill_cart(client, user_headers, (pid, 2))
    r = _place(client, user_headers)
    assert r.status_code == 409
    assert _stock(db, pid) == 1
    assert db["order"].count_documents({}) == 0


def test_create_rejects_vanished_product(client, db, make_product, user_headers):
    pid = make_product()
    _fill_cart(client, user_headers, (pid, 1))
    db["product"].delete_one({"_id": ObjectId(pid)})
    assert _place(client, user_headers).status_code == 400


def test_create_rejects_mixed_currencies(client, make_product, user_headers):
    _fill_cart(
        client,
        user_headers,
        (make_product(title="A", currency="BDT"), 1),
        (make_product(title="B", currency="USD"), 1),
    )
    assert _place(client, user_headers).status_code == 400


def test_failed_reservation_releases_earlier_lines(db, user, make_product, monkeypatch):
    first = make_product(title="First", stock=5)
    second = make_product(title="Second", stock=5)
    db["cart"].insert_one(
        {"user_id": user["id"], "items": [{"product_id": first, "quantity": 2}, {"product_id": second, "quantity": 2}]}
    )
    real_reserve = orders.reserve_stock

    def racing_reserve(database, product_id, quantity):
        if product_id == second:
            # someone else bought it between the check and the decrement
            database["product"].update_one({"_id": ObjectId(second)}, {"$set": {"stock": 1}})
        return real_reserve(database, product_id, quantity)

    monkeypatch.setattr(orders, "reserve_stock", racing_reserve)
    user = dict(user, shipping_address=ADDRESS)
    with pytest.raises(Conflict):
        orders.create_order(db, user)

    assert _stock(db, first) == 5
    assert db["product"].find_one({"_id": ObjectId(first)})["sold"] == 0
    assert db["order"].count_documents({}) == 0


def test_order_code_collision_is_retried(client, db, make_product, user_headers, monkeypatch):
    codes = iter(["ORD123456AAAAA", "ORD123456AAAAA", "ORD123456BBBBB"])
    monkeypatch.setattr(orders, "generate_order_code", lambda: next(codes))
    pid = make_product(stock=10)

    _fill_cart(client, user_headers, (pid, 1))
    assert _place(client, user_headers).json()["order"]["order_code"] == "ORD123456AAAAA"
    _fill_cart(client, user_headers, (pid, 1))
    assert _place(client, user_headers).json()["order"]["order_code"] == "ORD123456BBBBB"
    assert _stock(db, pid) == 8


def test_generated_codes_have_expected_shape():
    codes = {orders.generate_order_code() for _ in range(200)}
    assert all(CODE_RE.match(c) for c in codes)
    assert orders.generate_order_code(1700000123456).startswith("ORD123456")


def test_cancel_restocks_and_is_not_repeatable(client, db, make_product, user_headers):
    pid = make_product(stock=5)
    _fill_cart(client, user_headers, (pid, 2))
    order_id = _place(client, user_headers).json()["order"]["id"]
    assert _stock(db, pid) == 3

    r = client.post(f"/orders/{order_id}/cancel", headers=user_headers)
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "CANCELLED"
    assert r.json()["restock_failures"] == []
    assert _stock(db, pid) == 5

    r = client.post(f"/orders/{order_id}/cancel", headers=user_headers)
    assert r.status_code == 409
    assert _stock(db, pid) == 5


@pytest.mark.parametrize("status", ["SHIPPED", "DELIVERED"])
def test_cancel_after_dispatch_is_rejected(client, db, make_product, user_headers, status):
    _fill_cart(client, user_headers, (make_product(), 1))
    order_id = _place(client, user_headers).json()["order"]["id"]
    db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": status}})

    r = client.post(f"/orders/{order_id}/cancel", headers=user_headers)
    assert r.status_code == 409


def test_cancel_confirmed_order(client, db, make_product, user_headers):
    _fill_cart(client, user_headers, (make_product(), 1))
    order_id = _place(client, user_headers).json()["order"]["id"]
    db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": "CONFIRMED"}})
    assert client.post(f"/orders/{order_id}/cancel", headers=user_headers).status_code == 200


def test_cancel_reports_lines_it_could_not_restock(client, db, make_product, user_headers):
    kept = make_product(title="Kept", stock=5)
    gone = make_product(title="Gone", stock=5)
    _fill_cart(client, user_headers, (kept, 1), (gone, 1))
    order_id = _place(client, user_headers).json()["order"]["id"]
    db["product"].delete_one({"_id": ObjectId(gone)})

    r = client.post(f"/orders/{order_id}/cancel", headers=user_headers)
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "CANCELLED"
    assert r.json()["restock_failures"] == [gone]
    assert _stock(db, kept) == 5


def test_orders_are_private(client, make_user, make_product, user_headers):
    from conftest import bearer

    _fill_cart(client, user_headers, (make_product(), 1))
    order_id = _place(client, user_headers).json()["order"]["id"]
    other = bearer(make_user(email="other@example.com"))

    assert client.get(f"/orders/{order_id}", headers=other).status_code == 404
    assert client.post(f"/orders/{order_id}/cancel", headers=other).status_code == 404


def test_order_detail(client, make_product, user_headers):
    _fill_cart(client, user_headers, (make_product(amount=40), 2))
    order_id = _place(client, user_headers).json()["order"]["id"]

    body = client.get(f"/orders/{order_id}", headers=user_headers).json()
    assert [t["status"] for t in body["timeline"]] == ["CREATED", "PENDING"]
    assert body["payment_summary"] == {
        "method": "COD",
        "status": "PENDING",
        "total": 80.0,
        "currency": "BDT",
        "collected_at": None,
    }
    assert client.get("/orders/not-an-id", headers=user_headers).status_code == 400


def test_my_orders_pagination(client, make_product, user_headers):
    pid = make_product(stock=20)
    for _ in range(3):
        _fill_cart(client, user_headers, (pid, 1))
        assert _place(client, user_headers).status_code == 201

    body = client.get("/orders/me?page=2&limit=2", headers=user_headers).json()
    assert len(body["data"]) == 1
    assert body["meta"] == {"page": 2, "limit": 2, "total_pages": 2, "total_items": 3}
    assert client.get("/orders/me?page=0", headers=user_headers).status_code == 400


def test_address_update_merges_fields(client, make_product, user_headers):
    _fill_cart(client, user_headers, (make_product(), 1))
    order_id = _place(client, user_headers).json()["order"]["id"]

    r = client.patch(
        f"/orders/{order_id}/address",
        json={"shipping_address": {"street_address": "Flat 2B, Road 11"}},
        headers=user_headers,
    )
    assert r.status_code == 200
    addr = r.json()["order"]["shipping_address"]
    assert addr["street_address"] == "Flat 2B, Road 11"
    assert addr["phone"] == ADDRESS["phone"]
    assert addr["division"] == "Dhaka"


def test_address_update_validates(client, make_product, user_headers):
    _fill_cart(client, user_headers, (make_product(), 1))
    order_id = _place(client, user_headers).json()["order"]["id"]

    r = client.patch(f"/orders/{order_id}/address", json={"shipping_address": {"phone": "12345"}}, headers=user_headers)
    assert r.status_code == 400


def test_address_locked_after_shipping(client, db, make_product, user_headers):
    _fill_cart(client, user_headers, (make_product(), 1))
    order_id = _place(client, user_headers).json()["order"]["id"]
    db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": "SHIPPED"}})

    r = client.patch(f"/orders/{order_id}/address", json={"shipping_address": {"thana": "Banani"}}, headers=user_headers)
    assert r.status_code == 409

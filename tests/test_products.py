import json

import pytest
from bson.objectid import ObjectId

import products
from conftest import bearer


@pytest.fixture
def fake_images(monkeypatch):
    uploaded, deleted = [], []

    def fake_upload(content, filename=None, content_type=None):
        uploaded.append(filename)
        n = len(uploaded)
        return {"url": f"https://ik.example/{filename}", "thumbnail": f"https://ik.example/tr/{filename}", "id": f"file{n}"}

    monkeypatch.setattr(products, "upload_image", fake_upload)
    monkeypatch.setattr(products, "delete_image", lambda file_id: deleted.append(file_id) or True)
    return uploaded, deleted


def _image(name):
    return ("images", (name, b"\x89PNG fake", "image/png"))


def test_create_product_from_form(client, admin_headers, fake_images):
    r = client.post(
        "/products",
        data={
            "title": "  Pixel 8 ",
            "description": "Flagship",
            "specification": json.dumps({"ram": "8GB", "storage": "128GB"}),
            "price": json.dumps({"amount": 699, "currency": "USD"}),
            "category": "Mobiles",
            "stock": "12",
        },
        files=[_image("front.png"), _image("back.png")],
        headers=admin_headers,
    )
    assert r.status_code == 201
    product = r.json()["product"]
    assert product["title"] == "Pixel 8"
    assert product["specification"] == {"ram": "8GB", "storage": "128GB"}
    assert product["price"] == {"amount": 699.0, "currency": "USD"}
    assert product["stock"] == 12
    assert product["sold"] == 0
    assert [img["id"] for img in product["images"]] == ["file1", "file2"]
    assert product["average_rating"] == 0
    assert product["review_count"] == 0


def test_create_product_with_split_price_fields(client, admin_headers):
    r = client.post("/products", data={"title": "Cable", "price_amount": "250"}, headers=admin_headers)
    assert r.status_code == 201
    assert r.json()["product"]["price"] == {"amount": 250.0, "currency": "BDT"}


@pytest.mark.parametrize(
    "form",
    [
        {"price_amount": "10"},
        {"title": "No price"},
        {"title": "Bad spec", "price_amount": "10", "specification": "{not json"},
        {"title": "Bad price", "price": "[1, 2]"},
        {"title": "Bad currency", "price_amount": "10", "price_currency": "EUR"},
        {"title": "Bad stock", "price_amount": "10", "stock": "-1"},
    ],
)
def test_create_product_rejects_bad_form(client, admin_headers, form):
    assert client.post("/products", data=form, headers=admin_headers).status_code == 400


def test_create_product_caps_images(client, admin_headers, fake_images):
    files = [_image(f"{i}.png") for i in range(6)]
    r = client.post("/products", data={"title": "Too many", "price_amount": "1"}, files=files, headers=admin_headers)
    assert r.status_code == 400
    assert fake_images[0] == []


def test_catalog_writes_are_admin_only(client, user_headers, make_product):
    pid = make_product()
    assert client.post("/products", data={"title": "x", "price_amount": "1"}, headers=user_headers).status_code == 403
    assert client.put(f"/products/{pid}", data={"title": "x"}, headers=user_headers).status_code == 403
    assert client.delete(f"/products/{pid}", headers=user_headers).status_code == 403


def test_update_product(client, db, admin_headers, fake_images, make_product):
    pid = make_product(amount=50, currency="USD")
    db["product"].update_one(
        {"_id": ObjectId(pid)},
        {"$set": {"images": [{"url": "u1", "thumbnail": "", "id": "old1"}, {"url": "u2", "thumbnail": "", "id": "old2"}]}},
    )

    r = client.put(
        f"/products/{pid}",
        data={"price_amount": "55.5", "stock": "3", "remove_image_ids": "old1", "description": "  new  "},
        files=[_image("new.png")],
        headers=admin_headers,
    )
    assert r.status_code == 200
    product = r.json()["product"]
    assert product["price"] == {"amount": 55.5, "currency": "USD"}
    assert product["stock"] == 3
    assert product["description"] == "new"
    assert [img["id"] for img in product["images"]] == ["old2", "file1"]
    assert fake_images[1] == ["old1"]


def test_update_missing_product(client, admin_headers):
    r = client.put(f"/products/{ObjectId()}", data={"title": "x"}, headers=admin_headers)
    assert r.status_code == 404


def test_delete_product_removes_hosted_images(client, db, admin_headers, fake_images, make_product):
    pid = make_product()
    db["product"].update_one({"_id": ObjectId(pid)}, {"$set": {"images": [{"url": "u", "thumbnail": "", "id": "f9"}]}})
    assert client.delete(f"/products/{pid}", headers=admin_headers).status_code == 200
    assert fake_images[1] == ["f9"]
    assert client.get(f"/products/{pid}").status_code == 404


def test_list_and_search(client, make_product):
    make_product(title="Galaxy Phone", category="Mobiles")
    make_product(title="Gaming Laptop", category="Laptops")
    make_product(title="Laptop Sleeve", category="Accessories")

    body = client.get("/products").json()
    assert body["total"] == 3

    body = client.get("/products?search=laptop").json()
    assert sorted(p["title"] for p in body["products"]) == ["Gaming Laptop", "Laptop Sleeve"]

    body = client.get("/products?category=Mobiles").json()
    assert [p["title"] for p in body["products"]] == ["Galaxy Phone"]

    body = client.get("/products?limit=2&page=2").json()
    assert body["total"] == 3
    assert len(body["products"]) == 1

    body = client.get("/products/category/Laptops").json()
    assert [p["title"] for p in body["products"]] == ["Gaming Laptop"]


def test_get_product(client, make_product):
    pid = make_product(title="Watch")
    assert client.get(f"/products/{pid}").json()["product"]["title"] == "Watch"
    assert client.get("/products/bogus").status_code == 400


def test_review_aggregates(client, make_user, make_product):
    pid = make_product()
    assert client.get(f"/products/{pid}/reviews").json()["average_rating"] == 0

    ratings = [5, 4, 2]
    for i, rating in enumerate(ratings):
        headers = bearer(make_user(email=f"reviewer{i}@example.com"))
        r = client.post(f"/products/{pid}/reviews", json={"rating": rating, "comment": "ok"}, headers=headers)
        assert r.status_code == 201

    body = client.get(f"/products/{pid}/reviews").json()
    assert body["review_count"] == len(ratings) == len(body["reviews"])
    assert body["average_rating"] == pytest.approx(sum(ratings) / len(ratings))


def test_one_review_per_user(client, make_product, user_headers):
    pid = make_product()
    assert client.post(f"/products/{pid}/reviews", json={"rating": 4}, headers=user_headers).status_code == 201
    assert client.post(f"/products/{pid}/reviews", json={"rating": 1}, headers=user_headers).status_code == 409


def test_review_needs_login_and_valid_rating(client, make_product, user_headers):
    pid = make_product()
    assert client.post(f"/products/{pid}/reviews", json={"rating": 4}).status_code == 401
    assert client.post(f"/products/{pid}/reviews", json={"rating": 6}, headers=user_headers).status_code == 400
    assert client.post(f"/products/{pid}/reviews", json={"rating": 0}, headers=user_headers).status_code == 400


def test_delete_review_recomputes(client, make_user, make_product, admin_headers):
    pid = make_product()
    author = bearer(make_user(email="author@example.com"))
    other = bearer(make_user(email="other@example.com"))
    review = client.post(f"/products/{pid}/reviews", json={"rating": 1}, headers=author).json()["review"]
    client.post(f"/products/{pid}/reviews", json={"rating": 5}, headers=other)

    assert client.delete(f"/products/{pid}/reviews/{review['id']}", headers=other).status_code == 403
    assert client.delete(f"/products/{pid}/reviews/{review['id']}", headers=author).status_code == 200

    body = client.get(f"/products/{pid}/reviews").json()
    assert body["review_count"] == 1
    assert body["average_rating"] == 5

    remaining = body["reviews"][0]["id"]
    assert client.delete(f"/products/{pid}/reviews/{remaining}", headers=admin_headers).status_code == 200
    body = client.get(f"/products/{pid}/reviews").json()
    assert body["review_count"] == 0
    assert body["average_rating"] == 0
    assert client.delete(f"/products/{pid}/reviews/{remaining}", headers=admin_headers).status_code == 404


def test_rating_stats():
    assert products.rating_stats([]) == {"review_count": 0, "average_rating": 0}
    assert products.rating_stats([{"rating": 3}, {"rating": 4}]) == {"review_count": 2, "average_rating": 3.5}

import os

# must be in place before config.py is imported
os.environ["JWT_SECRET"] = "test-secret"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["ADDRESS_POLICY"] = "bd"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("SMTP_HOST", None)
os.environ.pop("IMAGEKIT_PRIVATE_KEY", None)

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import create_document, ensure_indexes, get_db
from main import app
from schemas import Product, User
from security import create_token, hash_password

ADDRESS = {
    "full_name": "Rahim Uddin",
    "phone": "01712345678",
    "division": "Dhaka",
    "district": "Dhaka",
    "thana": "Gulshan",
    "postal_code": "1212",
    "street_address": "House 7, Road 3",
}


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(email="buyer@example.com", role="user", password="secret123", shipping_address=None, full_name="Test Buyer"):
        user = User(
            full_name=full_name,
            email=email,
            password_hash=hash_password(password),
            role=role,
            is_email_verified=True,
            shipping_address=shipping_address,
        )
        user_id = create_document(db, "user", user)
        return {"id": user_id, "email": email, "role": role, "full_name": full_name, "shipping_address": shipping_address}

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", role="admin", full_name="Shop Admin")


def bearer(user):
    return {"Authorization": f"Bearer {create_token({'id': user['id'], 'role': user['role']})}"}


@pytest.fixture
def user_headers(user):
    return bearer(user)


@pytest.fixture
def admin_headers(admin):
    return bearer(admin)


@pytest.fixture
def make_product(db):
    def _make(title="Phone", amount=100.0, currency="BDT", stock=5, category="Mobiles"):
        product = Product(
            title=title,
            description=f"{title} description",
            price={"amount": amount, "currency": currency},
            stock=stock,
            category=category,
        )
        return create_document(db, "product", product)

    return _make

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import create_document, ensure_indexes, get_db
from main import app
from schemas import Product, Role, Store, User
from security import create_token, hash_password


@pytest.fixture
def db():
    database = mongomock.MongoClient()["rasaswadaya_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(email="user@example.com", role=Role.USER, password="secret123", name="Test User"):
        user = User(name=name, email=email, hashed_password=hash_password(password), role=role)
        doc = create_document(db, "user", user.model_dump())
        doc["token"] = create_token(doc)
        doc["headers"] = {"Authorization": f"Bearer {doc['token']}"}
        return doc
    return _make


@pytest.fixture
def buyer(make_user):
    return make_user("buyer@example.com")


@pytest.fixture
def owner(make_user):
    return make_user("owner@example.com", role=Role.STORE_OWNER)


@pytest.fixture
def store(db, owner):
    return create_document(db, "store", Store(owner_id=str(owner["_id"]), name="Kandy Crafts").model_dump())


@pytest.fixture
def make_product(db, store):
    def _make(name="P", price=100.0, stock=5, is_active=True):
        product = Product(name=name, price=price, stock=stock, is_active=is_active, store_id=str(store["_id"]))
        return create_document(db, "product", product.model_dump())
    return _make


@pytest.fixture
def stock_of(db):
    def _stock(product):
        return db["product"].find_one({"_id": product["_id"]})["stock"]
    return _stock

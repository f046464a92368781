import mongomock
import pytest
from fastapi.testclient import TestClient

from bookcourier.auth import make_token
from bookcourier.database import BOOKS, USERS, create_document, create_indexes, get_db
from bookcourier.main import app
from bookcourier.schemas import Book, User


@pytest.fixture
def db():
    database = mongomock.MongoClient()["bookcourier_test"]
    create_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(name, role="user"):
        return create_document(db, USERS, User(uid=f"uid-{name}", name=name, email=f"{name}@books.io", role=role))
    return _make


@pytest.fixture
def headers():
    def _headers(user):
        return {"Authorization": f"Bearer {make_token(user['uid'], user['email'])}"}
    return _headers


@pytest.fixture
def buyer(make_user):
    return make_user("buyer")


@pytest.fixture
def stranger(make_user):
    return make_user("stranger")


@pytest.fixture
def librarian(make_user):
    return make_user("librarian", role="librarian")


@pytest.fixture
def other_librarian(make_user):
    return make_user("otherlib", role="librarian")


@pytest.fixture
def admin(make_user):
    return make_user("admin", role="admin")


@pytest.fixture
def make_book(db):
    def _make(librarian, **fields):
        data = {"title": "Dune", "author": "Frank Herbert", "price": 12.99, "category": "Sci-Fi"}
        data.update(fields)
        return create_document(db, BOOKS, Book(librarian_id=librarian["_id"], **data))
    return _make


@pytest.fixture
def book(make_book, librarian):
    return make_book(librarian)


@pytest.fixture
def order_payload(book):
    return {
        "user_name": "Ada Reader",
        "user_email": "Ada@Books.io",
        "phone_number": "0123456789",
        "address": "1 Library Lane",
        "book_id": str(book["_id"]),
    }


@pytest.fixture
def place_order(client, headers, order_payload):
    def _place(user, **overrides):
        res = client.post("/api/orders", json={**order_payload, **overrides}, headers=headers(user))
        assert res.status_code == 201, res.text
        return res.json()["data"]
    return _place


@pytest.fixture
def set_status(client, headers):
    def _set(user, order_id, status):
        return client.patch(f"/api/orders/{order_id}/status", json={"status": status}, headers=headers(user))
    return _set


@pytest.fixture
def delivered_order(place_order, set_status, buyer, librarian):
    order = place_order(buyer)
    assert set_status(librarian, order["_id"], "shipped").status_code == 200
    assert set_status(librarian, order["_id"], "delivered").status_code == 200
    return order

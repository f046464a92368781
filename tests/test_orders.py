import pytest
from bson import ObjectId

from bookcourier import orders
from bookcourier.database import BOOKS, ORDERS
from bookcourier.errors import InvalidTransition
from bookcourier.schemas import OrderStatus


def test_place_order_captures_book_snapshot(client, db, buyer, librarian, book, place_order):
    order = place_order(buyer)

    assert order["total_amount"] == 12.99
    assert order["order_status"] == "pending"
    assert order["payment_status"] == "unpaid"
    assert order["book_title"] == "Dune"
    assert order["user_email"] == "ada@books.io"
    assert order["librarian_id"] == str(librarian["_id"])
    assert order["user_id"] == str(buyer["_id"])


def test_later_price_change_does_not_touch_order(client, headers, buyer, librarian, book, place_order):
    order = place_order(buyer)
    res = client.put(f"/api/books/{book['_id']}", json={"price": 30}, headers=headers(librarian))
    assert res.status_code == 200

    res = client.get(f"/api/orders/{order['_id']}", headers=headers(buyer))
    assert res.json()["data"]["total_amount"] == 12.99
    assert res.json()["data"]["book"]["price"] == 30


def test_reassigned_book_keeps_orders_with_original_librarian(
    db, buyer, librarian, other_librarian, book, place_order, set_status
):
    order = place_order(buyer)
    db[BOOKS].update_one({"_id": book["_id"]}, {"$set": {"librarian_id": other_librarian["_id"]}})

    assert set_status(other_librarian, order["_id"], "shipped").status_code == 403
    assert set_status(librarian, order["_id"], "shipped").status_code == 200


def test_unpublished_book_cannot_be_ordered(client, headers, buyer, librarian, make_book, order_payload):
    hidden = make_book(librarian, status="unpublished")
    res = client.post("/api/orders", json={**order_payload, "book_id": str(hidden["_id"])}, headers=headers(buyer))

    assert res.status_code == 400
    assert "Only published books" in res.json()["message"]


def test_order_for_missing_book(client, headers, buyer, order_payload):
    res = client.post("/api/orders", json={**order_payload, "book_id": str(ObjectId())}, headers=headers(buyer))
    assert res.status_code == 404
    assert res.json() == {"success": False, "message": "Book not found"}


@pytest.mark.parametrize("field,value", [
    ("user_email", "not-an-email"),
    ("phone_number", "12345"),
    ("book_id", "nope"),
    ("address", "   "),
])
def test_order_field_validation(client, headers, buyer, order_payload, field, value):
    res = client.post("/api/orders", json={**order_payload, field: value}, headers=headers(buyer))

    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False
    assert field in [e["field"] for e in body["errors"]]


def test_order_missing_fields(client, headers, buyer):
    res = client.post("/api/orders", json={}, headers=headers(buyer))
    fields = {e["field"] for e in res.json()["errors"]}
    assert res.status_code == 400
    assert {"user_name", "user_email", "phone_number", "address", "book_id"} <= fields


def test_order_requires_authentication(client, order_payload):
    res = client.post("/api/orders", json=order_payload)
    assert res.status_code == 401


def test_librarian_ships_and_delivers(buyer, librarian, place_order, set_status):
    order = place_order(buyer)

    res = set_status(librarian, order["_id"], "shipped")
    assert res.status_code == 200
    assert res.json()["data"]["order_status"] == "shipped"

    res = set_status(librarian, order["_id"], "delivered")
    assert res.status_code == 200
    assert res.json()["data"]["order_status"] == "delivered"


def test_buyer_cannot_cancel_delivered_order(client, headers, buyer, delivered_order):
    res = client.patch(f"/api/orders/{delivered_order['_id']}/cancel", headers=headers(buyer))

    assert res.status_code == 409
    body = res.json()
    assert body["errors"] == {"current_status": "delivered", "allowed": []}
    assert "none" in body["message"]


@pytest.mark.parametrize("path,target", [
    (["shipped"], "pending"),
    (["shipped"], "cancelled"),
    ([], "delivered"),
    ([], "pending"),
    (["shipped", "delivered"], "delivered"),
    (["cancelled"], "shipped"),
])
def test_transitions_outside_table_are_rejected(db, buyer, librarian, place_order, set_status, path, target):
    order = place_order(buyer)
    for step in path:
        assert set_status(librarian, order["_id"], step).status_code == 200
    before = db[ORDERS].find_one({"_id": ObjectId(order["_id"])})["order_status"]

    res = set_status(librarian, order["_id"], target)

    assert res.status_code == 409
    assert res.json()["errors"]["current_status"] == before
    assert db[ORDERS].find_one({"_id": ObjectId(order["_id"])})["order_status"] == before


def test_transition_table():
    expected = {
        ("pending", "shipped"),
        ("pending", "cancelled"),
        ("shipped", "delivered"),
    }
    for current in OrderStatus:
        for target in OrderStatus:
            if (current.value, target.value) in expected:
                orders.check_transition(current.value, target)
            else:
                with pytest.raises(InvalidTransition):
                    orders.check_transition(current.value, target)


def test_unknown_status_is_a_validation_error(buyer, librarian, place_order, set_status):
    order = place_order(buyer)
    res = set_status(librarian, order["_id"], "lost")
    assert res.status_code == 400


def test_only_owning_librarian_or_admin_update_status(
    buyer, other_librarian, admin, place_order, set_status
):
    order = place_order(buyer)

    assert set_status(buyer, order["_id"], "shipped").status_code == 403
    assert set_status(other_librarian, order["_id"], "shipped").status_code == 403
    assert set_status(admin, order["_id"], "shipped").status_code == 200


def test_librarian_can_cancel_pending_order(buyer, librarian, place_order, set_status):
    order = place_order(buyer)
    res = set_status(librarian, order["_id"], "cancelled")
    assert res.json()["data"]["order_status"] == "cancelled"


def test_buyer_cancels_pending_order(client, headers, buyer, place_order):
    order = place_order(buyer)
    res = client.patch(f"/api/orders/{order['_id']}/cancel", headers=headers(buyer))

    assert res.status_code == 200
    assert res.json()["data"]["order_status"] == "cancelled"


def test_only_buyer_cancels(client, headers, buyer, librarian, stranger, place_order):
    order = place_order(buyer)
    assert client.patch(f"/api/orders/{order['_id']}/cancel", headers=headers(stranger)).status_code == 403
    assert client.patch(f"/api/orders/{order['_id']}/cancel", headers=headers(librarian)).status_code == 403


def test_cancel_shipped_order_rejected(client, headers, buyer, librarian, place_order, set_status):
    order = place_order(buyer)
    set_status(librarian, order["_id"], "shipped")

    res = client.patch(f"/api/orders/{order['_id']}/cancel", headers=headers(buyer))
    assert res.status_code == 409
    assert res.json()["errors"]["allowed"] == ["delivered"]


def test_mark_paid_once(client, headers, db, buyer, place_order):
    order = place_order(buyer)
    url = f"/api/orders/{order['_id']}/payment"

    res = client.patch(url, headers=headers(buyer))
    assert res.status_code == 200
    assert res.json()["data"]["payment_status"] == "paid"

    res = client.patch(url, headers=headers(buyer))
    assert res.status_code == 409
    assert res.json()["message"] == "Payment has already been completed for this order"


def test_mark_paid_rejects_other_users_and_cancelled_orders(client, headers, buyer, stranger, place_order):
    order = place_order(buyer)
    url = f"/api/orders/{order['_id']}/payment"
    assert client.patch(url, headers=headers(stranger)).status_code == 403

    client.patch(f"/api/orders/{order['_id']}/cancel", headers=headers(buyer))
    res = client.patch(url, headers=headers(buyer))
    assert res.status_code == 409
    assert res.json()["message"] == "Cancelled orders cannot be paid"


def test_order_visibility(client, headers, buyer, librarian, other_librarian, admin, stranger, place_order):
    order = place_order(buyer)
    url = f"/api/orders/{order['_id']}"

    for user in (buyer, librarian, admin):
        res = client.get(url, headers=headers(user))
        assert res.status_code == 200
        assert res.json()["data"]["librarian"]["email"] == librarian["email"]
    for user in (stranger, other_librarian):
        assert client.get(url, headers=headers(user)).status_code == 403


def test_get_order_bad_and_missing_ids(client, headers, buyer):
    assert client.get("/api/orders/xyz", headers=headers(buyer)).status_code == 400
    assert client.get(f"/api/orders/{ObjectId()}", headers=headers(buyer)).status_code == 404


def test_order_listings(client, headers, buyer, stranger, librarian, other_librarian, admin, place_order):
    place_order(buyer)
    place_order(stranger)

    mine = client.get("/api/orders/my-orders", headers=headers(buyer)).json()
    assert mine["count"] == 1
    assert mine["data"][0]["book"]["title"] == "Dune"

    lib = client.get("/api/orders/librarian/orders", headers=headers(librarian)).json()
    assert lib["count"] == 2
    assert {o["user"]["email"] for o in lib["data"]} == {buyer["email"], stranger["email"]}

    other = client.get("/api/orders/librarian/orders", headers=headers(other_librarian)).json()
    assert other["count"] == 0

    everything = client.get("/api/orders/admin/all", headers=headers(admin)).json()
    assert everything["count"] == 2
    assert everything["data"][0]["librarian"]["role"] == "librarian"

    assert client.get("/api/orders/admin/all", headers=headers(librarian)).status_code == 403
    assert client.get("/api/orders/librarian/orders", headers=headers(buyer)).status_code == 403

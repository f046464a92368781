"""
Order lifecycle

    pending --> shipped --> delivered
       |
       +------> cancelled

delivered and cancelled are terminal. payment_status is a separate flag that
only ever moves unpaid -> paid. Every status write is conditional on the state
it was checked against, so a concurrent update makes the second writer fail
instead of silently overwriting the first.
"""
import logging
from typing import Any, Dict, FrozenSet, List

from pymongo.database import Database

from .auth import can_manage, is_admin, is_owner
from .books import find_book
from .database import BOOKS, ORDERS, USERS, create_document, lookup_one, now, pick, to_object_id
from .errors import AlreadyPaid, BookNotOrderable, Conflict, Forbidden, InvalidTransition, NotFound
from .schemas import BookStatus, Order, OrderCreate, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.pending: frozenset({OrderStatus.shipped, OrderStatus.cancelled}),
    OrderStatus.shipped: frozenset({OrderStatus.delivered}),
    OrderStatus.delivered: frozenset(),
    OrderStatus.cancelled: frozenset(),
}

BOOK_SUMMARY = ("title", "author", "image", "price", "category")
USER_SUMMARY = ("name", "email", "photo_url")


def allowed_transitions(current: str) -> FrozenSet[OrderStatus]:
    return TRANSITIONS[OrderStatus(current)]


def check_transition(current: str, target: OrderStatus) -> None:
    target = OrderStatus(target)
    allowed = allowed_transitions(current)
    if target not in allowed:
        raise InvalidTransition(OrderStatus(current).value, target.value, [s.value for s in allowed])


def place_order(db: Database, current: dict, payload: OrderCreate) -> Dict[str, Any]:
    book = find_book(db, payload.book_id)
    if book.get("status") != BookStatus.published.value:
        raise BookNotOrderable()

    order = Order(
        user_id=current["_id"],
        book_id=book["_id"],
        librarian_id=book["librarian_id"],
        book_title=book["title"],
        user_name=payload.user_name,
        user_email=str(payload.user_email).lower(),
        phone_number=payload.phone_number,
        address=payload.address,
        total_amount=book["price"],
    )
    doc = create_document(db, ORDERS, order)
    logger.info("Order %s placed by %s for book %s (%.2f)", doc["_id"], current.get("email"), book["_id"], doc["total_amount"])
    return doc


def find_order(db: Database, order_id) -> Dict[str, Any]:
    order = db[ORDERS].find_one({"_id": to_object_id(order_id, "order ID")})
    if not order:
        raise NotFound("Order not found")
    return order


def _joined_orders(db: Database, match: dict, with_user: bool = False, with_librarian: bool = False) -> List[dict]:
    pipeline = [{"$match": match}]
    pipeline += lookup_one(BOOKS, "book_id", "book")
    if with_user:
        pipeline += lookup_one(USERS, "user_id", "user")
    if with_librarian:
        pipeline += lookup_one(USERS, "librarian_id", "librarian")
    pipeline.append({"$sort": {"order_date": -1, "_id": -1}})

    orders = list(db[ORDERS].aggregate(pipeline))
    for o in orders:
        o["book"] = pick(o.get("book"), *BOOK_SUMMARY)
        if with_user:
            o["user"] = pick(o.get("user"), *USER_SUMMARY)
        if with_librarian:
            o["librarian"] = pick(o.get("librarian"), "name", "email", "role")
    return orders


def my_orders(db: Database, current: dict) -> List[dict]:
    return _joined_orders(db, {"user_id": current["_id"]})


def librarian_orders(db: Database, current: dict) -> List[dict]:
    return _joined_orders(db, {"librarian_id": current["_id"]}, with_user=True)


def all_orders(db: Database) -> List[dict]:
    return _joined_orders(db, {}, with_user=True, with_librarian=True)


def get_order(db: Database, current: dict, order_id) -> Dict[str, Any]:
    orders = _joined_orders(db, {"_id": to_object_id(order_id, "order ID")}, with_librarian=True)
    if not orders:
        raise NotFound("Order not found")
    order = orders[0]
    if not (is_owner(order["user_id"], current) or is_owner(order.get("librarian_id"), current) or is_admin(current)):
        raise Forbidden("You do not have permission to view this order")
    return order


def _transition(db: Database, order: dict, target: OrderStatus) -> Dict[str, Any]:
    check_transition(order["order_status"], target)
    changes = {"order_status": target.value, "updated_at": now()}
    res = db[ORDERS].update_one(
        {"_id": order["_id"], "order_status": order["order_status"]},
        {"$set": changes},
    )
    if res.matched_count == 0:
        # someone else moved it first; report against the fresh state
        fresh = find_order(db, order["_id"])
        check_transition(fresh["order_status"], target)
        raise Conflict("Order was modified concurrently, please retry")
    logger.info("Order %s: %s -> %s", order["_id"], order["order_status"], target.value)
    order.update(changes)
    return order


def cancel_order(db: Database, current: dict, order_id) -> Dict[str, Any]:
    order = find_order(db, order_id)
    if not is_owner(order["user_id"], current):
        raise Forbidden("You can only cancel your own orders")
    return _transition(db, order, OrderStatus.cancelled)


def update_order_status(db: Database, current: dict, order_id, new_status: OrderStatus) -> Dict[str, Any]:
    order = find_order(db, order_id)
    if not can_manage(order.get("librarian_id"), current):
        raise Forbidden("You can only update orders for your own books")
    return _transition(db, order, OrderStatus(new_status))


def ensure_payable(order: dict) -> None:
    if order["payment_status"] == PaymentStatus.paid.value:
        raise AlreadyPaid()
    if order["order_status"] == OrderStatus.cancelled.value:
        raise Conflict("Cancelled orders cannot be paid")


def mark_paid(db: Database, current: dict, order_id) -> Dict[str, Any]:
    order = find_order(db, order_id)
    if not is_owner(order["user_id"], current):
        raise Forbidden("You can only update payment for your own orders")
    ensure_payable(order)
    changes = {"payment_status": PaymentStatus.paid.value, "updated_at": now()}
    res = db[ORDERS].update_one(
        {"_id": order["_id"], "payment_status": PaymentStatus.unpaid.value},
        {"$set": changes},
    )
    if res.matched_count == 0:
        raise AlreadyPaid()
    logger.info("Order %s marked paid", order["_id"])
    order.update(changes)
    return order

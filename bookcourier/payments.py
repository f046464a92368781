"""
Payment ledger

A payment is written first and the order is flagged paid second. If the second
write fails or matches nothing the payment row is deleted again, so no payment
outlives an order that did not end up paid. With transactions enabled both
writes share one session as well.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from .auth import is_owner
from .database import BOOKS, ORDERS, PAYMENTS, create_document, lookup_one, now, pick
from .errors import AlreadyPaid, DependencyFailure, DuplicateKey, Forbidden, ValidationError
from .orders import BOOK_SUMMARY, ensure_payable, find_order
from .schemas import Payment, PaymentCreate, PaymentStatus

logger = logging.getLogger(__name__)


def create_payment(
    db: Database,
    current: dict,
    payload: PaymentCreate,
    session: Optional[ClientSession] = None,
) -> Dict[str, Any]:
    order = find_order(db, payload.order_id)
    if not is_owner(order["user_id"], current):
        raise Forbidden("You can only create payment for your own orders")
    ensure_payable(order)
    if payload.amount != order["total_amount"]:
        raise ValidationError(
            f"Payment amount ({payload.amount}) does not match order total ({order['total_amount']})"
        )
    if db[PAYMENTS].find_one({"transaction_id": payload.transaction_id}, session=session):
        raise DuplicateKey("Transaction ID already exists. Duplicate payment detected.")
    if db[PAYMENTS].find_one({"order_id": order["_id"]}, session=session):
        raise AlreadyPaid()

    payment = Payment(
        order_id=order["_id"],
        user_id=current["_id"],
        amount=payload.amount,
        payment_method=payload.payment_method,
        transaction_id=payload.transaction_id,
    )
    try:
        doc = create_document(db, PAYMENTS, payment, session=session)
    except DuplicateKeyError:
        raise DuplicateKey("Transaction ID already exists. Duplicate payment detected.")

    try:
        res = db[ORDERS].update_one(
            {"_id": order["_id"], "payment_status": PaymentStatus.unpaid.value},
            {"$set": {"payment_status": PaymentStatus.paid.value, "updated_at": now()}},
            session=session,
        )
    except PyMongoError as e:
        _compensate(db, doc["_id"], session)
        raise DependencyFailure("Failed to update order payment status") from e

    if res.matched_count == 0:
        _compensate(db, doc["_id"], session)
        fresh = db[ORDERS].find_one({"_id": order["_id"]}, session=session)
        if fresh and fresh.get("payment_status") == PaymentStatus.paid.value:
            raise AlreadyPaid()
        raise DependencyFailure("Failed to update order payment status")

    logger.info("Payment %s recorded for order %s (%s)", doc["_id"], order["_id"], payload.transaction_id)
    return doc


def _compensate(db: Database, payment_id, session: Optional[ClientSession]) -> None:
    logger.warning("Rolling back payment %s after failed order update", payment_id)
    db[PAYMENTS].delete_one({"_id": payment_id}, session=session)


def my_payments(db: Database, current: dict) -> List[dict]:
    pipeline = [{"$match": {"user_id": current["_id"]}}]
    pipeline += lookup_one(ORDERS, "order_id", "order")
    pipeline.append({"$sort": {"payment_date": -1, "_id": -1}})
    payments = list(db[PAYMENTS].aggregate(pipeline))

    book_ids = {p["order"]["book_id"] for p in payments if p.get("order")}
    books = {b["_id"]: b for b in db[BOOKS].find({"_id": {"$in": list(book_ids)}})}
    for p in payments:
        order = p.get("order")
        p["book"] = pick(books.get(order["book_id"]), *BOOK_SUMMARY) if order else None
        p["order"] = pick(
            order, "user_name", "user_email", "phone_number", "address",
            "order_status", "payment_status", "order_date", "total_amount",
        )
    return payments

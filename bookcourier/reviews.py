"""
Reviews

A user may review a book only after one of their orders for it has been
delivered. There is a single review per (user, book); posting again replaces
the rating and comment.
"""
import logging
import math
from typing import Any, Dict, List, Tuple

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .database import BOOKS, ORDERS, REVIEWS, USERS, create_document, lookup_one, now, pick, to_object_id
from .errors import Forbidden
from .schemas import OrderStatus, Review, ReviewCreate

logger = logging.getLogger(__name__)


def upsert_review(db: Database, current: dict, payload: ReviewCreate) -> Tuple[Dict[str, Any], bool]:
    """Returns the stored review and whether it was newly created."""
    book_id = to_object_id(payload.book_id, "book ID")
    key = {"user_id": current["_id"], "book_id": book_id}

    order = db[ORDERS].find_one({**key, "order_status": OrderStatus.delivered.value})
    if not order:
        raise Forbidden(
            "You must order and receive this book before reviewing it. Only delivered orders can be reviewed."
        )

    if not db[REVIEWS].find_one(key):
        try:
            doc = create_document(
                db, REVIEWS, Review(**key, order_id=order["_id"], rating=payload.rating, comment=payload.comment)
            )
            logger.info("Review added by %s for book %s", current.get("email"), book_id)
            return doc, True
        except DuplicateKeyError:
            # a concurrent request created it first, fall through to update
            pass

    db[REVIEWS].update_one(
        key,
        {"$set": {"rating": payload.rating, "comment": payload.comment, "order_id": order["_id"], "updated_at": now()}},
    )
    return db[REVIEWS].find_one(key), False


def average_rating(ratings: List[int]) -> float:
    """Mean rounded half up to one decimal, 0 for no ratings."""
    if not ratings:
        return 0
    return math.floor(sum(ratings) / len(ratings) * 10 + 0.5) / 10


def book_reviews(db: Database, book_id) -> Dict[str, Any]:
    pipeline = [{"$match": {"book_id": to_object_id(book_id, "book ID")}}]
    pipeline += lookup_one(USERS, "user_id", "user")
    pipeline.append({"$sort": {"created_at": -1, "_id": -1}})
    reviews = list(db[REVIEWS].aggregate(pipeline))
    for r in reviews:
        r["user"] = pick(r.get("user"), "name", "photo_url")
    return {
        "reviews": reviews,
        "count": len(reviews),
        "average_rating": average_rating([r["rating"] for r in reviews]),
    }


def user_reviews(db: Database, current: dict) -> List[dict]:
    pipeline = [{"$match": {"user_id": current["_id"]}}]
    pipeline += lookup_one(BOOKS, "book_id", "book")
    pipeline.append({"$sort": {"created_at": -1, "_id": -1}})
    reviews = list(db[REVIEWS].aggregate(pipeline))
    for r in reviews:
        r["book"] = pick(r.get("book"), "title", "author", "image", "category")
    return reviews

"""Book catalog: CRUD with librarian ownership, public listing, cascade delete."""
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING
from pymongo.client_session import ClientSession
from pymongo.database import Database

from .auth import can_manage
from .database import (
    BOOKS,
    ORDERS,
    PAYMENTS,
    REVIEWS,
    USERS,
    WISHLISTS,
    create_document,
    get_documents,
    lookup_one,
    now,
    pick,
    to_object_id,
)
from .errors import Forbidden, NotFound, ValidationError
from .schemas import Book, BookCreate, BookSort, BookStatus, BookUpdate

logger = logging.getLogger(__name__)

SORTS = {
    BookSort.newest: [("created_at", DESCENDING), ("_id", DESCENDING)],
    BookSort.price_asc: [("price", ASCENDING)],
    BookSort.price_desc: [("price", DESCENDING)],
    BookSort.name_asc: [("title", ASCENDING)],
    BookSort.name_desc: [("title", DESCENDING)],
}

MAX_PAGE_SIZE = 100


def create_book(db: Database, current: dict, payload: BookCreate) -> Dict[str, Any]:
    book = Book(**payload.model_dump(), librarian_id=current["_id"])
    doc = create_document(db, BOOKS, book)
    logger.info("Book %s added by %s", doc["_id"], current.get("email"))
    return doc


def find_book(db: Database, book_id) -> Dict[str, Any]:
    book = db[BOOKS].find_one({"_id": to_object_id(book_id, "book ID")})
    if not book:
        raise NotFound("Book not found")
    return book


def list_books(
    db: Database,
    search: Optional[str] = None,
    sort: BookSort = BookSort.newest,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[dict], int]:
    """Published books only. Returns the page and the total match count."""
    if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")
    query: Dict[str, Any] = {"status": BookStatus.published.value}
    if search:
        query["title"] = {"$regex": re.escape(search.strip()), "$options": "i"}

    total = db[BOOKS].count_documents(query)
    cursor = db[BOOKS].find(query).sort(SORTS[BookSort(sort)]).skip((page - 1) * limit).limit(limit)
    return list(cursor), total


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if total else 0


def _with_librarian(db: Database, match: dict) -> List[dict]:
    pipeline = [{"$match": match}]
    pipeline += lookup_one(USERS, "librarian_id", "librarian")
    pipeline.append({"$sort": {"created_at": -1, "_id": -1}})
    books = list(db[BOOKS].aggregate(pipeline))
    for b in books:
        b["librarian"] = pick(b.get("librarian"), "name", "email")
    return books


def get_book(db: Database, book_id) -> Dict[str, Any]:
    books = _with_librarian(db, {"_id": to_object_id(book_id, "book ID")})
    if not books:
        raise NotFound("Book not found")
    return books[0]


def librarian_books(db: Database, current: dict) -> List[dict]:
    return get_documents(
        db, BOOKS, {"librarian_id": current["_id"]}, sort=[("created_at", DESCENDING), ("_id", DESCENDING)]
    )


def admin_books(db: Database) -> List[dict]:
    return _with_librarian(db, {})


def _owned_book(db: Database, current: dict, book_id) -> Dict[str, Any]:
    book = find_book(db, book_id)
    if not can_manage(book.get("librarian_id"), current):
        raise Forbidden("You can only modify your own books")
    return book


def update_book(db: Database, current: dict, book_id, payload: BookUpdate) -> Dict[str, Any]:
    book = _owned_book(db, current, book_id)
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise ValidationError("No fields to update")
    changes["updated_at"] = now()
    db[BOOKS].update_one({"_id": book["_id"]}, {"$set": changes})
    book.update(changes)
    return book


def set_book_status(db: Database, current: dict, book_id, status: BookStatus) -> Dict[str, Any]:
    book = _owned_book(db, current, book_id)
    changes = {"status": BookStatus(status).value, "updated_at": now()}
    db[BOOKS].update_one({"_id": book["_id"]}, {"$set": changes})
    book.update(changes)
    return book


def delete_book(db: Database, book_id, session: Optional[ClientSession] = None) -> Dict[str, int]:
    """Delete a book and every record that references it.

    Dependents go first so a failure part way never leaves them pointing at a
    missing book. Payments of the removed orders go with them.
    """
    book = find_book(db, book_id)
    oid = book["_id"]
    order_ids = [o["_id"] for o in db[ORDERS].find({"book_id": oid}, {"_id": 1}, session=session)]
    counts = {
        "payments": db[PAYMENTS].delete_many({"order_id": {"$in": order_ids}}, session=session).deleted_count
        if order_ids else 0,
        "orders": db[ORDERS].delete_many({"book_id": oid}, session=session).deleted_count,
        "wishlist": db[WISHLISTS].delete_many({"book_id": oid}, session=session).deleted_count,
        "reviews": db[REVIEWS].delete_many({"book_id": oid}, session=session).deleted_count,
    }
    db[BOOKS].delete_one({"_id": oid}, session=session)
    logger.info("Book %s deleted with dependents %s", oid, counts)
    return counts

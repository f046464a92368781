import logging
from typing import Any, Dict, List

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .books import find_book
from .database import BOOKS, WISHLISTS, create_document, lookup_one, pick, to_object_id
from .errors import AlreadyExists, NotFound
from .schemas import Wishlist

logger = logging.getLogger(__name__)


def add_to_wishlist(db: Database, current: dict, book_id) -> Dict[str, Any]:
    book = find_book(db, book_id)
    key = {"user_id": current["_id"], "book_id": book["_id"]}
    if db[WISHLISTS].find_one(key):
        raise AlreadyExists("Book is already in your wishlist")
    try:
        return create_document(db, WISHLISTS, Wishlist(**key))
    except DuplicateKeyError:
        raise AlreadyExists("Book is already in your wishlist")


def remove_from_wishlist(db: Database, current: dict, book_id) -> None:
    res = db[WISHLISTS].delete_one({"user_id": current["_id"], "book_id": to_object_id(book_id, "book ID")})
    if res.deleted_count == 0:
        raise NotFound("Book not found in wishlist")


def user_wishlist(db: Database, current: dict) -> List[dict]:
    pipeline = [{"$match": {"user_id": current["_id"]}}]
    pipeline += lookup_one(BOOKS, "book_id", "book")
    pipeline.append({"$sort": {"added_at": -1, "_id": -1}})
    items = list(db[WISHLISTS].aggregate(pipeline))
    for item in items:
        item["book"] = pick(item.get("book"), "title", "author", "image", "price", "status", "category", "description")
    return items

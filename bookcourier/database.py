"""
MongoDB access helpers

The client is created once at startup and stored on ``app.state``; request
handlers receive the database through ``Depends(get_db)``.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Union

from bson import ObjectId
from fastapi import Request
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.errors import OperationFailure

from .config import Settings
from .errors import ValidationError

logger = logging.getLogger(__name__)

USERS = "user"
BOOKS = "book"
ORDERS = "order"
PAYMENTS = "payment"
WISHLISTS = "wishlist"
REVIEWS = "review"


def connect(settings: Settings) -> Database:
    client = MongoClient(
        settings.database_url,
        maxPoolSize=settings.max_pool_size,
        minPoolSize=settings.min_pool_size,
        serverSelectionTimeoutMS=settings.timeout_ms,
    )
    logger.info("MongoDB client created for database %s", settings.database_name)
    return client[settings.database_name]


def get_db(request: Request) -> Database:
    return request.app.state.db


def create_indexes(db: Database) -> None:
    indexes = [
        (USERS, [("email", ASCENDING)], {"unique": True, "name": "email_unique"}),
        (USERS, [("uid", ASCENDING)], {"name": "uid_index"}),
        (BOOKS, [("librarian_id", ASCENDING)], {"name": "librarian_index"}),
        (BOOKS, [("status", ASCENDING)], {"name": "status_index"}),
        (ORDERS, [("user_id", ASCENDING)], {"name": "user_index"}),
        (ORDERS, [("book_id", ASCENDING)], {"name": "book_index"}),
        (ORDERS, [("librarian_id", ASCENDING)], {"name": "librarian_index"}),
        (ORDERS, [("order_status", ASCENDING)], {"name": "order_status_index"}),
        (PAYMENTS, [("user_id", ASCENDING)], {"name": "user_index"}),
        (PAYMENTS, [("order_id", ASCENDING)], {"name": "order_index"}),
        (PAYMENTS, [("transaction_id", ASCENDING)], {"unique": True, "name": "transaction_id_unique"}),
        (WISHLISTS, [("user_id", ASCENDING), ("book_id", ASCENDING)], {"unique": True, "name": "user_book_unique"}),
        (REVIEWS, [("user_id", ASCENDING), ("book_id", ASCENDING)], {"unique": True, "name": "user_book_unique"}),
        (REVIEWS, [("book_id", ASCENDING)], {"name": "book_index"}),
    ]
    for collection, keys, options in indexes:
        try:
            db[collection].create_index(keys, **options)
        except OperationFailure as e:
            # an index with the same name but other options is left alone
            if e.code not in (85, 86):
                raise
            logger.info("Index %s.%s already exists, skipping", collection, options["name"])
    logger.info("Database indexes ensured")


@contextmanager
def transaction(db: Database, enabled: bool) -> Iterator[Optional[ClientSession]]:
    """Run the block inside a multi-document transaction when enabled.

    Yields the session to pass to every collection call, or None when
    transactions are off (standalone servers do not support them).
    """
    if not enabled:
        yield None
        return
    with db.client.start_session() as session:
        with session.start_transaction():
            yield session


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Any, label: str = "ID") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(str(value)):
        raise ValidationError(f"Invalid {label} format")
    return ObjectId(str(value))


def create_document(
    db: Database,
    collection_name: str,
    data: Union[BaseModel, dict],
    session: Optional[ClientSession] = None,
) -> Dict[str, Any]:
    """Insert a document with timestamps and return it, ``_id`` included."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    stamp = now()
    doc["created_at"] = stamp
    doc["updated_at"] = stamp
    result = db[collection_name].insert_one(doc, session=session)
    doc["_id"] = result.inserted_id
    return doc


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    sort: Optional[List[tuple]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(int(limit))
    return list(cursor)


def lookup_one(from_collection: str, local_field: str, as_field: str) -> List[dict]:
    """$lookup + $unwind stages joining a single referenced document."""
    return [
        {
            "$lookup": {
                "from": from_collection,
                "localField": local_field,
                "foreignField": "_id",
                "as": as_field,
            }
        },
        {"$unwind": {"path": f"${as_field}", "preserveNullAndEmptyArrays": True}},
    ]


def pick(doc: Optional[dict], *fields: str) -> Optional[dict]:
    """Project a joined document down to a summary, or None when it is missing."""
    if not doc:
        return None
    return {f: doc.get(f) for f in ("_id",) + fields}


def serialize(value: Any) -> Any:
    """Make a Mongo document JSON friendly (ObjectId -> str)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value

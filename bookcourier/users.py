import logging
from typing import Any, Dict, List

from pymongo import DESCENDING
from pymongo.database import Database

from .database import ORDERS, USERS, get_documents, now, to_object_id
from .errors import NotFound, ValidationError
from .schemas import OrderStatus, ProfileUpdate, Role

logger = logging.getLogger(__name__)


def _set_and_fetch(db: Database, user_id, changes: dict) -> Dict[str, Any]:
    changes["updated_at"] = now()
    res = db[USERS].update_one({"_id": user_id}, {"$set": changes})
    if res.matched_count == 0:
        raise NotFound("User not found")
    return db[USERS].find_one({"_id": user_id})


def get_profile(db: Database, current: dict) -> Dict[str, Any]:
    user = db[USERS].find_one({"_id": current["_id"]})
    if not user:
        raise NotFound("User not found")
    return user


def update_profile(db: Database, current: dict, payload: ProfileUpdate) -> Dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ValidationError("No fields to update. Provide name or photo_url.")
    return _set_and_fetch(db, current["_id"], changes)


def mark_password_set(db: Database, current: dict) -> Dict[str, Any]:
    return _set_and_fetch(db, current["_id"], {"has_password": True, "password_required": False})


def user_stats(db: Database, current: dict) -> Dict[str, Any]:
    match = {"user_id": current["_id"]}
    totals = list(db[ORDERS].aggregate([
        {"$match": match},
        {"$group": {"_id": None, "total_orders": {"$sum": 1}, "total_spent": {"$sum": "$total_amount"}}},
    ]))
    stats = totals[0] if totals else {"total_orders": 0, "total_spent": 0}
    return {
        "total_orders": stats["total_orders"],
        "total_spent": stats["total_spent"],
        "pending_orders": db[ORDERS].count_documents({**match, "order_status": OrderStatus.pending.value}),
    }


def list_users(db: Database, exclude_admin: bool = False) -> List[dict]:
    query = {"role": {"$ne": Role.admin.value}} if exclude_admin else {}
    return get_documents(db, USERS, query, sort=[("created_at", DESCENDING), ("_id", DESCENDING)])


def update_role(db: Database, user_id, role: Role) -> Dict[str, Any]:
    oid = to_object_id(user_id, "user ID")
    user = _set_and_fetch(db, oid, {"role": Role(role).value})
    logger.info("Role of %s set to %s", user.get("email"), user["role"])
    return user

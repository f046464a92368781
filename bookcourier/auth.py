import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .config import Settings, get_settings
from .database import USERS, create_document, get_db, now
from .errors import Forbidden, Unauthenticated
from .schemas import Role, User

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

LIBRARIAN_ROLES = frozenset({Role.librarian, Role.admin})
ADMIN_ROLES = frozenset({Role.admin})


# Tokens are issued by the identity provider, which shares SECRET_KEY with us:
# uid|email|expiry|signature

def _sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def make_token(uid: str, email: str, settings: Optional[Settings] = None) -> str:
    settings = settings or get_settings()
    expiry = int((datetime.now(timezone.utc) + timedelta(hours=settings.token_ttl_hours)).timestamp())
    payload = f"{uid}|{email}|{expiry}"
    return f"{payload}|{_sign(payload, settings.secret_key)}"


def parse_token(token: str, settings: Optional[Settings] = None) -> Optional[dict]:
    settings = settings or get_settings()
    try:
        uid, email, expiry, signature = token.split("|")
        expiry = int(expiry)
    except ValueError:
        return None
    if not hmac.compare_digest(_sign(f"{uid}|{email}|{expiry}", settings.secret_key), signature):
        return None
    if expiry < int(datetime.now(timezone.utc).timestamp()):
        return None
    if not uid or not email:
        return None
    return {"uid": uid, "email": email.lower()}


def resolve_principal(db: Database, token: Optional[str], settings: Optional[Settings] = None) -> dict:
    """Map a bearer token to a stored user, creating a ``user`` record on first sight."""
    if not token:
        raise Unauthenticated("No token provided. Authorization header must be in format: Bearer <token>")
    claims = parse_token(token, settings)
    if not claims:
        raise Unauthenticated("Invalid or expired token")

    users = db[USERS]
    user = users.find_one({"uid": claims["uid"]})
    if user:
        return user

    # accounts created before their first login have no uid yet
    user = users.find_one({"email": claims["email"]})
    if user:
        users.update_one({"_id": user["_id"]}, {"$set": {"uid": claims["uid"], "updated_at": now()}})
        user["uid"] = claims["uid"]
        return user

    new_user = User(uid=claims["uid"], name=claims["email"].split("@")[0], email=claims["email"])
    try:
        user = create_document(db, USERS, new_user)
    except DuplicateKeyError:
        # lost a race with a concurrent first request for the same account
        user = users.find_one({"email": claims["email"]})
        if not user:
            raise
        return user
    logger.info("New user created: %s", claims["email"])
    return user


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict:
    token = credentials.credentials if credentials else None
    return resolve_principal(db, token, settings)


def require_role(allowed: Iterable[Role]):
    allowed_values = {r.value for r in allowed}

    def dependency(current: dict = Depends(get_current_user)) -> dict:
        if current.get("role") not in allowed_values:
            raise Forbidden(f"Access denied. Required role: {' or '.join(sorted(allowed_values))}")
        return current

    return dependency


require_librarian = require_role(LIBRARIAN_ROLES)
require_admin = require_role(ADMIN_ROLES)


def is_admin(user: dict) -> bool:
    return user.get("role") == Role.admin.value


def is_owner(owner_id, user: dict) -> bool:
    return owner_id is not None and str(owner_id) == str(user["_id"])


def can_manage(owner_id, user: dict) -> bool:
    return is_owner(owner_id, user) or is_admin(user)

from datetime import datetime, timedelta, timezone

import pytest

from bookcourier.auth import _sign, make_token, parse_token, resolve_principal
from bookcourier.config import Settings, get_settings
from bookcourier.database import USERS, create_document
from bookcourier.errors import Unauthenticated
from bookcourier.schemas import User


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def test_first_request_provisions_user(client, db):
    token = make_token("uid-new", "Newbie@Books.io")

    res = client.get("/api/users/profile", headers=_bearer(token))
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["email"] == "newbie@books.io"
    assert data["name"] == "newbie"
    assert data["role"] == "user"

    client.get("/api/users/profile", headers=_bearer(token))
    assert db[USERS].count_documents({"email": "newbie@books.io"}) == 1


def test_existing_account_is_linked_by_email(client, db):
    create_document(db, USERS, User(name="Pat", email="pat@books.io", role="librarian"))

    res = client.get("/api/users/profile", headers=_bearer(make_token("uid-pat", "pat@books.io")))

    assert res.json()["data"]["role"] == "librarian"
    assert res.json()["data"]["name"] == "Pat"
    assert db[USERS].find_one({"email": "pat@books.io"})["uid"] == "uid-pat"
    assert db[USERS].count_documents({}) == 1


def test_missing_token(client):
    res = client.get("/api/users/profile")
    assert res.status_code == 401
    assert res.json()["success"] is False


@pytest.mark.parametrize("token", ["garbage", "a|b|c", "uid|x@books.io|notanumber|sig"])
def test_malformed_tokens(client, token):
    assert client.get("/api/users/profile", headers=_bearer(token)).status_code == 401


def test_tampered_token(client):
    token = make_token("uid-eve", "eve@books.io")
    forged = token.replace("uid-eve", "uid-admin")
    assert client.get("/api/users/profile", headers=_bearer(forged)).status_code == 401


def test_expired_token(client):
    secret = get_settings().secret_key
    expiry = int((datetime.now(timezone.utc) - timedelta(minutes=1)).timestamp())
    payload = f"uid-old|old@books.io|{expiry}"
    token = f"{payload}|{_sign(payload, secret)}"

    res = client.get("/api/users/profile", headers=_bearer(token))
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid or expired token"


def test_token_signed_with_other_secret():
    token = make_token("uid-x", "x@books.io", Settings(secret_key="other"))
    assert parse_token(token, Settings(secret_key="other")) == {"uid": "uid-x", "email": "x@books.io"}
    assert parse_token(token, Settings(secret_key="dev-secret-2")) is None


def test_resolve_principal_without_token(db):
    with pytest.raises(Unauthenticated):
        resolve_principal(db, None, Settings())


def test_user_role_cannot_reach_librarian_routes(client, headers, buyer):
    res = client.get("/api/books/librarian/my-books", headers=headers(buyer))
    assert res.status_code == 403
    assert res.json() == {"success": False, "message": "Access denied. Required role: admin or librarian"}

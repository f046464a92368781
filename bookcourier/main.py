import os
import time
import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import books, orders, payments, reviews, users, wishlist
from .auth import get_current_user, require_admin, require_librarian
from .config import Settings, configure_logging, get_settings
from .database import connect, create_indexes, get_db, serialize, transaction
from .errors import ServiceError
from .schemas import (
    BookCreate,
    BookSort,
    BookStatusUpdate,
    BookUpdate,
    OrderCreate,
    OrderStatusUpdate,
    PaymentCreate,
    ProfileUpdate,
    ReviewCreate,
    RoleUpdate,
    WishlistCreate,
)

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title="BookCourier API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=86400,
)


def envelope(data: Any = None, message: str = "Success", **extra) -> dict:
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = serialize(data)
    body.update(extra)
    return body


def listing(items: list, message: str = "Success") -> dict:
    return envelope(items, message, count=len(items))


def error_response(status_code: int, message: str, errors: Any = None) -> JSONResponse:
    body = {"success": False, "message": message}
    if errors is not None:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc.__cause__)
    return error_response(exc.status_code, exc.message, exc.details)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e["loc"] if p != "body"), "message": e["msg"]}
        for e in exc.errors()
    ]
    fields = ", ".join(e["field"] for e in errors if e["field"])
    return error_response(400, f"Invalid request: {fields}" if fields else "Invalid request", errors)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    message = f"Database error: {exc}" if settings.debug else "Internal server error"
    return error_response(500, message)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - started) * 1000
    logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed)
    return response


@app.on_event("startup")
def startup():
    configure_logging(settings.log_level)
    app.state.db = connect(settings)
    create_indexes(app.state.db)


@app.on_event("shutdown")
def shutdown():
    db = getattr(app.state, "db", None)
    if db is not None:
        db.client.close()


# Health
@app.get("/")
def root():
    return {"name": "BookCourier API", "status": "ok"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {"backend": "✅ Running", "database": "❌ Not Available"}
    try:
        collections = db.list_collection_names()
        response["database"] = "✅ Connected"
        response["collections"] = collections
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# Users
@app.get("/api/users/profile")
def get_profile(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return envelope(users.get_profile(db, current), "User profile retrieved successfully")


@app.put("/api/users/profile")
def update_profile(payload: ProfileUpdate, current=Depends(get_current_user), db: Database = Depends(get_db)):
    return envelope(users.update_profile(db, current, payload), "Profile updated successfully")


@app.get("/api/users/stats")
def user_stats(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return envelope(users.user_stats(db, current), "User statistics retrieved successfully")


@app.post("/api/users/password-set")
def password_set(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return envelope(users.mark_password_set(db, current), "Password status updated successfully")


@app.get("/api/users/all")
def all_users(exclude_admin: bool = False, current=Depends(require_admin), db: Database = Depends(get_db)):
    return listing(users.list_users(db, exclude_admin), "Users retrieved successfully")


@app.patch("/api/users/{user_id}/role")
def update_role(user_id: str, payload: RoleUpdate, current=Depends(require_admin), db: Database = Depends(get_db)):
    user = users.update_role(db, user_id, payload.role)
    return envelope(user, f"User role updated to '{user['role']}' successfully")


# Books
@app.post("/api/books", status_code=201)
def create_book(payload: BookCreate, current=Depends(require_librarian), db: Database = Depends(get_db)):
    return envelope(books.create_book(db, current, payload), "Book added successfully")


@app.get("/api/books")
def list_books(
    search: Optional[str] = None,
    sort: BookSort = BookSort.newest,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=books.MAX_PAGE_SIZE),
    db: Database = Depends(get_db),
):
    items, total = books.list_books(db, search, sort, page, limit)
    return envelope(
        items,
        "Books retrieved successfully",
        count=len(items),
        pagination={"page": page, "total_pages": books.total_pages(total, limit), "total_count": total},
    )


@app.get("/api/books/librarian/my-books")
def my_books(current=Depends(require_librarian), db: Database = Depends(get_db)):
    return listing(books.librarian_books(db, current), "Librarian books retrieved successfully")


@app.get("/api/books/admin/all")
def admin_books(current=Depends(require_admin), db: Database = Depends(get_db)):
    return listing(books.admin_books(db), "All books retrieved successfully")


@app.get("/api/books/{book_id}")
def get_book(book_id: str, db: Database = Depends(get_db)):
    return envelope(books.get_book(db, book_id), "Book retrieved successfully")


@app.put("/api/books/{book_id}")
def update_book(book_id: str, payload: BookUpdate, current=Depends(require_librarian), db: Database = Depends(get_db)):
    return envelope(books.update_book(db, current, book_id, payload), "Book updated successfully")


@app.patch("/api/books/{book_id}/status")
def set_book_status(
    book_id: str, payload: BookStatusUpdate, current=Depends(require_librarian), db: Database = Depends(get_db)
):
    book = books.set_book_status(db, current, book_id, payload.status)
    return envelope(book, f"Book is now {book['status']}")


@app.delete("/api/books/{book_id}")
def delete_book(
    book_id: str,
    current=Depends(require_admin),
    db: Database = Depends(get_db),
    config: Settings = Depends(get_settings),
):
    with transaction(db, config.use_transactions) as session:
        removed = books.delete_book(db, book_id, session=session)
    return envelope({"deleted": removed}, "Book and related records deleted successfully")


# Orders
@app.post("/api/orders", status_code=201)
def place_order(payload: OrderCreate, current=Depends(get_current_user), db: Database = Depends(get_db)):
    return envelope(orders.place_order(db, current, payload), "Order placed successfully")


@app.get("/api/orders/my-orders")
def my_orders(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return listing(orders.my_orders(db, current))


@app.get("/api/orders/librarian/orders")
def librarian_orders(current=Depends(require_librarian), db: Database = Depends(get_db)):
    return listing(orders.librarian_orders(db, current))


@app.get("/api/orders/admin/all")
def all_orders(current=Depends(require_admin), db: Database = Depends(get_db)):
    return listing(orders.all_orders(db))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, current=Depends(get_current_user), db: Database = Depends(get_db)):
    return envelope(orders.get_order(db, current, order_id))


@app.patch("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, current=Depends(get_current_user), db: Database = Depends(get_db)):
    return envelope(orders.cancel_order(db, current, order_id), "Order cancelled successfully")


@app.patch("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str, payload: OrderStatusUpdate, current=Depends(require_librarian), db: Database = Depends(get_db)
):
    order = orders.update_order_status(db, current, order_id, payload.status)
    return envelope(order, f"Order status updated to '{order['order_status']}' successfully")


@app.patch("/api/orders/{order_id}/payment")
def mark_order_paid(order_id: str, current=Depends(get_current_user), db: Database = Depends(get_db)):
    return envelope(orders.mark_paid(db, current, order_id), "Payment status updated successfully")


# Payments
@app.post("/api/payments", status_code=201)
def create_payment(
    payload: PaymentCreate,
    current=Depends(get_current_user),
    db: Database = Depends(get_db),
    config: Settings = Depends(get_settings),
):
    with transaction(db, config.use_transactions) as session:
        payment = payments.create_payment(db, current, payload, session=session)
    return envelope(payment, "Payment created successfully")


@app.get("/api/payments/my-invoices")
def my_invoices(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return listing(payments.my_payments(db, current), "Payment records retrieved successfully")


# Wishlist
@app.post("/api/wishlist", status_code=201)
def add_to_wishlist(payload: WishlistCreate, current=Depends(get_current_user), db: Database = Depends(get_db)):
    return envelope(wishlist.add_to_wishlist(db, current, payload.book_id), "Book added to wishlist successfully")


@app.get("/api/wishlist")
def get_wishlist(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return listing(wishlist.user_wishlist(db, current), "User wishlist retrieved successfully")


@app.delete("/api/wishlist/{book_id}")
def remove_from_wishlist(book_id: str, current=Depends(get_current_user), db: Database = Depends(get_db)):
    wishlist.remove_from_wishlist(db, current, book_id)
    return envelope(message="Book removed from wishlist successfully")


# Reviews
@app.post("/api/reviews")
def add_review(
    payload: ReviewCreate, response: Response, current=Depends(get_current_user), db: Database = Depends(get_db)
):
    review, created = reviews.upsert_review(db, current, payload)
    response.status_code = 201 if created else 200
    return envelope(review, "Review added successfully" if created else "Review updated successfully")


@app.get("/api/reviews/book/{book_id}")
def get_book_reviews(book_id: str, db: Database = Depends(get_db)):
    result = reviews.book_reviews(db, book_id)
    return envelope(
        result["reviews"],
        "Book reviews retrieved successfully",
        count=result["count"],
        average_rating=result["average_rating"],
    )


@app.get("/api/reviews/my-reviews")
def my_reviews(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return listing(reviews.user_reviews(db, current), "User reviews retrieved successfully")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import accounts
import catalog
import checkout
import config
import courses
import database
import installations
import ledger
from database import get_db, parse_id, serialize
from errors import AppError, Forbidden, ValidationError, validation_message
from schemas import (
    ADMIN_ROLES,
    CourseOrderRequest,
    OrderStatus,
    PaymentStatus,
    ProductCategory,
    ProductOrderRequest,
    ServiceRequest,
    StockAdjustment,
)
from security import get_current_user, get_optional_user, is_admin, require_roles

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    yield


# App setup
app = FastAPI(title="Solar Store API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

admin_only = require_roles(*ADMIN_ROLES)
superadmin_only = require_roles("superadmin")


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body


def fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


# Error handling
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return fail(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return fail(400, validation_message(exc))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return fail(exc.status_code, str(exc.detail))


@app.exception_handler(PyMongoError)
async def storage_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    return fail(500, "Internal server error")


# Request schemas
class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    phone: Optional[str] = None
    address: Optional[str] = None


class AdminRegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    role: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class StatusUpdate(BaseModel):
    status: OrderStatus


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus


class PaymentRequest(BaseModel):
    payment_method: Optional[str] = None


# Views
def course_view(course: dict) -> dict:
    data = serialize(course)
    data["enrolled_count"] = len(course.get("enrolled_students", []))
    return data


def service_view(db: Database, service: dict) -> dict:
    return serialize(installations.populate(db, service))


# Health and helpers
@app.get("/")
def root():
    return {"message": "Solar Store API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if config.DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth
@app.post("/auth/register", status_code=201)
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    user = accounts.create_account(
        db,
        name=payload.name,
        email=payload.email,
        password=payload.password,
        phone=payload.phone,
        address=payload.address,
    )
    return ok(accounts.session_payload(user))


@app.post("/auth/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = accounts.authenticate(db, payload.email, payload.password)
    return ok(accounts.session_payload(user))


@app.post("/auth/admin/register", status_code=201)
def register_admin(payload: AdminRegisterRequest, db: Database = Depends(get_db),
                   user: dict = Depends(superadmin_only)):
    role = payload.role or "admin"
    if role not in ADMIN_ROLES:
        raise ValidationError("Invalid role specified")
    admin = accounts.create_account(db, name=payload.name, email=payload.email, password=payload.password, role=role)
    logger.info("Superadmin %s created %s %s", user["_id"], role, admin["_id"])
    return ok(accounts.public_view(admin))


@app.get("/auth/me")
def me(user: dict = Depends(get_current_user)):
    return ok(accounts.public_view(user))


# Products
@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[ProductCategory] = None, sort: Optional[str] = None,
                  db: Database = Depends(get_db)):
    return ok([serialize(p) for p in catalog.list_products(db, q=q, category=category, sort=sort)])


@app.get("/products/low-stock")
def low_stock_products(db: Database = Depends(get_db), user: dict = Depends(admin_only)):
    return ok([serialize(p) for p in catalog.low_stock_products(db)])


@app.get("/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return ok(serialize(catalog.get_product(db, product_id)))


@app.post("/products", status_code=201)
def create_product(payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db),
                   user: dict = Depends(admin_only)):
    return ok(serialize(catalog.create_product(db, payload)))


@app.put("/products/{product_id}")
def update_product(product_id: str, payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db),
                   user: dict = Depends(admin_only)):
    return ok(serialize(catalog.update_product(db, product_id, payload)))


@app.delete("/products/{product_id}")
def delete_product(product_id: str, db: Database = Depends(get_db), user: dict = Depends(admin_only)):
    catalog.delete_product(db, product_id)
    return ok({})


@app.put("/products/{product_id}/stock")
def update_stock(product_id: str, payload: StockAdjustment, db: Database = Depends(get_db),
                 user: dict = Depends(admin_only)):
    product = catalog.adjust_stock(db, product_id, payload.quantity, payload.operation)
    return ok(serialize(product))


# Courses
@app.get("/courses")
def list_courses(db: Database = Depends(get_db)):
    return ok([course_view(c) for c in courses.list_courses(db)])


@app.get("/courses/enrolled")
def enrolled_courses(db: Database = Depends(get_db), user: dict = Depends(get_current_user)):
    return ok([course_view(c) for c in courses.enrolled_courses(db, user["_id"])])


@app.get("/courses/{course_id}")
def get_course(course_id: str, db: Database = Depends(get_db)):
    return ok(course_view(courses.get_course(db, course_id)))


@app.post("/courses", status_code=201)
def create_course(payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db),
                  user: dict = Depends(admin_only)):
    return ok(course_view(courses.create_course(db, payload)))


@app.put("/courses/{course_id}")
def update_course(course_id: str, payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db),
                  user: dict = Depends(admin_only)):
    return ok(course_view(courses.update_course(db, course_id, payload)))


@app.delete("/courses/{course_id}")
def delete_course(course_id: str, db: Database = Depends(get_db), user: dict = Depends(admin_only)):
    courses.delete_course(db, course_id)
    return ok({})


@app.post("/courses/{course_id}/enroll")
def enroll_course(course_id: str, db: Database = Depends(get_db), user: dict = Depends(get_current_user)):
    return ok(course_view(courses.enroll(db, course_id, user["_id"])))


# Installation services
@app.get("/services")
def list_services(db: Database = Depends(get_db)):
    return ok([service_view(db, s) for s in installations.list_services(db)])


@app.get("/services/available-products")
def available_products(db: Database = Depends(get_db), user: dict = Depends(admin_only)):
    return ok([serialize(p) for p in catalog.available_for_bundles(db)])


@app.get("/services/{service_id}")
def get_service(service_id: str, db: Database = Depends(get_db)):
    return ok(service_view(db, installations.get_service(db, service_id)))


@app.post("/services", status_code=201)
def create_service(payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db),
                   user: dict = Depends(admin_only)):
    return ok(service_view(db, installations.create_service(db, payload)))


@app.put("/services/{service_id}")
def update_service(service_id: str, payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db),
                   user: dict = Depends(admin_only)):
    return ok(service_view(db, installations.update_service(db, service_id, payload)))


@app.delete("/services/{service_id}")
def delete_service(service_id: str, db: Database = Depends(get_db), user: dict = Depends(admin_only)):
    installations.delete_service(db, service_id)
    return ok({})


@app.post("/services/{service_id}/request", status_code=201)
def request_service(service_id: str, payload: ServiceRequest, db: Database = Depends(get_db),
                    user: Optional[dict] = Depends(get_optional_user)):
    order = checkout.place_service_order(db, service_id, payload, user)
    return ok(serialize(order), "Service request submitted successfully")


# Orders
@app.get("/orders")
def list_orders(db: Database = Depends(get_db), user: dict = Depends(admin_only)):
    return ok([serialize(o) for o in ledger.list_orders(db)])


@app.get("/orders/my-orders")
def my_orders(db: Database = Depends(get_db), user: dict = Depends(get_current_user)):
    return ok([serialize(o) for o in ledger.orders_for_user(db, user["_id"])])


@app.get("/orders/my-purchases")
def my_purchases(db: Database = Depends(get_db), user: dict = Depends(get_current_user)):
    return ok([serialize(p) for p in ledger.purchases_for_user(db, user["_id"])])


@app.get("/products/user/{user_id}/purchases")
def user_purchases(user_id: str, db: Database = Depends(get_db), user: dict = Depends(get_current_user)):
    target = parse_id(user_id, "User")
    if target != user["_id"] and not is_admin(user):
        raise Forbidden("Not authorized to view these purchases")
    return ok([serialize(p) for p in ledger.purchases_for_user(db, target)])


@app.get("/orders/product/{product_id}")
def orders_by_product(product_id: str, db: Database = Depends(get_db), user: dict = Depends(admin_only)):
    return ok([serialize(row) for row in ledger.orders_for_product(db, product_id)])


@app.post("/orders/products", status_code=201)
def create_product_order(payload: ProductOrderRequest, db: Database = Depends(get_db),
                         user: Optional[dict] = Depends(get_optional_user)):
    order = checkout.place_product_order(db, payload, user)
    return ok(serialize(order), "Order created successfully")


@app.post("/orders/courses", status_code=201)
@app.post("/courses/order", status_code=201)
def create_course_order(payload: CourseOrderRequest, db: Database = Depends(get_db),
                        user: dict = Depends(get_current_user)):
    result = checkout.place_course_order(db, payload, user)
    return ok({"order": serialize(result["order"]), "course": course_view(result["course"])},
              "Successfully enrolled in course")


@app.get("/orders/{order_id}")
def get_order(order_id: str, db: Database = Depends(get_db), user: dict = Depends(get_current_user)):
    order = ledger.get_order(db, order_id)
    ledger.check_access(order, user)
    return ok(serialize(order))


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdate, db: Database = Depends(get_db),
                        user: dict = Depends(admin_only)):
    return ok(serialize(ledger.set_status(db, order_id, payload.status)))


@app.put("/orders/{order_id}/payment")
def update_payment_status(order_id: str, payload: PaymentStatusUpdate, db: Database = Depends(get_db),
                          user: dict = Depends(admin_only)):
    return ok(serialize(ledger.set_payment_status(db, order_id, payload.payment_status)))


# Cart
@app.post("/cart/checkout", status_code=201)
def cart_checkout(payload: ProductOrderRequest, db: Database = Depends(get_db),
                  user: Optional[dict] = Depends(get_optional_user)):
    order = checkout.place_product_order(db, payload, user, link_by_email=True)
    return ok(serialize(order), "Order created successfully")


@app.get("/cart/order/{order_id}")
def cart_order_status(order_id: str, db: Database = Depends(get_db),
                      user: Optional[dict] = Depends(get_optional_user)):
    order = ledger.get_order(db, order_id)
    ledger.check_access(order, user, strict=False)
    client = {k: v for k, v in order.get("client", {}).items() if k != "user"}
    return ok(serialize({
        "_id": order["_id"],
        "status": order.get("status"),
        "payment_status": order.get("payment_status"),
        "total_amount": order.get("total_amount"),
        "items": order.get("items", []),
        "client": client,
    }))


@app.post("/cart/order/{order_id}/payment")
def cart_order_payment(order_id: str, payload: PaymentRequest, db: Database = Depends(get_db),
                       user: Optional[dict] = Depends(get_optional_user)):
    order = ledger.confirm_payment(db, order_id, payload.payment_method, user)
    return ok({
        "status": order["status"],
        "payment_status": order["payment_status"],
        "payment_method": order["payment_method"],
    }, "Payment processed successfully")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)

import uuid
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

import accounts
import catalog
import config
import database
import orders
from database import get_db
from errors import register_error_handlers
from logging_config import configure_logging, get_logger
from schemas import Identity, OrderCreate, OrderStatusUpdate, ProductCreate, ProductUpdate
from security import admin_identity, current_identity, trading_identity

configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            database.ensure_indexes(database.db)
            if config.ADMIN_EMAIL and config.ADMIN_PASSWORD:
                accounts.ensure_admin(database.db, config.ADMIN_EMAIL, config.ADMIN_USERNAME, config.ADMIN_PASSWORD)
        except PyMongoError as e:
            logger.error("Database setup failed", error=str(e))
    else:
        logger.warning("DATABASE_URL is not set; data routes will fail")
    yield


# FastAPI app
app = FastAPI(title="Marketplace API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, method=request.method, path=request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# Pydantic models
class RegisterPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    username: str
    password: str


class LoginPayload(BaseModel):
    login: str = Field(..., min_length=1, description="email or username")
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    email: Optional[EmailStr] = None
    username: Optional[str] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


class VerifyEmailPayload(BaseModel):
    token: str


class ForgotPasswordPayload(BaseModel):
    email: str = Field(..., min_length=1)


class ResetPasswordPayload(BaseModel):
    token: str
    password: str


# Auth
@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterPayload, db: Database = Depends(get_db)):
    result = accounts.register(db, payload.name, payload.email, payload.username, payload.password)
    return {"success": True, "message": "User registered successfully", **result}


@app.post("/api/auth/login")
def login(payload: LoginPayload, db: Database = Depends(get_db)):
    result = accounts.login(db, payload.login, payload.password)
    return {"success": True, "token_type": "bearer", **result}


@app.post("/api/auth/logout")
def logout(identity: Identity = Depends(current_identity)):
    # Credentials are stateless; the client drops its token
    return {"success": True, "message": "Logged out successfully"}


@app.get("/api/auth/me")
def get_me(identity: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    return {"success": True, "user": accounts.get_user(db, identity.id)}


@app.post("/api/auth/verify-email")
def verify_email(payload: VerifyEmailPayload, db: Database = Depends(get_db)):
    return {"success": True, "message": "Email verified", "user": accounts.verify_email(db, payload.token)}


@app.post("/api/auth/forgot-password")
def forgot_password(payload: ForgotPasswordPayload, db: Database = Depends(get_db)):
    accounts.forgot_password(db, payload.email)
    return {"success": True, "message": "If an account uses that email, a password reset link has been sent"}


@app.post("/api/auth/reset-password")
def reset_password(payload: ResetPasswordPayload, db: Database = Depends(get_db)):
    token = accounts.reset_password(db, payload.token, payload.password)
    return {"success": True, "message": "Password reset successfully", "token": token}


# Users
@app.put("/api/users/profile")
def update_profile(body: ProfileUpdate, identity: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    user = accounts.update_profile(db, identity, name=body.name, email=body.email, username=body.username)
    return {"success": True, "message": "Profile updated successfully", "user": user}


@app.put("/api/users/change-password")
def change_password(body: PasswordChange, identity: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    token = accounts.change_password(db, identity, body.current_password, body.new_password)
    return {"success": True, "message": "Password changed successfully", "token": token}


@app.get("/api/users/stats")
def user_stats(identity: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    return {"success": True, "stats": accounts.user_stats(db, identity)}


# Products
@app.get("/api/products/shop")
def shop(identity: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    products = catalog.shop_view(db, identity)
    return {"success": True, "count": len(products), "products": products}


@app.get("/api/products")
def my_products(identity: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    products = catalog.list_own_products(db, identity)
    return {"success": True, "count": len(products), "products": products}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, identity: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    return {"success": True, "product": catalog.get_product(db, identity, product_id)}


@app.post("/api/products", status_code=201)
def create_product(body: ProductCreate, identity: Identity = Depends(trading_identity), db: Database = Depends(get_db)):
    product = catalog.create_product(db, identity, body)
    return {"success": True, "message": "Product created successfully", "product": product}


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    body: ProductUpdate,
    identity: Identity = Depends(current_identity),
    db: Database = Depends(get_db),
):
    product = catalog.update_product(db, identity, product_id, body)
    return {"success": True, "message": "Product updated successfully", "product": product}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, identity: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    catalog.delete_product(db, identity, product_id)
    return {"success": True, "message": "Product deleted successfully"}


# Orders
@app.get("/api/orders")
def my_orders(identity: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    return {"success": True, "orders": orders.list_orders(db, identity)}


@app.get("/api/orders/{order_id}")
def order_detail(order_id: str, identity: Identity = Depends(current_identity), db: Database = Depends(get_db)):
    return {"success": True, "order": orders.get_order(db, identity, order_id)}


@app.post("/api/orders", status_code=201)
def create_order(payload: OrderCreate, identity: Identity = Depends(trading_identity), db: Database = Depends(get_db)):
    items = [(line.product, line.quantity) for line in payload.items]
    order = orders.place_order(db, identity, items, payload.shipping_address)
    return {"success": True, "message": "Order created successfully", "order": order}


@app.put("/api/orders/{order_id}")
def update_order(
    order_id: str,
    body: OrderStatusUpdate,
    identity: Identity = Depends(current_identity),
    db: Database = Depends(get_db),
):
    order = orders.update_order_status(db, identity, order_id, body.status)
    return {"success": True, "message": "Order updated successfully", "order": order}


# Admin
@app.get("/api/admin/users")
def admin_users(identity: Identity = Depends(admin_identity), db: Database = Depends(get_db)):
    return {"success": True, "users": accounts.list_users(db)}


@app.get("/api/admin/orders")
def admin_orders(identity: Identity = Depends(admin_identity), db: Database = Depends(get_db)):
    return {"success": True, "orders": orders.list_all_orders(db)}


# Health
@app.get("/")
def root():
    return {"message": "Marketplace API running"}


@app.get("/health")
def health(db: Database = Depends(get_db)):
    response = {"status": "ok", "database": db.name}
    try:
        db.command("ping")
    except PyMongoError as e:
        response["status"] = "degraded"
        response["error"] = str(e)[:120]
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=config.HOST, port=config.PORT)

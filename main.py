import logging
import os
from contextlib import asynccontextmanager
from typing import Callable, List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database

import config
from cart import CartService
from database import db, ensure_indexes, parse_object_id, utcnow
from errors import InvalidTransition, StoreError, UserNotFound
from mailer import build_mailer
from orders import OrderService
from pin_auth import PinAuthService, public_user
from products import ProductCatalog
from schemas import OrderStatus, PaymentMethod, Product as ProductSchema
from stock import StockLedger
from tokens import TokenIssuer

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s",
)
logger = logging.getLogger("storefront")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; data routes will fail")
    yield


app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_mailer = build_mailer(config.RESEND_API_KEY, config.PIN_SENDER_EMAIL)


@app.exception_handler(StoreError)
def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# --------------------- Dependencies ---------------------

def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def get_clock() -> Callable:
    return utcnow


def get_mailer():
    return _mailer


def get_token_issuer(clock: Callable = Depends(get_clock)) -> TokenIssuer:
    return TokenIssuer(config.JWT_SECRET, config.JWT_ALG, config.JWT_EXPIRES_MINUTES, clock=clock)


def get_ledger(database: Database = Depends(get_db)) -> StockLedger:
    return StockLedger(database)


def get_catalog(database: Database = Depends(get_db)) -> ProductCatalog:
    return ProductCatalog(database)


def get_cart_service(database: Database = Depends(get_db)) -> CartService:
    return CartService(database)


def get_order_service(
    database: Database = Depends(get_db),
    ledger: StockLedger = Depends(get_ledger),
    clock: Callable = Depends(get_clock),
) -> OrderService:
    return OrderService(database, ledger, release_on_cancel=config.CANCEL_RELEASE_STATUSES, clock=clock)


def get_pin_service(
    database: Database = Depends(get_db),
    mailer=Depends(get_mailer),
    tokens: TokenIssuer = Depends(get_token_issuer),
    clock: Callable = Depends(get_clock),
) -> PinAuthService:
    return PinAuthService(
        database,
        mailer,
        tokens,
        clock=clock,
        expires_minutes=config.PIN_EXPIRES_MINUTES,
        admin_emails=config.ADMIN_EMAILS,
    )


class AuthUser(BaseModel):
    id: str
    email: EmailStr
    name: str
    role: str = "user"


def get_current_user(
    authorization: Optional[str] = Header(None),
    tokens: TokenIssuer = Depends(get_token_issuer),
    database: Database = Depends(get_db),
) -> AuthUser:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    claims = tokens.verify(token)
    if claims is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    user_oid = parse_object_id(claims.user_id)
    user = database["user"].find_one({"_id": user_oid}) if user_oid else None
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return AuthUser(**public_user(user).model_dump())


def require_admin(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return user


# --------------------- Models ---------------------

class PinRequest(BaseModel):
    email: EmailStr


class PinVerifyRequest(BaseModel):
    email: EmailStr
    pin: str = Field(pattern=r"^\d{6}$")


class ProductCreate(ProductSchema):
    pass


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    category: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = None


class StockUpdate(BaseModel):
    product_id: str
    quantity: int
    operation: Literal["add", "set"] = "set"


class StockUpdateRequest(BaseModel):
    updates: List[StockUpdate] = Field(min_length=1)


class AddToCart(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)


class UpdateCartItem(BaseModel):
    quantity: int = Field(gt=0)


class CheckoutRequest(BaseModel):
    shipping_address: str = Field(min_length=10, max_length=500)
    payment_method: PaymentMethod


class StatusUpdate(BaseModel):
    status: OrderStatus


class BatchStatusUpdate(BaseModel):
    order_ids: List[str] = Field(min_length=1)
    status: OrderStatus


# --------------------- Routes ---------------------

@app.get("/")
def root():
    return {"message": "Storefront API is running"}


# Auth
@app.post("/api/auth/request-pin")
def request_pin(req: PinRequest, service: PinAuthService = Depends(get_pin_service)):
    result = service.request_pin(req.email)
    if not result.success:
        return JSONResponse(status_code=500, content=result.model_dump())
    return result


@app.post("/api/auth/verify-pin")
def verify_pin(req: PinVerifyRequest, service: PinAuthService = Depends(get_pin_service)):
    return service.verify_pin(req.email, req.pin)


@app.get("/api/user/profile")
def profile(user: AuthUser = Depends(get_current_user)):
    return user


# Products
@app.get("/api/products")
def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    in_stock: Optional[bool] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    catalog: ProductCatalog = Depends(get_catalog),
):
    return catalog.list(category=category, q=q, in_stock=in_stock, page=page, per_page=per_page)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.get(product_id)


@app.post("/api/products", status_code=201)
def create_product(
    body: ProductCreate,
    user: AuthUser = Depends(require_admin),
    catalog: ProductCatalog = Depends(get_catalog),
):
    return catalog.create(body)


# Cart
@app.get("/api/cart")
def get_cart(user: AuthUser = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return carts.get_or_create_cart(user.id)


@app.get("/api/cart/summary")
def cart_summary(user: AuthUser = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return carts.summary(user.id)


@app.get("/api/cart/total")
def cart_total(user: AuthUser = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return {"total": carts.total(user.id)}


@app.post("/api/cart/items", status_code=201)
def add_to_cart(
    payload: AddToCart,
    user: AuthUser = Depends(get_current_user),
    carts: CartService = Depends(get_cart_service),
):
    return carts.add_item(user.id, payload.product_id, payload.quantity)


@app.put("/api/cart/items/{cart_item_id}")
def update_cart_item(
    cart_item_id: str,
    payload: UpdateCartItem,
    user: AuthUser = Depends(get_current_user),
    carts: CartService = Depends(get_cart_service),
):
    return carts.update_item_quantity(cart_item_id, payload.quantity, user_id=user.id)


@app.delete("/api/cart/items/{cart_item_id}")
def remove_cart_item(
    cart_item_id: str,
    user: AuthUser = Depends(get_current_user),
    carts: CartService = Depends(get_cart_service),
):
    carts.remove_item(cart_item_id, user_id=user.id)
    return {"status": "ok"}


@app.delete("/api/cart")
def clear_cart(user: AuthUser = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    carts.clear(user.id)
    return {"status": "ok"}


# Orders
@app.post("/api/orders", status_code=201)
def create_order(
    body: CheckoutRequest,
    user: AuthUser = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service),
):
    return orders.create_from_cart(user.id, body.shipping_address, body.payment_method)


@app.get("/api/orders")
def my_orders(user: AuthUser = Depends(get_current_user), orders: OrderService = Depends(get_order_service)):
    return orders.list_for_user(user.id)


@app.get("/api/orders/admin/all")
def all_orders(
    status: Optional[OrderStatus] = None,
    user: AuthUser = Depends(require_admin),
    orders: OrderService = Depends(get_order_service),
):
    return orders.list_all(status=status)


@app.get("/api/orders/admin/stats")
def order_stats(user: AuthUser = Depends(require_admin), orders: OrderService = Depends(get_order_service)):
    return orders.stats()


@app.get("/api/orders/admin/recent")
def recent_orders(
    limit: int = Query(10, ge=1, le=100),
    user: AuthUser = Depends(require_admin),
    orders: OrderService = Depends(get_order_service),
):
    return orders.recent(limit)


def _owned_order(order_id: str, user: AuthUser, orders: OrderService) -> dict:
    order = orders.get(order_id)
    if user.role != "admin" and order["user_id"] != user.id:
        raise HTTPException(status_code=403, detail="Access denied for this order")
    return order


@app.get("/api/orders/{order_id}")
def get_order(
    order_id: str,
    user: AuthUser = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service),
):
    return _owned_order(order_id, user, orders)


@app.put("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    body: StatusUpdate,
    user: AuthUser = Depends(require_admin),
    orders: OrderService = Depends(get_order_service),
):
    order = orders.get(order_id)
    if order["status"] in ("delivered", "cancelled"):
        raise InvalidTransition("A delivered or cancelled order cannot be modified")
    return orders.update_status(order_id, body.status)


@app.delete("/api/orders/{order_id}")
def cancel_order(
    order_id: str,
    user: AuthUser = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service),
):
    order = _owned_order(order_id, user, orders)
    if order["status"] == "cancelled":
        raise InvalidTransition("Order is already cancelled")
    return orders.cancel(order_id)


# Admin
@app.get("/api/admin/products")
def admin_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    in_stock: Optional[bool] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    user: AuthUser = Depends(require_admin),
    catalog: ProductCatalog = Depends(get_catalog),
):
    return catalog.list(category=category, q=q, in_stock=in_stock, page=page, per_page=per_page)


@app.put("/api/admin/products/{product_id}")
def update_product(
    product_id: str,
    body: ProductUpdate,
    user: AuthUser = Depends(require_admin),
    catalog: ProductCatalog = Depends(get_catalog),
):
    return catalog.update(product_id, body.model_dump(exclude_none=True))


@app.delete("/api/admin/products/{product_id}")
def delete_product(
    product_id: str,
    user: AuthUser = Depends(require_admin),
    catalog: ProductCatalog = Depends(get_catalog),
):
    catalog.delete(product_id)
    return {"status": "deleted"}


@app.get("/api/admin/inventory/low-stock")
def low_stock(
    threshold: int = Query(10, ge=0),
    user: AuthUser = Depends(require_admin),
    catalog: ProductCatalog = Depends(get_catalog),
):
    return catalog.low_stock(threshold)


@app.put("/api/admin/inventory/update")
def update_inventory(
    body: StockUpdateRequest,
    user: AuthUser = Depends(require_admin),
    ledger: StockLedger = Depends(get_ledger),
    catalog: ProductCatalog = Depends(get_catalog),
):
    updated = ledger.apply_updates([u.model_dump() for u in body.updates])
    return [catalog.get(doc["_id"]) for doc in updated]


@app.put("/api/admin/orders/batch-status")
def batch_order_status(
    body: BatchStatusUpdate,
    user: AuthUser = Depends(require_admin),
    orders: OrderService = Depends(get_order_service),
):
    return orders.batch_update_status(body.order_ids, body.status)


@app.get("/api/admin/users")
def list_users(user: AuthUser = Depends(require_admin), database: Database = Depends(get_db)):
    return [public_user(u) for u in database["user"].find().sort("created_at", -1)]


@app.get("/api/admin/users/{user_id}")
def user_details(
    user_id: str,
    user: AuthUser = Depends(require_admin),
    database: Database = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    user_oid = parse_object_id(user_id)
    doc = database["user"].find_one({"_id": user_oid}) if user_oid else None
    if doc is None:
        raise UserNotFound()
    details = public_user(doc).model_dump()
    details["order_count"] = orders.count_for_user(user_oid)
    return details


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

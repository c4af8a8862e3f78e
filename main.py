import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import cart
import config
import database
import orders
from database import create_document, get_db, get_documents, now, pagination, serialize, to_object_id
from errors import Forbidden, NotFound, Unauthorized, ValidationFailed, register_error_handlers
from schemas import OrderStatus, Product, Role, Store, User
from security import create_token, get_current_user, hash_password, public_user, require_roles, verify_password

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    provider = app.dependency_overrides.get(get_db, get_db)
    try:
        database.ensure_indexes(provider())
    except PyMongoError:
        logger.exception("Could not create indexes")
    yield
    database.close()


# App setup
app = FastAPI(title="Rasaswadaya API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL],
    allow_credentials=config.FRONTEND_URL != "*",
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - started) * 1000
    logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, elapsed)
    return response


def ok(data=None, message: Optional[str] = None, **extra) -> dict:
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


# Schemas (request)
class ApiModel(BaseModel):
    # clients send camelCase, python callers may use field names
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(ApiModel):
    email: EmailStr
    password: str
    full_name: str = Field(..., alias="fullName")
    phone: Optional[str] = None
    city: Optional[str] = None

    @field_validator("password")
    @classmethod
    def password_length(cls, v: str) -> str:
        if len(v) < 6:
            raise ValueError("Password must be at least 6 characters")
        return v

    @field_validator("full_name")
    @classmethod
    def name_present(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Full name is required")
        return v.strip()


class LoginRequest(ApiModel):
    email: EmailStr
    password: str


class StoreIn(ApiModel):
    name: str = Field(..., min_length=1)
    location: Optional[str] = None
    description: Optional[str] = None


class ProductIn(ApiModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    description: Optional[str] = None
    image_url: Optional[str] = Field(None, alias="imageUrl")
    category: Optional[str] = None
    stock: int = Field(0, ge=0)
    is_active: bool = Field(True, alias="isActive")
    store_id: Optional[str] = Field(None, alias="storeId")


class ProductUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    image_url: Optional[str] = Field(None, alias="imageUrl")
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = Field(None, alias="isActive")

    @field_validator("name", "price", "stock", "is_active")
    @classmethod
    def not_null(cls, v, info):
        # omit a field to leave it unchanged
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v


class CartItemIn(ApiModel):
    product_id: str = Field(..., alias="productId", min_length=1)
    quantity: int = Field(1, ge=1)


class CartQuantityIn(ApiModel):
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(ApiModel):
    shipping_address: str = Field(..., alias="shippingAddress")

    @field_validator("shipping_address")
    @classmethod
    def address_present(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Shipping address is required")
        return v


class StatusUpdate(ApiModel):
    status: str

    @field_validator("status")
    @classmethod
    def known_status(cls, v: str) -> str:
        if v not in OrderStatus.__members__:
            raise ValueError("Invalid order status")
        return v


# Health
@app.get("/")
def root():
    return {"message": "Rasaswadaya API running"}


@app.get("/health")
def health(db: Database = Depends(get_db)):
    response = {"status": "ok", "timestamp": now().isoformat(), "database": "connected"}
    try:
        db.command("ping")
    except PyMongoError as e:
        logger.warning("Health check could not reach the database: %s", e)
        response["database"] = f"error: {str(e)[:80]}"
    return response


# Auth
@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": payload.email}):
        raise ValidationFailed("User already exists with this email")
    user = User(
        name=payload.full_name,
        email=payload.email,
        hashed_password=hash_password(payload.password),
        role=Role.USER,
        phone=payload.phone,
        city=payload.city,
    )
    try:
        doc = create_document(db, "user", user.model_dump())
    except DuplicateKeyError:
        raise ValidationFailed("User already exists with this email")
    logger.info("Registered user %s", doc["_id"])
    return ok({"user": public_user(doc), "token": create_token(doc)}, "User registered successfully")


@app.post("/api/auth/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise Unauthorized("Invalid email or password")
    return ok({"user": public_user(user), "token": create_token(user)}, "Login successful")


@app.get("/api/auth/me")
async def me(current_user: dict = Depends(get_current_user)):
    return ok(public_user(current_user))


# Stores
@app.post("/api/stores", status_code=201)
async def create_store(payload: StoreIn, user: dict = Depends(require_roles(Role.STORE_OWNER, Role.ADMIN)),
                       db: Database = Depends(get_db)):
    owner_id = str(user["_id"])
    if db["store"].find_one({"owner_id": owner_id}):
        raise ValidationFailed("You already have a store")
    store = Store(owner_id=owner_id, **payload.model_dump())
    doc = create_document(db, "store", store.model_dump())
    return ok(serialize(doc), "Store created successfully")


@app.get("/api/stores/{store_id}")
def get_store(store_id: str, db: Database = Depends(get_db)):
    store = db["store"].find_one({"_id": to_object_id(store_id, "Store")})
    if not store:
        raise NotFound("Store not found")
    return ok(serialize(store))


# Products
def _product_out(doc: dict) -> dict:
    out = serialize(doc)
    out.setdefault("store", None)
    return out


@app.get("/api/products")
def list_products(category: Optional[str] = None, search: Optional[str] = None,
                  min_price: Optional[float] = Query(None, alias="minPrice", ge=0),
                  max_price: Optional[float] = Query(None, alias="maxPrice", ge=0),
                  page: int = Query(1, ge=1), limit: int = Query(12, ge=1, le=50),
                  db: Database = Depends(get_db)):
    filt = {"is_active": True}
    if category:
        filt["category"] = category
    if search:
        pattern = {"$regex": search, "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"description": pattern}]
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond

    total = db["product"].count_documents(filt)
    docs = get_documents(db, "product", filt, sort=[("created_at", -1), ("_id", -1)],
                         skip=(page - 1) * limit, limit=limit)
    with_store = cart.product_snapshots(db, [str(d["_id"]) for d in docs])
    items = [_product_out(with_store.get(str(d["_id"]), d)) for d in docs]
    return ok(items, pagination=pagination(page, limit, total))


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    product = cart.product_snapshots(db, [product_id]).get(product_id)
    if not product:
        raise NotFound("Product not found")
    return ok(_product_out(product))


@app.post("/api/products", status_code=201)
async def create_product(payload: ProductIn, user: dict = Depends(require_roles(Role.STORE_OWNER, Role.ADMIN)),
                         db: Database = Depends(get_db)):
    store_id = payload.store_id
    if user.get("role") != Role.ADMIN.value:
        store = db["store"].find_one({"owner_id": str(user["_id"])})
        if not store:
            raise ValidationFailed("You do not have a store. Create a store first.")
        store_id = str(store["_id"])
    if not store_id:
        raise ValidationFailed("Store ID is required")
    if not db["store"].find_one({"_id": to_object_id(store_id, "Store")}):
        raise NotFound("Store not found")

    product = Product(store_id=store_id, **payload.model_dump(exclude={"store_id"}))
    doc = create_document(db, "product", product.model_dump())
    logger.info("Product %s created in store %s with stock %d", doc["_id"], store_id, product.stock)
    return ok(_product_out(doc), "Product created successfully")


@app.put("/api/products/{product_id}")
async def update_product(product_id: str, payload: ProductUpdate,
                         user: dict = Depends(require_roles(Role.STORE_OWNER, Role.ADMIN)),
                         db: Database = Depends(get_db)):
    oid = to_object_id(product_id, "Product")
    product = db["product"].find_one({"_id": oid})
    if not product:
        raise NotFound("Product not found")
    store = db["store"].find_one({"_id": to_object_id(product["store_id"], "Store")})
    owner_id = store.get("owner_id") if store else None
    if owner_id != str(user["_id"]) and user.get("role") != Role.ADMIN.value:
        raise Forbidden("Not authorized to update this product")

    update = payload.model_dump(exclude_unset=True)
    update["updated_at"] = now()
    db["product"].update_one({"_id": oid}, {"$set": update})
    return ok(_product_out(db["product"].find_one({"_id": oid})), "Product updated successfully")


# Cart
@app.get("/api/cart")
async def get_cart(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(cart.read_cart(db, str(user["_id"])))


@app.post("/api/cart")
async def cart_add(item: CartItemIn, response: Response, user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    line, created = cart.add_to_cart(db, str(user["_id"]), item.product_id, item.quantity)
    if created:
        response.status_code = 201
        return ok(line, "Item added to cart")
    return ok(line, "Cart updated")


@app.put("/api/cart/{product_id}")
async def cart_update(product_id: str, item: CartQuantityIn, user: dict = Depends(get_current_user),
                      db: Database = Depends(get_db)):
    line = cart.update_cart_item(db, str(user["_id"]), product_id, item.quantity)
    return ok(line, "Cart item updated")


@app.delete("/api/cart/{product_id}")
async def cart_remove(product_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart.remove_from_cart(db, str(user["_id"]), product_id)
    return ok(message="Item removed from cart")


@app.delete("/api/cart")
async def cart_clear(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart.clear_cart(db, str(user["_id"]))
    return ok(message="Cart cleared")


# Checkout & Orders
@app.get("/api/orders")
async def list_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=50),
                      user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    items, pages = orders.list_orders(db, str(user["_id"]), page, limit)
    return ok(items, pagination=pages)


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(orders.get_order(db, order_id, user))


@app.post("/api/orders", status_code=201)
async def create_order(payload: CreateOrderRequest, user: dict = Depends(get_current_user),
                       db: Database = Depends(get_db)):
    order = orders.place_order(db, str(user["_id"]), payload.shipping_address)
    return ok(order, "Order placed successfully")


@app.put("/api/orders/{order_id}/status", dependencies=[Depends(require_roles(Role.STORE_OWNER, Role.ADMIN))])
async def update_order_status(order_id: str, payload: StatusUpdate, db: Database = Depends(get_db)):
    order = orders.update_status(db, order_id, OrderStatus(payload.status))
    return ok(order, "Order status updated")


@app.put("/api/orders/{order_id}/cancel")
async def cancel_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    order = orders.cancel_order(db, order_id, str(user["_id"]))
    return ok(order, "Order cancelled successfully")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)

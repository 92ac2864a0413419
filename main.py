import asyncio
import contextlib
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Request, Response, Query, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from auth import (
    check_rate_limit, hash_password, verify_password, login_user, logout_user,
    optional_user_id, current_user_id, get_current_user, require_admin, public_user,
)
from database import Store, get_db, seed_demo_data
from notifications import NotificationHub, get_hub
from schemas import (
    User, Category, Product, Review,
    RegisterPayload, LoginPayload, UserUpdatePayload, CategoryPayload, CategoryUpdatePayload,
    ProductPayload, ProductUpdatePayload, CartAddPayload, CartUpdatePayload, CreateOrderPayload,
    OrderStatusPayload, ReviewPayload, VoucherValidatePayload, SettingUpdatePayload,
)
from services import (
    OrderError, SettingsRegistry, order_with_items, place_order, reward_referrer, update_order_status,
)

# Environment
ENVIRONMENT = os.getenv("ENV", "development")
SEED_DEMO_DATA = os.getenv("SEED_DEMO_DATA", "true") == "true"
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")
EXPORT_VERSION = "1.0.0"
PUBLIC_SETTING_KEYS = {"REFERRAL_COUNT", "VOUCHER_AMOUNT"}

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="MarketHub API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def invalid_data_handler(request: Request, exc: RequestValidationError):
    logger.warning("Invalid data on %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"detail": "Invalid data"})


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server error"})


def get_settings(db: Store = Depends(get_db)) -> SettingsRegistry:
    return SettingsRegistry(db)


def apply_update(repo, record_id: int, changes: dict):
    try:
        return repo.update(record_id, **changes)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid data")


if SEED_DEMO_DATA:
    seed_demo_data(get_db(), hash_password(ADMIN_PASSWORD))


# Health checks
@app.get("/")
def root():
    return {"message": "MarketHub API running"}


@app.get("/api/status")
def status():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": ENVIRONMENT,
    }


@app.get("/test")
def test_database(db: Store = Depends(get_db)):
    return {
        "backend": "✅ Running",
        "database": "✅ In-memory",
        "collections": {
            "users": db.users.count(),
            "categories": db.categories.count(),
            "products": db.products.count(),
            "orders": db.orders.count(),
            "vouchers": db.vouchers.count(),
            "settings": db.settings.count(),
        },
    }


# Auth
@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterPayload, response: Response, db: Store = Depends(get_db),
             settings: SettingsRegistry = Depends(get_settings), hub: NotificationHub = Depends(get_hub)):
    if db.user_by_username(payload.username):
        raise HTTPException(status_code=400, detail="Username already exists")
    if db.user_by_email(payload.email):
        raise HTTPException(status_code=400, detail="Email already exists")

    referrer = db.user_by_referral_code(payload.referral_code) if payload.referral_code else None
    user = db.create_user(User(
        username=payload.username,
        email=payload.email,
        password=hash_password(payload.password),
        first_name=payload.first_name,
        last_name=payload.last_name,
        profile_picture=payload.profile_picture,
        referred_by=referrer.id if referrer else None,
    ))
    logger.info("Registered user %s (referred by %s)", user.id, user.referred_by)
    if referrer:
        # the account already exists; a failed reward must not fail the signup
        try:
            reward_referrer(db, settings, hub, referrer.id)
        except Exception:
            logger.exception("Referral reward failed for user %s", referrer.id)

    login_user(response, user.id)
    return public_user(user)


@app.post("/api/auth/login")
def login(payload: LoginPayload, request: Request, response: Response, db: Store = Depends(get_db)):
    if not payload.username or not payload.password:
        raise HTTPException(status_code=400, detail="Username and password are required")
    # Rate limit per IP
    ip = request.client.host if request.client else "unknown"
    check_rate_limit(ip)

    user = db.user_by_username(payload.username)
    if not user or not verify_password(payload.password, user.password):
        logger.warning("Failed login for %s from %s", payload.username, ip)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    login_user(response, user.id)
    return public_user(user)


@app.post("/api/auth/logout")
def logout(request: Request, response: Response):
    logout_user(request, response)
    return {"message": "Logged out successfully"}


@app.get("/api/auth/me")
def me(user_id: int = Depends(current_user_id), db: Store = Depends(get_db)):
    user = db.users.get(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(user)


# Seed demo customers
@app.post("/api/auth/seed", dependencies=[Depends(require_admin)])
def seed_users(count: int = Query(10, ge=1, le=500), db: Store = Depends(get_db)):
    from faker import Faker
    fake = Faker()
    pwd = hash_password("Password@123")
    created = 0
    for _ in range(count):
        username = fake.unique.user_name()
        email = fake.unique.email()
        if db.user_by_username(username) or db.user_by_email(email):
            continue
        db.create_user(User(
            username=username,
            email=email,
            password=pwd,
            first_name=fake.first_name(),
            last_name=fake.last_name(),
        ))
        created += 1
    return {"created": created}


# Users
@app.get("/api/users", dependencies=[Depends(require_admin)])
def list_users(db: Store = Depends(get_db)):
    return [public_user(u) for u in db.users.list()]


@app.get("/api/users/{user_id}", dependencies=[Depends(require_admin)])
def get_user(user_id: int, db: Store = Depends(get_db)):
    user = db.users.get(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(user)


@app.put("/api/users/{user_id}")
def update_user(user_id: int, payload: UserUpdatePayload, current: User = Depends(get_current_user),
                db: Store = Depends(get_db)):
    if current.id != user_id and not current.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    if payload.username:
        existing = db.user_by_username(payload.username)
        if existing and existing.id != user_id:
            raise HTTPException(status_code=400, detail="Username already exists")
    if payload.email:
        existing = db.user_by_email(payload.email)
        if existing and existing.id != user_id:
            raise HTTPException(status_code=400, detail="Email already exists")

    changes = payload.model_dump(exclude_unset=True)
    if changes.get("password"):
        changes["password"] = hash_password(changes["password"])
    # Only admins can grant or revoke admin rights
    if not current.is_admin:
        changes.pop("is_admin", None)
    changes = {k: v for k, v in changes.items() if v is not None}

    user = apply_update(db.users, user_id, changes)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(user)


# Categories
@app.get("/api/categories")
def list_categories(db: Store = Depends(get_db)):
    return db.categories.list()


@app.get("/api/categories/{category_id}")
def get_category(category_id: int, db: Store = Depends(get_db)):
    category = db.categories.get(category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


@app.post("/api/categories", status_code=201, dependencies=[Depends(require_admin)])
def create_category(payload: CategoryPayload, db: Store = Depends(get_db)):
    if db.category_by_name(payload.name):
        raise HTTPException(status_code=400, detail="Category already exists")
    return db.categories.create(Category(**payload.model_dump()))


@app.put("/api/categories/{category_id}", dependencies=[Depends(require_admin)])
def update_category(category_id: int, payload: CategoryUpdatePayload, db: Store = Depends(get_db)):
    if payload.name:
        existing = db.category_by_name(payload.name)
        if existing and existing.id != category_id:
            raise HTTPException(status_code=400, detail="Category name already exists")
    category = apply_update(db.categories, category_id, payload.model_dump(exclude_unset=True))
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


@app.delete("/api/categories/{category_id}", dependencies=[Depends(require_admin)])
def delete_category(category_id: int, db: Store = Depends(get_db)):
    if db.products.find(category_id=category_id):
        raise HTTPException(status_code=400, detail="Cannot delete category with products")
    if not db.categories.delete(category_id):
        raise HTTPException(status_code=404, detail="Category not found")
    return {"message": "Category deleted successfully"}


# Products
@app.get("/api/products")
def list_products(category: Optional[str] = None, search: Optional[str] = None,
                  featured: Optional[str] = None, on_sale: Optional[str] = Query(None, alias="onSale"),
                  db: Store = Depends(get_db)):
    if category:
        try:
            category_id = int(category)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid category ID")
        return db.products.find(category_id=category_id)
    if search:
        return db.search_products(search)
    if featured == "true":
        return db.products.find(is_featured=True)
    if on_sale == "true":
        return db.products.find(is_on_sale=True)
    return db.products.list()


@app.get("/api/products/{product_id}")
def get_product(product_id: int, db: Store = Depends(get_db)):
    product = db.products.get(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.post("/api/products", status_code=201, dependencies=[Depends(require_admin)])
def create_product(payload: ProductPayload, db: Store = Depends(get_db)):
    if payload.category_id and not db.categories.get(payload.category_id):
        raise HTTPException(status_code=400, detail="Category not found")
    prod = db.products.create(Product(**payload.model_dump(), created_at=datetime.now(timezone.utc)))
    if not prod.sku:
        prod = db.products.update(prod.id, sku=f"SKU-{prod.id}")
    return prod


@app.put("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: int, payload: ProductUpdatePayload, db: Store = Depends(get_db)):
    if payload.category_id and not db.categories.get(payload.category_id):
        raise HTTPException(status_code=400, detail="Category not found")
    with db.lock:
        product = apply_update(db.products, product_id, payload.model_dump(exclude_unset=True))
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.delete("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: int, db: Store = Depends(get_db)):
    with db.lock:
        deleted = db.products.delete(product_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"message": "Product deleted successfully"}


# Cart
def cart_entry(item, product) -> dict:
    return {**item.model_dump(), "product": product.model_dump(mode="json") if product else None}


@app.get("/api/cart")
def get_cart(user_id: int = Depends(current_user_id), db: Store = Depends(get_db)):
    return [cart_entry(item, db.products.get(item.product_id)) for item in db.cart_items.find(user_id=user_id)]


@app.post("/api/cart", status_code=201)
def add_to_cart(payload: CartAddPayload, user_id: int = Depends(current_user_id), db: Store = Depends(get_db)):
    with db.lock:
        product = db.products.get(payload.product_id)
        if not product:
            raise HTTPException(status_code=400, detail="Product not found")
        existing = db.cart_items.first(user_id=user_id, product_id=product.id)
        in_cart = existing.quantity if existing else 0
        if product.stock < in_cart + payload.quantity:
            raise HTTPException(status_code=400, detail="Not enough stock")
        item = db.add_to_cart(user_id, product.id, payload.quantity)
    return cart_entry(item, product)


@app.put("/api/cart/{item_id}")
def update_cart_item(item_id: int, payload: CartUpdatePayload, user_id: int = Depends(current_user_id),
                     db: Store = Depends(get_db)):
    item = db.cart_items.get(item_id)
    if not item or item.user_id != user_id:
        raise HTTPException(status_code=404, detail="Cart item not found")
    product = db.products.get(item.product_id)
    if not product:
        raise HTTPException(status_code=400, detail="Product not found")
    if product.stock < payload.quantity:
        raise HTTPException(status_code=400, detail="Not enough stock")
    item = db.cart_items.update(item_id, quantity=payload.quantity)
    return cart_entry(item, product)


@app.delete("/api/cart/{item_id}")
def remove_cart_item(item_id: int, user_id: int = Depends(current_user_id), db: Store = Depends(get_db)):
    item = db.cart_items.get(item_id)
    if not item or item.user_id != user_id:
        raise HTTPException(status_code=404, detail="Cart item not found")
    db.cart_items.delete(item_id)
    return {"message": "Item removed from cart"}


@app.delete("/api/cart")
def clear_cart(user_id: int = Depends(current_user_id), db: Store = Depends(get_db)):
    db.clear_cart(user_id)
    return {"message": "Cart cleared successfully"}


# Orders
@app.get("/api/orders")
def list_orders(user: User = Depends(get_current_user), db: Store = Depends(get_db)):
    orders = db.orders.list() if user.is_admin else db.orders.find(user_id=user.id)
    return [order_with_items(db, o) for o in orders]


@app.get("/api/orders/{order_id}")
def get_order(order_id: int, user: User = Depends(get_current_user), db: Store = Depends(get_db)):
    order = db.orders.get(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if not user.is_admin and order.user_id != user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return order_with_items(db, order)


@app.post("/api/orders", status_code=201)
def create_order(payload: CreateOrderPayload, user_id: int = Depends(current_user_id),
                 db: Store = Depends(get_db), settings: SettingsRegistry = Depends(get_settings),
                 hub: NotificationHub = Depends(get_hub)):
    try:
        return place_order(db, settings, hub, user_id, payload)
    except OrderError as e:
        logger.warning("Rejected order for user %s: %s", user_id, e)
        raise HTTPException(status_code=400, detail=str(e))


@app.put("/api/orders/{order_id}/status", dependencies=[Depends(require_admin)])
def set_order_status(order_id: int, payload: OrderStatusPayload, db: Store = Depends(get_db),
                     hub: NotificationHub = Depends(get_hub)):
    order = update_order_status(db, hub, order_id, payload.status)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


# Reviews
def review_author(user: Optional[User]) -> Optional[dict]:
    if not user:
        return None
    return {"id": user.id, "username": user.username, "first_name": user.first_name, "last_name": user.last_name}


@app.get("/api/products/{product_id}/reviews")
def list_reviews(product_id: int, db: Store = Depends(get_db)):
    return [
        {**r.model_dump(mode="json"), "user": review_author(db.users.get(r.user_id))}
        for r in db.reviews.find(product_id=product_id)
    ]


@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_review(product_id: int, payload: ReviewPayload, user: User = Depends(get_current_user),
               db: Store = Depends(get_db)):
    if not db.products.get(product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    with db.lock:
        if db.reviews.first(product_id=product_id, user_id=user.id):
            raise HTTPException(status_code=400, detail="You have already reviewed this product")
        review = db.add_review(Review(
            user_id=user.id,
            product_id=product_id,
            rating=payload.rating,
            comment=payload.comment,
            created_at=datetime.now(timezone.utc),
        ))
    return {**review.model_dump(mode="json"), "user": review_author(user)}


# Vouchers
@app.get("/api/vouchers")
def list_vouchers(user_id: int = Depends(current_user_id), db: Store = Depends(get_db)):
    return db.vouchers.find(user_id=user_id)


@app.post("/api/vouchers/validate", dependencies=[Depends(current_user_id)])
def validate_voucher(payload: VoucherValidatePayload, db: Store = Depends(get_db)):
    if not payload.code:
        raise HTTPException(status_code=400, detail="Voucher code is required")
    voucher = db.voucher_by_code(payload.code)
    if not voucher:
        raise HTTPException(status_code=404, detail="Invalid or expired voucher")
    return voucher


# Settings
@app.get("/api/settings")
def list_settings(user_id: Optional[int] = Depends(optional_user_id), db: Store = Depends(get_db)):
    settings = db.settings.list()
    if user_id is None:
        settings = [s for s in settings if s.key.startswith("PAYMENT_") or s.key in PUBLIC_SETTING_KEYS]
    return settings


@app.put("/api/settings/{key}", dependencies=[Depends(require_admin)])
def update_setting(key: str, payload: SettingUpdatePayload, db: Store = Depends(get_db)):
    if not payload.value:
        raise HTTPException(status_code=400, detail="Value is required")
    setting = db.setting(key)
    if not setting:
        raise HTTPException(status_code=404, detail="Setting not found")
    logger.info("Setting %s changed from %s to %s", key, setting.value, payload.value)
    return db.settings.update(setting.id, value=payload.value)


# Data export
@app.get("/api/download", dependencies=[Depends(require_admin)])
def download(db: Store = Depends(get_db)):
    now = datetime.now(timezone.utc)
    data = {**db.export(), "export_date": now.isoformat(), "version": EXPORT_VERSION}
    filename = f"markethub-data-{now.date().isoformat()}.json"
    return JSONResponse(content=data, headers={"Content-Disposition": f"attachment; filename={filename}"})


# Notifications
@app.websocket("/ws")
async def notifications_ws(websocket: WebSocket, user_id: int = Query(0, alias="userId"),
                           hub: NotificationHub = Depends(get_hub)):
    if user_id <= 0:
        await websocket.close(code=1008)
        return
    # subscribe before accepting so nothing published after the handshake is missed
    sub = hub.subscribe(user_id)

    async def forward():
        while True:
            await websocket.send_json(await sub.get())

    await websocket.accept()
    logger.info("WebSocket connected for user %s", user_id)
    forwarder = asyncio.create_task(forward())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        forwarder.cancel()
        # sends racing the disconnect fail with one of these
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError, OSError):
            await forwarder
        hub.unsubscribe(sub)
        logger.info("WebSocket closed for user %s", user_id)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

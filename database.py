"""
In-memory data store

One repository per entity, each with its own auto-incrementing id counter.
Nothing is persisted; state resets when the process restarts.
"""
import logging
import secrets
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel

from schemas import (
    User, Category, Product, Order, OrderItem, CartItem, Review, Voucher, Setting,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

DEFAULT_SETTINGS = [
    {"key": "REFERRAL_COUNT", "value": "3", "type": "number"},
    {"key": "VOUCHER_AMOUNT", "value": "500", "type": "number"},
    {"key": "VOUCHER_EXPIRY_DAYS", "value": "30", "type": "number"},
    {"key": "PAYMENT_MPESA", "value": "true", "type": "boolean"},
    {"key": "PAYMENT_BANK", "value": "true", "type": "boolean"},
    {"key": "PAYMENT_CARD", "value": "true", "type": "boolean"},
]


class Repository(Generic[T]):
    """Keyed map of records of one model type."""

    def __init__(self, model: Type[T]):
        self.model = model
        self._rows: Dict[int, T] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def get(self, record_id: int) -> Optional[T]:
        return self._rows.get(record_id)

    def list(self) -> List[T]:
        with self._lock:
            return list(self._rows.values())

    def find(self, **filters) -> List[T]:
        return [r for r in self.list() if all(getattr(r, k) == v for k, v in filters.items())]

    def first(self, **filters) -> Optional[T]:
        matches = self.find(**filters)
        return matches[0] if matches else None

    def filter(self, predicate: Callable[[T], bool]) -> List[T]:
        return [r for r in self.list() if predicate(r)]

    def create(self, record: T) -> T:
        with self._lock:
            record = record.model_copy(update={"id": self._next_id})
            self._rows[record.id] = record
            self._next_id += 1
        return record

    def update(self, record_id: int, **changes) -> Optional[T]:
        with self._lock:
            current = self._rows.get(record_id)
            if current is None:
                return None
            changes.pop("id", None)
            # re-validate so field bounds such as stock >= 0 hold after partial updates
            updated = self.model.model_validate({**current.model_dump(), **changes, "id": record_id})
            self._rows[record_id] = updated
        return updated

    def delete(self, record_id: int) -> bool:
        with self._lock:
            return self._rows.pop(record_id, None) is not None

    def count(self) -> int:
        return len(self._rows)


class Store:
    def __init__(self):
        self.users: Repository[User] = Repository(User)
        self.categories: Repository[Category] = Repository(Category)
        self.products: Repository[Product] = Repository(Product)
        self.orders: Repository[Order] = Repository(Order)
        self.order_items: Repository[OrderItem] = Repository(OrderItem)
        self.cart_items: Repository[CartItem] = Repository(CartItem)
        self.reviews: Repository[Review] = Repository(Review)
        self.vouchers: Repository[Voucher] = Repository(Voucher)
        self.settings: Repository[Setting] = Repository(Setting)
        # held across multi-entity writes such as order placement
        self.lock = threading.RLock()
        for setting in DEFAULT_SETTINGS:
            self.settings.create(Setting(**setting))

    # Users
    def create_user(self, user: User) -> User:
        """Store a new user with a freshly generated, unique referral code."""
        with self.lock:
            code = secrets.token_hex(6).upper()
            while self.user_by_referral_code(code) is not None:
                code = secrets.token_hex(6).upper()
            return self.users.create(user.model_copy(update={
                "referral_code": code,
                "created_at": user.created_at or datetime.now(timezone.utc),
            }))

    def user_by_username(self, username: str) -> Optional[User]:
        username = username.lower()
        matches = self.users.filter(lambda u: u.username.lower() == username)
        return matches[0] if matches else None

    def user_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        matches = self.users.filter(lambda u: u.email.lower() == email)
        return matches[0] if matches else None

    def user_by_referral_code(self, code: str) -> Optional[User]:
        return self.users.first(referral_code=code)

    # Catalog
    def category_by_name(self, name: str) -> Optional[Category]:
        name = name.lower()
        matches = self.categories.filter(lambda c: c.name.lower() == name)
        return matches[0] if matches else None

    def search_products(self, query: str) -> List[Product]:
        query = query.lower()
        return self.products.filter(
            lambda p: query in p.name.lower() or (p.description is not None and query in p.description.lower())
        )

    # Cart
    def add_to_cart(self, user_id: int, product_id: int, quantity: int) -> CartItem:
        with self.lock:
            existing = self.cart_items.first(user_id=user_id, product_id=product_id)
            if existing:
                return self.cart_items.update(existing.id, quantity=existing.quantity + quantity)
            return self.cart_items.create(CartItem(user_id=user_id, product_id=product_id, quantity=quantity))

    def clear_cart(self, user_id: int) -> int:
        removed = 0
        for item in self.cart_items.find(user_id=user_id):
            removed += self.cart_items.delete(item.id)
        return removed

    # Reviews
    def add_review(self, review: Review) -> Review:
        with self.lock:
            created = self.reviews.create(review)
            reviews = self.reviews.find(product_id=review.product_id)
            if self.products.get(review.product_id) is not None:
                avg = sum(r.rating for r in reviews) / len(reviews)
                self.products.update(review.product_id, rating=round(avg, 2), num_reviews=len(reviews))
        return created

    # Vouchers
    def voucher_by_code(self, code: str) -> Optional[Voucher]:
        """Return the voucher only while it is still redeemable."""
        now = datetime.now(timezone.utc)
        matches = self.vouchers.filter(
            lambda v: v.code == code and not v.is_used and (v.expires_at is None or v.expires_at > now)
        )
        return matches[0] if matches else None

    # Settings
    def setting(self, key: str) -> Optional[Setting]:
        return self.settings.first(key=key)

    def export(self) -> dict:
        return {
            "products": [p.model_dump(mode="json") for p in self.products.list()],
            "categories": [c.model_dump(mode="json") for c in self.categories.list()],
            "orders": [o.model_dump(mode="json") for o in self.orders.list()],
            "users": [u.model_dump(mode="json", exclude={"password"}) for u in self.users.list()],
            "settings": [s.model_dump(mode="json") for s in self.settings.list()],
        }


DEMO_CATEGORIES = [
    {"name": "Textbooks", "description": "Academic textbooks for all courses",
     "image": "https://images.unsplash.com/photo-1519682337058-a94d519337bc"},
    {"name": "Stationery", "description": "Notebooks, pens, and other supplies",
     "image": "https://images.unsplash.com/photo-1586075010923-2dd4570fb338"},
    {"name": "Gadgets", "description": "Electronics and tech accessories",
     "image": "https://images.unsplash.com/photo-1601784551446-20c9e07cdbdb"},
    {"name": "Dorm Essentials", "description": "Everything you need for your dorm",
     "image": "https://images.unsplash.com/photo-1628157588553-5eeea00af15c"},
]

DEMO_PRODUCTS = [
    {
        "name": "Wireless Bluetooth Study Headphones",
        "description": "Noise-cancelling headphones perfect for studying in noisy environments.",
        "price": 2800, "original_price": 3500, "category_id": 3, "stock": 25,
        "images": ["https://images.unsplash.com/photo-1568205631410-e304ca733666"],
        "is_featured": True, "is_on_sale": True, "tags": ["Electronics", "New"],
    },
    {
        "name": "Engineering Mathematics Textbook",
        "description": "Comprehensive textbook covering all aspects of engineering mathematics.",
        "price": 1200, "original_price": 1800, "category_id": 1, "stock": 15,
        "images": ["https://images.unsplash.com/photo-1544947950-fa07a98d237f"],
        "is_featured": True, "is_on_sale": False, "tags": ["Featured"],
    },
    {
        "name": "Premium Notebook Set (3 Pack)",
        "description": "High-quality notebooks with premium paper for all your note-taking needs.",
        "price": 850, "original_price": 1050, "category_id": 2, "stock": 50,
        "images": ["https://images.unsplash.com/photo-1618842676088-c4d48a6a7c9d"],
        "is_featured": True, "is_on_sale": True, "tags": ["Featured"],
    },
    {
        "name": "Dorm Room LED String Lights",
        "description": "Decorate your dorm room with these energy-efficient LED string lights.",
        "price": 950, "original_price": 1200, "category_id": 4, "stock": 30,
        "images": ["https://images.unsplash.com/photo-1587916297999-777c7410de08"],
        "is_featured": True, "is_on_sale": False, "tags": ["Limited Edition", "Home"],
    },
]


def seed_demo_data(store: Store, admin_password_hash: str) -> None:
    for cat in DEMO_CATEGORIES:
        store.categories.create(Category(**cat))
    now = datetime.now(timezone.utc)
    for prod in DEMO_PRODUCTS:
        created = store.products.create(Product(**prod, created_at=now))
        store.products.update(created.id, sku=f"SKU-{created.id}")
    store.create_user(User(
        username="admin",
        email="admin@egerton.ac.ke",
        password=admin_password_hash,
        first_name="Admin",
        last_name="User",
        is_admin=True,
    ))
    logger.info("Seeded %d categories and %d products", store.categories.count(), store.products.count())


db = Store()


def get_db() -> Store:
    return db

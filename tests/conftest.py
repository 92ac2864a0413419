import os

os.environ.setdefault("SEED_DEMO_DATA", "false")

import pytest
from fastapi.testclient import TestClient

import auth
from database import Store, get_db
from main import app
from notifications import hub
from schemas import User, Category, Product

SHIPPING = {
    "full_name": "Jane Wanjiku",
    "phone": "0712345678",
    "address_line1": "Hostel B, Room 12",
    "city": "Njoro",
}


class RecordingNotifier:
    """Stands in for the hub in service-level tests."""

    def __init__(self):
        self.messages = []

    def publish(self, user_id, type, **payload):
        self.messages.append((user_id, {"type": type, **payload}))
        return 1


@pytest.fixture
def store():
    return Store()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture(autouse=True)
def reset_state(store):
    app.dependency_overrides[get_db] = lambda: store
    auth.rate_store.clear()
    auth.sessions.clear()
    hub.clear()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_client():
    clients = []

    def factory():
        c = TestClient(app)
        clients.append(c)
        return c

    yield factory
    for c in clients:
        c.close()


@pytest.fixture
def make_user(store):
    def factory(username, password="secret123", is_admin=False, **extra):
        return store.create_user(User(
            username=username,
            email=f"{username}@campus.ac.ke",
            password=auth.hash_password(password),
            first_name=username.title(),
            last_name="Tester",
            is_admin=is_admin,
            **extra,
        ))
    return factory


def login(client, username, password="secret123"):
    resp = client.post("/api/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.fixture
def user_client(make_client, make_user):
    user = make_user("jane")
    c = make_client()
    login(c, "jane")
    c.user = user
    return c


@pytest.fixture
def admin_client(make_client, make_user):
    admin = make_user("admin", is_admin=True)
    c = make_client()
    login(c, "admin")
    c.user = admin
    return c


@pytest.fixture
def category(store):
    return store.categories.create(Category(name="Gadgets", description="Electronics and tech accessories"))


@pytest.fixture
def make_product(store, category):
    def factory(name="Study Headphones", price=1000, stock=5, **extra):
        extra.setdefault("category_id", category.id)
        return store.products.create(Product(name=name, price=price, stock=stock, **extra))
    return factory

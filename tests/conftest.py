from decimal import Decimal

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import accounts
import catalog
import config
from database import ensure_indexes, get_db
from main import app
from schemas import Category, Identity, ProductCreate, Role
from security import authenticate

PASSWORD = "Passw0rd!"


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """Cheap password hashing and the default order settings for every test."""
    monkeypatch.setattr(config, "PASSWORD_HASH_ITERATIONS", 1000)
    monkeypatch.setattr(config, "RESTOCK_ON_CANCEL", False)
    monkeypatch.setattr(config, "REQUIRE_VERIFIED_EMAIL", False)


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    database = client["marketplace_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture
def make_user(db):
    """Register a user and return (identity, access token)."""

    def _make_user(username="alice", role=Role.USER, verified=False, **overrides):
        defaults = {
            "name": username.title(),
            "email": f"{username}@example.com",
            "username": username,
            "password": PASSWORD,
        }
        defaults.update(overrides)
        result = accounts.register(db, role=role, **defaults)
        if verified:
            db["user"].update_one({"username_key": username.lower()}, {"$set": {"is_verified": True}})
        token = result["token"]
        return authenticate(db, token), token

    return _make_user


@pytest.fixture
def make_product(db):
    def _make_product(owner: Identity, **overrides):
        defaults = {
            "name": "Desk Lamp",
            "description": "Adjustable LED desk lamp",
            "price": Decimal("10.00"),
            "category": Category.HOME_GARDEN,
            "stock": 5,
        }
        defaults.update(overrides)
        return catalog.create_product(db, owner, ProductCreate(**defaults))

    return _make_product


@pytest.fixture
def seller(make_user):
    identity, _ = make_user("seller")
    return identity


@pytest.fixture
def buyer(make_user):
    identity, _ = make_user("buyer")
    return identity


@pytest.fixture
def address():
    return {"street": "1 Main St", "city": "Springfield", "state": "IL", "zip": "62701", "country": "US"}


@pytest.fixture
def stock_of(db):
    def _stock_of(product_id):
        return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]

    return _stock_of


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def delivered(monkeypatch):
    """Collect (email, purpose, token) for every token handed to the account owner."""
    sent = []
    monkeypatch.setattr(accounts, "deliver_token", lambda email, purpose, token: sent.append((email, purpose, token)))
    return sent

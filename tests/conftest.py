import re
from datetime import timedelta

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from database import create_document, ensure_indexes, utcnow
from schemas import Product, User


class FrozenClock:
    def __init__(self, start=None):
        self.now = start or utcnow().replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send(self, to_email, subject, body_html):
        self.sent.append({"to": to_email, "subject": subject, "html": body_html})

    def last_pin(self, email):
        for message in reversed(self.sent):
            if message["to"] == email:
                return re.search(r"<strong>(\d{6})</strong>", message["html"]).group(1)
        return None


@pytest.fixture
def db():
    database = mongomock.MongoClient().storefront_test
    ensure_indexes(database)
    return database


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def make_product(db):
    def _make(name="Widget", price=10.0, stock=5, category="gadgets", description=None):
        return create_document(
            db,
            "product",
            Product(name=name, price=price, stock=stock, category=category, description=description),
        )
    return _make


@pytest.fixture
def make_user(db):
    def _make(email="shopper@example.com", role="user"):
        return create_document(db, "user", User(email=email, name=email.split("@")[0], role=role))
    return _make


@pytest.fixture
def stock_of(db):
    def _stock(product_id):
        return db["product"].find_one({"_id": product_id})["stock"]
    return _stock


@pytest.fixture
def client(db, clock, mailer):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_clock] = lambda: clock
    main.app.dependency_overrides[main.get_mailer] = lambda: mailer
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def login(client, mailer, db):
    """Log in through the PIN endpoints and return auth headers."""
    def _login(email="shopper@example.com", role=None):
        assert client.post("/api/auth/request-pin", json={"email": email}).status_code == 200
        res = client.post("/api/auth/verify-pin", json={"email": email, "pin": mailer.last_pin(email)})
        assert res.status_code == 200, res.text
        if role is not None:
            db["user"].update_one({"_id": ObjectId(res.json()["user"]["id"])}, {"$set": {"role": role}})
        return {"Authorization": f"Bearer {res.json()['token']}"}
    return _login

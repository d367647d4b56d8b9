"""Shared fixtures: in-memory SQLite, fakeredis, and stubbed collaborators.

Settings are read once at import time, so the environment is populated
before anything from ``bookstore`` is imported.
"""

import os

os.environ.update({
    "POSTGRES_DSN": "sqlite+pysqlite:///:memory:",
    "JWT_SECRET": "test-jwt-secret",
    "CATALOG_BASE": "http://catalog.test",
    "PAYHERO_BASE": "http://payhero.test",
    "PAYHERO_CHANNEL_ID": "111",
    "PAYHERO_WALLET_CHANNEL_ID": "222",
    "PAYHERO_PAYMENT_URL": "https://pay.example.test/checkout",
    "PAYMENT_WEBHOOK_SECRET": "whsec-test",
    "PAYMENT_WEBHOOK_ALLOWED_IPS": "",
    "CRON_SECRET": "cron-test",
    "ORDER_ID_RETRY_BACKOFF_SECONDS": "0",
    "LOG_JSON": "false",
    "LOG_LEVEL": "WARNING",
})

import hashlib
import hmac
import json

import fakeredis
import httpx
import jwt
import pytest

from bookstore.core.auth import Identity
import bookstore.db.models  # noqa
from bookstore.db.session import Base, SessionLocal, engine
from bookstore.kafka import producer
from bookstore.services import catalog, payhero, storage
from bookstore.store import client as redis_store


class CatalogStub:
    """Serves ``/catalog/v1/books/{id}`` from an in-memory dict."""

    def __init__(self):
        self.books = {}
        self.unavailable = False
        self.requests = []

    def add(self, book_id, title, price, author="Anon", file_object_key=None):
        self.books[book_id] = {
            "id": book_id,
            "title": title,
            "author": author,
            "price": price,
            "cover_image": f"https://img.test/{book_id}.jpg",
            "file_object_key": file_object_key,
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unavailable:
            raise httpx.ConnectTimeout("catalog timed out", request=request)
        book_id = request.url.path.rsplit("/", 1)[-1]
        book = self.books.get(book_id)
        if book is None:
            return httpx.Response(404, json={"detail": "Book not found"})
        return httpx.Response(200, json=book)


class PayHeroStub:
    """Just enough of the PayHero v2 API for wallet, withdraw, status and top-up calls."""

    def __init__(self):
        self.balance = 0.0
        self.transaction_status = "QUEUED"
        self.withdraw_error = None
        self.withdraw_timeouts = 0
        self.service_balance = 0.0
        self.transaction_queries = []
        self.topups = []
        self.withdrawals = []
        self.balance_reads = 0
        self.status_checks = 0
        self.down = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if self.down:
            return httpx.Response(503, text="upstream maintenance")
        if request.method == "GET" and path.startswith("/api/v2/payment_channels/"):
            self.balance_reads += 1
            return httpx.Response(200, json={"id": int(path.rsplit("/", 1)[-1]), "balance_plain": {"balance": self.balance}})
        if request.method == "POST" and path == "/api/v2/withdraw":
            if self.withdraw_timeouts:
                self.withdraw_timeouts -= 1
                raise httpx.ReadTimeout("withdraw timed out", request=request)
            if self.withdraw_error is not None:
                return httpx.Response(self.withdraw_error, json={"error_message": "wallet frozen, contact support"})
            body = json.loads(request.content)
            self.withdrawals.append(body)
            self.balance -= body["amount"]
            return httpx.Response(201, json={"status": "QUEUED", "reference": f"PH-{len(self.withdrawals)}"})
        if request.method == "GET" and path == "/api/v2/transaction-status":
            self.status_checks += 1
            return httpx.Response(200, json={"status": self.transaction_status})
        if request.method == "GET" and path == "/api/v2/wallets":
            return httpx.Response(200, json={"wallet_type": request.url.params["wallet_type"], "available_balance": self.service_balance})
        if request.method == "GET" and path == "/api/v2/transactions":
            self.transaction_queries.append(dict(request.url.params))
            return httpx.Response(200, json={"transactions": [{"id": 1, "amount": 50, "status": "SUCCESS"}], "pagination": {"total": 1}})
        if request.method == "POST" and path == "/api/v2/topup":
            body = json.loads(request.content)
            self.topups.append(body)
            return httpx.Response(201, json={"status": "QUEUED", "reference": f"TOP-{len(self.topups)}"})
        return httpx.Response(404, json={"error_message": "no such route"})


class RecordingProducer:
    def __init__(self):
        self.sent = []

    def send(self, topic, key=None, value=None):
        self.sent.append((topic, key, value))

    def flush(self, timeout=None):
        pass

    def types(self):
        return [value["type"] for _, _, value in self.sent]


class FakeObjectStore:
    def __init__(self):
        self.calls = []

    def presigned_get_object(self, bucket, object_key, expires=None, response_headers=None):
        self.calls.append({
            "bucket": bucket, "object_key": object_key, "expires": expires, "response_headers": response_headers,
        })
        return f"https://files.test/{bucket}/{object_key}?X-Amz-Expires={int(expires.total_seconds())}"


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.create_all(engine.get())
    yield
    Base.metadata.drop_all(engine.get())


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def fake_redis():
    server = fakeredis.FakeServer()
    client = fakeredis.FakeRedis(server=server, decode_responses=True)
    redis_store.redis_client.override(client)
    yield client
    redis_store.redis_client.reset()


@pytest.fixture(autouse=True)
def events():
    recorder = RecordingProducer()
    producer.kafka_producer.override(recorder)
    yield recorder
    producer.kafka_producer.reset()


@pytest.fixture(autouse=True)
def catalog_stub():
    stub = CatalogStub()
    catalog.catalog_http.override(
        httpx.Client(base_url="http://catalog.test", transport=httpx.MockTransport(stub.handler))
    )
    yield stub
    catalog.catalog_http.reset()


@pytest.fixture(autouse=True)
def payhero_stub():
    stub = PayHeroStub()
    payhero.payhero_http.override(
        httpx.Client(base_url="http://payhero.test", transport=httpx.MockTransport(stub.handler))
    )
    yield stub
    payhero.payhero_http.reset()


@pytest.fixture(autouse=True)
def object_store():
    store = FakeObjectStore()
    storage.object_store.override(store)
    yield store
    storage.object_store.reset()


@pytest.fixture
def books(catalog_stub):
    catalog_stub.add("b1", "Dune", 500, author="Frank Herbert", file_object_key="books/b1.pdf")
    catalog_stub.add("b2", "Emma", 300, author="Jane Austen", file_object_key="books/b2.pdf")
    catalog_stub.add("b3", "Ulysses", 250, author="James Joyce")
    return catalog_stub


@pytest.fixture
def alice():
    return Identity(user_id="alice")


@pytest.fixture
def bob():
    return Identity(user_id="bob")


@pytest.fixture
def admin():
    return Identity(user_id="root", role="admin")


def make_token(user_id, role="customer", token_type="access", secret="test-jwt-secret"):
    return jwt.encode({"sub": user_id, "role": role, "type": token_type}, secret, algorithm="HS256")


def auth_header(user_id, role="customer"):
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


def sign(body: bytes, secret="whsec-test") -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from bookstore.main import app

    with TestClient(app) as c:
        yield c

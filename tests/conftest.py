import asyncio
import os
import re
from decimal import Decimal
from types import SimpleNamespace

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite:///./test_booking.db"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ALGORITHM"] = "HS256"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"

# Imports for testing tools
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from unittest.mock import AsyncMock
from redis.exceptions import ResponseError

# Import your application code
from booking_service.main import app
from booking_service.database import Base, get_db
from booking_service import crud, schemas
from booking_service.auth import create_access_token
from booking_service.booking_lifecycle import BookingLifecycle
from booking_service.dependencies import get_dispatcher, get_payment_gateway, get_search_index
from booking_service.errors import DeliveryError, ProviderError
from booking_service.models import UserRole
from booking_service.notifications import NotificationDispatcher
from booking_service.payments import Transaction
from booking_service.routers import booking_router, user_router
from booking_service.projections import TAG_FIELDS
from booking_service.search_index import SearchIndex

# --- Test Database Setup ---
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_booking.db"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)


# pysqlite needs explicit BEGIN for SAVEPOINT to work
@event.listens_for(engine, "connect")
def _disable_pysqlite_transactions(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


# Code under test commits; each commit only releases a savepoint
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine, join_transaction_mode="create_savepoint"
)


# --- In-memory stand-ins for Redis, the mail API and Stripe ---

class FakeLock:
    def __init__(self, lock: asyncio.Lock):
        self._lock = lock

    async def __aenter__(self):
        await self._lock.acquire()
        return self

    async def __aexit__(self, *exc_info):
        self._lock.release()


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.commands = []

    def __getattr__(self, name):
        method = getattr(self.redis, name)

        def queue(*args, **kwargs):
            self.commands.append((method, args, kwargs))
            return self
        return queue

    async def execute(self):
        results = [await method(*args, **kwargs) for method, args, kwargs in self.commands]
        self.commands = []
        return results


class FakeSearch:
    """FT.INFO, FT.CREATE and FT.SEARCH over the fake's hashes, for the query forms the index emits."""

    _TAG = re.compile(r"@(\w+):\{((?:\\.|[^\\}])*)\}")
    _TEXT = re.compile(r"@body:(\w+)(\*?)")

    def __init__(self, redis, name):
        self.redis = redis
        self.name = name

    async def info(self):
        if self.name not in self.redis.indexes:
            raise ResponseError("Unknown index name")
        return {"index_name": self.name}

    async def create_index(self, fields, definition=None):
        if self.name in self.redis.indexes:
            raise ResponseError("Index already exists")
        args = definition.args
        self.redis.indexes[self.name] = args[args.index("PREFIX") + 2]

    def _matches(self, fields, tags, words):
        for name, value in tags:
            if value not in [v.strip().lower() for v in fields.get(name, "").split(",")]:
                return False
        tokens = re.findall(r"\w+", fields.get("body", "").lower())
        for word, is_prefix in words:
            if not any(t.startswith(word) if is_prefix else t == word for t in tokens):
                return False
        return True

    async def search(self, query):
        await asyncio.sleep(0)
        if self.name not in self.redis.indexes:
            raise ResponseError("Unknown index name")
        prefix = self.redis.indexes[self.name]
        text = query.query_string()
        tags = [(name, re.sub(r"\\(.)", r"\1", value).lower()) for name, value in self._TAG.findall(text)]
        words = [(word.lower(), bool(star)) for word, star in self._TEXT.findall(text)]

        hits = [
            (key, fields) for key, fields in self.redis.hashes.items()
            if key.startswith(prefix) and self._matches(fields, tags, words)
        ]
        hits.sort(key=lambda hit: float(hit[1]["created_ts"]))
        page = hits[query._offset:query._offset + query._num]
        return SimpleNamespace(
            total=len(hits),
            docs=[SimpleNamespace(id=key, doc=fields["doc"]) for key, fields in page],
        )


class FakeRedis:
    """The redis.asyncio calls the search index makes, with decoded responses. Reads yield to the loop."""

    def __init__(self):
        self.values = {}
        self.hashes = {}
        self.locks = {}
        self.indexes = {}

    async def get(self, key):
        await asyncio.sleep(0)
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = value
        return True

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({field: str(value) for field, value in mapping.items()})
        return len(mapping)

    async def hget(self, key, field):
        await asyncio.sleep(0)
        return self.hashes.get(key, {}).get(field)

    async def hdel(self, key, *fields):
        stored = self.hashes.get(key, {})
        return sum(1 for field in fields if stored.pop(field, None) is not None)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None or self.hashes.pop(key, None) is not None:
                removed += 1
        return removed

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def lock(self, name, timeout=None, blocking_timeout=None):
        return FakeLock(self.locks.setdefault(name, asyncio.Lock()))

    def ft(self, index_name):
        return FakeSearch(self, index_name)

    def docs_in(self, prefix):
        return [key for key in self.hashes if key.startswith(prefix)]


class FakeMailClient:
    def __init__(self):
        self.sent = []
        self.failing_receivers = set()

    async def send(self, template, context):
        if context.get("receiver") in self.failing_receivers:
            raise DeliveryError(f"Failed to send '{template}' to {context.get('receiver')}")
        self.sent.append((template, context))
        return [{"email": context.get("receiver"), "status": "sent"}]

    def templates_for(self, receiver):
        return [template for template, context in self.sent if context["receiver"] == receiver]


class FakePaymentGateway:
    def __init__(self):
        self.charges = {}
        self.captured = []
        self.customers = []
        self.fail_charge = False
        self.fail_capture = False

    async def create_token(self, card):
        return "tok_visa"

    async def create_transaction(self, amount, currency, source):
        if self.fail_charge:
            raise ProviderError("Your card was declined.")
        transaction_id = f"ch_{len(self.charges) + 1}"
        self.charges[transaction_id] = (amount, currency, source)
        return Transaction(id=transaction_id, amount=amount)

    async def capture_transaction(self, transaction_id):
        if self.fail_capture:
            raise ProviderError("Charge has expired")
        self.captured.append(transaction_id)

    async def create_customer(self, email):
        self.customers.append(email)
        return f"cus_{len(self.customers)}"


# --- Database Management Fixtures ---
@pytest.fixture(scope="session", autouse=True)
def setup_db():
    """Creates and drops the test database tables."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """Provides a clean database session for each test."""
    connection = engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection)
    yield session
    session.close()
    transaction.rollback()
    connection.close()


# --- Mocking External Services ---
@pytest.fixture(scope="function", autouse=True)
def mock_background_tasks(mocker):
    """
    Mocks the outbox poller, the rate limiter setup and the index creation that run on app lifespan.
    """
    mocker.patch("booking_service.main.run_outbox_poller", new_callable=AsyncMock)
    mocker.patch("booking_service.main.FastAPILimiter.init", new_callable=AsyncMock)
    mocker.patch("booking_service.main.SearchIndex.ensure_indexes", new_callable=AsyncMock)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def search_index(fake_redis):
    return SearchIndex(fake_redis, prefix="test", tag_fields=TAG_FIELDS)


@pytest.fixture
def mail_client():
    return FakeMailClient()


@pytest.fixture
def dispatcher(mail_client):
    return NotificationDispatcher(mail_client)


@pytest.fixture
def payment_gateway():
    return FakePaymentGateway()


@pytest.fixture
def lifecycle(db_session, search_index, dispatcher, payment_gateway):
    return BookingLifecycle(db_session, search_index, dispatcher, payment_gateway, currency="gbp")


# --- Data Fixtures ---
def make_user(db, email, role=UserRole.CUSTOMER, first_name="Test", last_name="User"):
    user, _ = crud.create_user(
        db, schemas.UserCreate(email=email, type=role, first_name=first_name, last_name=last_name)
    )
    return user


@pytest.fixture
def customer(db_session):
    return make_user(db_session, "alice@example.com", first_name="Alice", last_name="Smith")


@pytest.fixture
def other_customer(db_session):
    return make_user(db_session, "bob@example.com", first_name="Bob", last_name="Jones")


@pytest.fixture
def vendor_user(db_session):
    return make_user(db_session, "chef@example.com", UserRole.VENDOR, "Carla", "Chef")


@pytest.fixture
def admin_user(db_session):
    return make_user(db_session, "admin@example.com", UserRole.ADMIN, "Ada", "Admin")


@pytest.fixture
def vendor(db_session, vendor_user):
    return crud.create_vendor(
        db_session, schemas.VendorCreate(name="Carla's Kitchen", menu_price=Decimal("10.00"), user_id=vendor_user.id)
    )


@pytest.fixture
def tags(db_session):
    """One event type (pid 5) and two dietary tags (pid 2)."""
    return {
        "wedding": crud.create_tag(db_session, "Wedding", pid=5, tag_id=1),
        "birthday": crud.create_tag(db_session, "Birthday", pid=5, tag_id=2),
        "vegan": crud.create_tag(db_session, "Vegan", pid=2, tag_id=10),
        "halal": crud.create_tag(db_session, "Halal", pid=2, tag_id=11),
    }


@pytest.fixture
def fees(db_session):
    return crud.set_fee_settings(db_session, commission_fee=Decimal("15"), service_fee=Decimal("10"))


@pytest.fixture
def booking_payload(vendor, tags):
    """10 covers at 10.00 plus 2 vegan meals at +3.00: total 106."""
    return schemas.BookingCreate(
        vendor_id=vendor.id,
        covers=10,
        timings={"date": "2030-06-07T19:30:00Z"},
        location={"postcode": "E1 6AN"},
        eventType={"id": 1},
        dietary={"tags": [{"id": 10, "quantity": 2, "priceModifier": 3}], "notes": "No nuts"},
    )


def actor_for(user):
    return schemas.Actor(id=user.id, role=user.type)


def auth_headers_for(user):
    return {"Authorization": f"Bearer {create_access_token(user.id, user.type)}"}


# --- API Test Client Fixture ---
@pytest.fixture(scope="function")
def client(db_session, search_index, dispatcher, payment_gateway):
    """Provides a TestClient wired to the test session and the in-memory services."""
    def override_get_db():
        """Overrides the get_db dependency for tests. The fixture owns the session."""
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_search_index] = lambda: search_index
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_payment_gateway] = lambda: payment_gateway
    for limiter in (booking_router.rate_limit, booking_router.payment_rate_limit, user_router.rate_limit):
        app.dependency_overrides[limiter] = lambda: None

    # Create and yield the TestClient
    with TestClient(app) as c:
        yield c

    # Clean up overrides
    app.dependency_overrides.clear()

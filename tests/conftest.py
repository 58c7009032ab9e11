"""
Pytest configuration and shared fixtures for conversation engine tests.
"""
import pytest
import os
import sys
from unittest.mock import Mock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.config import Settings
from app.services.collaborators import UserRecord
from app.services.conversation_engine import ConversationEngine
from app.services.conversation_state import ConversationStateCodec
from app.services.navigation import NavigationHistory, PreservedStateStore
from app.services.session_store import SessionStore, JsonCodec
from app.utils.cache import LocalCache


@pytest.fixture(autouse=True)
def mock_environment():
    """Ensure environment variables are set for testing."""
    env_vars = {
        'RATE_LIMIT_ENABLED': 'false',
        'LOG_LEVEL': 'WARNING',
        'REDIS_URL': 'redis://localhost:6380/0',
        'API_KEY': 'test-api-key',
        'BACKEND_URL': 'http://backend.test',
        'BACKEND_API_KEY': 'test-backend-key',
        'LEGACY_ADAPTER_ENABLED': 'false',
    }
    with patch.dict(os.environ, env_vars):
        yield


class FakeRedis:
    """In-memory stand-in for the redis client commands the store uses."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.down = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    def get(self, key):
        self._check()
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self._check()
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, key):
        self._check()
        existed = key in self.data
        self.data.pop(key, None)
        self.ttls.pop(key, None)
        return int(existed)

    def ping(self):
        self._check()
        return True


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_redis():
    """Return a mocked Redis client."""
    mock_client = Mock()
    mock_client.ping.return_value = True
    mock_client.get.return_value = None
    mock_client.setex.return_value = True
    mock_client.delete.return_value = 1
    return mock_client


@pytest.fixture
def session_store(fake_redis, clock):
    cache = LocalCache(max_entries=10, ttl_seconds=3600, clock=clock)
    return SessionStore(fake_redis, cache, codec=ConversationStateCodec(), key_prefix="wa_state:")


@pytest.fixture
def draft_store(fake_redis, clock):
    cache = LocalCache(max_entries=10, ttl_seconds=86400, clock=clock)
    return SessionStore(fake_redis, cache, codec=JsonCodec(), key_prefix="wa_draft:",
                        ttl_seconds=86400, name="draft")


@pytest.fixture
def legacy_store(fake_redis, clock):
    cache = LocalCache(max_entries=10, ttl_seconds=3600, clock=clock)
    return SessionStore(fake_redis, cache, codec=JsonCodec(), key_prefix="wa:", name="legacy")


@pytest.fixture
def identities():
    """Identity collaborator double; consent already given."""
    resolver = Mock()
    resolver.resolve_user.return_value = UserRecord(user_id="user-1", privacy_accepted=True)
    return resolver


@pytest.fixture
def applications():
    """Persistence collaborator double."""
    repository = Mock()
    repository.create_application.return_value = "app-100"
    repository.list_applications.return_value = [
        {"id": "app-90", "status": "PERMIT_READY", "make": "NISSAN"},
        {"id": "app-91", "status": "AWAITING_PAYMENT", "make": "FORD"},
    ]
    repository.find_renewable.return_value = {
        "id": "app-90",
        "data": {
            "full_name": "Juan Pérez García",
            "curp_rfc": "PEGJ850101HDFRRN09",
            "email": "juan@correo.com",
            "make": "NISSAN",
            "model": "VERSA",
            "color": "ROJO",
            "model_year": "2020",
            "vin": "3N1CN7AD5ZK123456",
            "engine_number": "HR16-123456",
            "address": "Av. Juárez 123, Col. Centro, CDMX",
        },
    }
    return repository


@pytest.fixture
def payments():
    """Payment-link collaborator double."""
    provider = Mock()
    provider.create_payment_link.return_value = "https://pay.test/checkout/abc"
    return provider


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def engine(session_store, draft_store, identities, applications, payments, settings, clock):
    return ConversationEngine(
        sessions=session_store,
        drafts=draft_store,
        navigation=NavigationHistory(max_depth=50, breadcrumb_items=3, clock=clock),
        preserved=PreservedStateStore(),
        payments=payments,
        applications=applications,
        identities=identities,
        settings=settings,
    )


# Valid answers for every new-permit field, in order
PERMIT_ANSWERS = [
    "juan pérez garcía",
    "PEGJ850101HDFRRN09",
    "Juan@Correo.com",
    "Nissan",
    "Versa",
    "rojo/negro",
    "2020",
    "3N1CN7AD5ZK123456",
    "HR16-123456",
    "Av. Juárez 123, Col. Centro, CDMX",
]


@pytest.fixture
def permit_answers():
    return list(PERMIT_ANSWERS)

"""
Pytest configuration for meterproxy tests.
Each test gets its own SQLite database in a temp directory.
"""

import os
import tempfile

# Must be set before meterproxy.main is imported (it builds a module-level app)
_test_data_dir = tempfile.mkdtemp(prefix="meterproxy_test_")
os.environ.setdefault("METERPROXY_DATABASE_URL", f"sqlite:///{_test_data_dir}/default.db")
os.environ.setdefault("METERPROXY_RUN_MIGRATIONS", "false")
os.environ.setdefault("METERPROXY_API_KEY_HMAC_SECRET", "test-hmac-secret")

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from meterproxy.auth.api_key_auth import generate_api_key
from meterproxy.config import Settings
from meterproxy.core.database import Database
from meterproxy.core.errors.registry import error_registry
from meterproxy.main import create_app
from meterproxy.services.price_catalog import PriceCatalog
from meterproxy.services.subscription_reconciler import SubscriptionReconciler
from meterproxy.services.subscription_store import SubscriptionStore
from meterproxy.services.usage_meter import UsageMeter
from meterproxy.services.user_store import UserStore

# Load error registry so MeterProxyError returns correct HTTP status codes
error_registry.load()

HMAC_SECRET = "test-hmac-secret"
WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path}/meterproxy.db",
        run_migrations=False,
        api_key_hmac_secret=HMAC_SECRET,
        stripe_webhook_secret=WEBHOOK_SECRET,
        ai_provider="venice",
        venice_api_key="test-venice-key",
        cas_max_attempts=5,
    )


@pytest.fixture
def database(settings):
    db = Database(settings.database_url)
    db.create_all()
    yield db
    db.close()


@pytest.fixture
def store(database):
    return SubscriptionStore(database)


@pytest.fixture
def users(database):
    return UserStore(database)


@pytest.fixture
def meter(store):
    return UsageMeter(store, max_attempts=5)


@pytest.fixture
def reconciler(database, store, users, settings):
    return SubscriptionReconciler(database, store, users, PriceCatalog.from_settings(settings), max_attempts=5)


@pytest.fixture
def user(users):
    return users.create("alice@example.com", stripe_customer_id="cus_alice")


@pytest.fixture
def make_subscription(store):
    """Insert a subscription and force its usage counter."""

    def _make(
        user_id: str,
        quota: int = 1000,
        used: int = 0,
        status: str = "active",
        period_end: datetime | None = None,
        stripe_subscription_id: str = "sub_1",
        tier: str = "basic",
    ):
        snapshot = store.insert(
            user_id=user_id,
            stripe_subscription_id=stripe_subscription_id,
            tier=tier,
            quota=quota,
            status=status,
            current_period_end=period_end or datetime.now(timezone.utc) + timedelta(days=30),
        )
        if used:
            assert store.compare_and_swap(snapshot, dataclasses.replace(snapshot, used=used))
        return store.get(snapshot.id)

    return _make


@pytest.fixture
def app(settings):
    return create_app(settings, configure_logging=False)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def api_user(client, app):
    """A regular user with an API key; returns (user, headers)."""
    raw_key, key_hash, prefix = generate_api_key(HMAC_SECRET)
    created = app.state.users.create(
        "user@example.com", api_key_hash=key_hash, api_key_prefix=prefix, stripe_customer_id="cus_user"
    )
    return created, {"X-API-Key": raw_key}


@pytest.fixture
def admin_user(client, app):
    raw_key, key_hash, prefix = generate_api_key(HMAC_SECRET)
    created = app.state.users.create("admin@example.com", is_admin=True, api_key_hash=key_hash, api_key_prefix=prefix)
    return created, {"X-API-Key": raw_key}

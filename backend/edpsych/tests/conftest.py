"""
Root test configuration and fixtures.

Provides database fixtures that can be used by all tests, plus:
- catalogue / resolver: the shipped plans.yml, loaded once per session
- catalogue_dict: a mutable copy of plans.yml for validation tests
- make_yaml_config: factory for writing YAML configs to a temp dir
- make_subscription: factory for domain Subscription records
- app_client: TestClient over create_app() sharing the test transaction
"""

import copy
import os
import tempfile
import uuid
from datetime import date, timedelta
from pathlib import Path
from typing import Generator

import jwt
import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from edpsych.entitlements.catalogue import CATALOGUE_FILENAME, load_catalogue
from edpsych.entitlements.models import (
    BillingCycle,
    Subscription,
    SubscriptionStatus,
    Tier,
)
from edpsych.entitlements.resolver import EntitlementResolver

# Set test environment
os.environ.setdefault("ENV", "test")

TEST_JWT_SECRET = "test-jwt-secret-with-enough-length-for-hs256"
TEST_WEBHOOK_SECRET = "test-webhook-secret"

PACKAGED_CATALOGUE = Path(__file__).resolve().parent.parent / "config" / CATALOGUE_FILENAME


@pytest.fixture(scope="session", autouse=True)
def _httpx_app_kwarg_patch():
    """
    Compatibility patch for httpx>=0.28 where Client(app=...) is not supported.

    Starlette's TestClient (used by FastAPI) passes app= into httpx.Client on
    older releases. This patch removes the app kwarg to avoid TypeError in
    environments with newer httpx while remaining safe for older versions.
    """
    import httpx

    original_init = httpx.Client.__init__

    def patched_init(self, *args, **kwargs):
        kwargs.pop("app", None)
        return original_init(self, *args, **kwargs)

    httpx.Client.__init__ = patched_init
    try:
        yield
    finally:
        httpx.Client.__init__ = original_init


# =============================================================================
# Database
# =============================================================================

@pytest.fixture(scope="session")
def db_engine():
    """SQLite in-memory engine with every table created."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from edpsych.models import Base  # registers every table

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    Each test gets a fresh session that rolls back after the test completes.
    Commits made by repositories stay inside the outer transaction.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=connection)
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def isolated_engine():
    """Fresh engine for tests that expect the store to roll back a failed write."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from edpsych.models import Base  # registers every table

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Catalogue
# =============================================================================

@pytest.fixture(scope="session")
def catalogue():
    return load_catalogue(str(PACKAGED_CATALOGUE))


@pytest.fixture(scope="session")
def resolver(catalogue):
    return EntitlementResolver(catalogue)


@pytest.fixture(scope="session")
def _catalogue_raw():
    with open(PACKAGED_CATALOGUE) as f:
        return yaml.safe_load(f)


@pytest.fixture
def catalogue_dict(_catalogue_raw):
    """Deep copy of the parsed plans.yml, safe to mutate."""
    return copy.deepcopy(_catalogue_raw)


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("plans.yml", {"tiers": [...]})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make


# =============================================================================
# Domain records
# =============================================================================

@pytest.fixture
def owner_id() -> str:
    return f"org_{uuid.uuid4().hex[:12]}"


@pytest.fixture
def make_subscription(owner_id):
    """Factory for Subscription records; defaults to an active school_small plan."""
    def _make(**overrides) -> Subscription:
        values = dict(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            tier=Tier.SCHOOL_SMALL,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=BillingCycle.ANNUALLY,
            start_date=date.today() - timedelta(days=30),
            end_date=date.today() + timedelta(days=335),
        )
        values.update(overrides)
        return Subscription(**values)
    return _make


# =============================================================================
# API
# =============================================================================

@pytest.fixture
def make_token():
    """Factory for signed bearer tokens."""
    def _make(owner_id=None, user_id="user_1", secret=TEST_JWT_SECRET, **claims) -> str:
        payload = {"sub": user_id, **claims}
        if owner_id is not None:
            payload["org_id"] = owner_id
        return jwt.encode(payload, secret, algorithm="HS256")
    return _make


@pytest.fixture
def app_settings():
    from edpsych.config.settings import Settings

    return Settings(
        database_url=None,
        jwt_secret=TEST_JWT_SECRET,
        webhook_secret=TEST_WEBHOOK_SECRET,
    )


@pytest.fixture
def app_client(db_session, catalogue, app_settings):
    """
    TestClient whose request sessions share the test transaction.

    Data written through db_session is visible to the API and vice versa.
    """
    from fastapi.testclient import TestClient
    from edpsych.app import create_app

    factory = sessionmaker(autocommit=False, autoflush=False, bind=db_session.get_bind())
    app = create_app(settings=app_settings, catalogue=catalogue, session_factory=factory)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers(make_token, owner_id):
    return {"Authorization": f"Bearer {make_token(owner_id)}"}

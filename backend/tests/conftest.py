"""
Pytest configuration and fixtures for backend tests.

Provides shared fixtures for:
- Test database sessions
- Pipeline config
- Recording push gateway and geofence-specs publisher
- Task and subscription factories
- FastAPI test client with overridden dependencies
"""

import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
os.environ['NEARME_DB_URL'] = 'sqlite:///:memory:'
os.environ['NEARME_BACKGROUND_SWEEPS_ENABLED'] = 'false'

from backend.src.config.pipeline import PipelineConfig
from backend.src.models import Base, PushSubscription
from backend.src.services.task_lifecycle_service import TaskLifecycleService
from backend.tests.factories import (
    PHARMACY_LOCATION,
    USER_ID,
    RecordingGateway,
    RecordingPublisher,
    new_guid,
)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def test_db_engine():
    """Create an in-memory SQLite database engine for testing."""
    from sqlalchemy import event

    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # Geofences, notifications and snoozes rely on ON DELETE CASCADE
    def _fk_pragma_on_connect(dbapi_con, con_record):
        dbapi_con.execute('pragma foreign_keys=ON')

    event.listen(engine, 'connect', _fk_pragma_on_connect)

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope='function')
def test_session_factory(test_db_engine):
    """Session factory bound to the test engine (used by sweep runners)."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )


@pytest.fixture(scope='function')
def test_db_session(test_session_factory):
    """Create a test database session."""
    session = test_session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# Pipeline Fixtures
# ============================================================================

@pytest.fixture
def pipeline_config():
    """Default pipeline configuration."""
    return PipelineConfig()


@pytest.fixture
def gateway():
    """Recording push gateway."""
    return RecordingGateway()


@pytest.fixture
def publisher():
    """Recording geofence-specs publisher."""
    return RecordingPublisher()


# ============================================================================
# Sample Data Factories
# ============================================================================

@pytest.fixture
def make_task(test_db_session, pipeline_config, publisher):
    """
    Factory for synced tasks (geofences generated and registered).

    Usage:
        task = make_task(poi_category='pharmacy')
        task = make_task(place_type='home', title='Water the plants')
    """
    def _create(
        title='Pick up prescription',
        poi_category=None,
        place_type=None,
        location=None,
        location_name=None,
        user_id=USER_ID,
        config=None,
        **extra
    ):
        if poi_category is None and place_type is None:
            poi_category = 'pharmacy'
        location = location or PHARMACY_LOCATION
        fields = {
            'title': title,
            'location_type': 'poi_category' if poi_category else 'place',
            'poi_category': poi_category,
            'place_type': place_type,
            'location_name': location_name,
            'latitude': location[0],
            'longitude': location[1],
        }
        fields.update(extra)
        lifecycle = TaskLifecycleService(test_db_session, config or pipeline_config, publisher)
        task, _ = lifecycle.upsert_task(user_id, new_guid(), fields)
        return task
    return _create


@pytest.fixture
def make_subscription(test_db_session):
    """Factory for push subscriptions."""
    _counter = [0]

    def _create(user_id=USER_ID, endpoint=None):
        _counter[0] += 1
        sub = PushSubscription(
            user_id=user_id,
            endpoint=endpoint or f"https://push.example.com/{user_id}/{_counter[0]}",
            p256dh_key="test-p256dh-key",
            auth_key="test-auth-key",
            device_name="Test Device",
        )
        test_db_session.add(sub)
        test_db_session.commit()
        test_db_session.refresh(sub)
        return sub
    return _create


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture
def test_client(test_db_session, pipeline_config, gateway, publisher):
    """Create a test client for FastAPI application."""
    from fastapi.testclient import TestClient
    from backend.src.main import app

    # Override dependencies
    def get_test_db():
        try:
            yield test_db_session
        finally:
            pass

    # Import and override dependencies
    from backend.src.api.dependencies import (
        get_push_gateway,
        get_specs_publisher,
        limiter,
    )
    from backend.src.config.pipeline import get_pipeline_config
    from backend.src.db.database import get_db

    app.dependency_overrides[get_db] = get_test_db
    app.dependency_overrides[get_pipeline_config] = lambda: pipeline_config
    app.dependency_overrides[get_push_gateway] = lambda: gateway
    app.dependency_overrides[get_specs_publisher] = lambda: publisher

    limiter.enabled = False
    with TestClient(app) as client:
        yield client
    limiter.enabled = True

    # Clear overrides
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Identity header set by the auth gateway."""
    return {'X-User-Id': USER_ID}

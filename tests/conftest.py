"""
Shared pytest fixtures for all test files
"""
from unittest.mock import MagicMock

import pytest

from config import Config


class TestConfig(Config):
    """Standard test configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}  # SQLite doesn't support pool settings
    SERVER_NAME = 'local.example'
    HTTP_PROTOCOL = 'https'
    SECRET_KEY = 'test-secret-key'
    CACHE_TYPE = 'SimpleCache'
    REDIS_URL = 'redis://localhost:6379/15'
    SENTRY_DSN = ''
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    AUTHORIZED_FETCH = False
    INSTANCE_KEY_ID = ''
    INSTANCE_PRIVATE_KEY = ''
    FOLLOW_LOCK_BACKEND = 'local'
    RECONCILE_DELAY = 60


@pytest.fixture
def test_app():
    """Create and configure a test application instance"""
    from fedsync import create_app, db, cache, inbox_dispatcher
    from fedsync.hooks import clear_hooks

    clear_hooks()
    inbox_dispatcher.reset()
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        cache.clear()
        yield app
        db.session.remove()
        db.drop_all()

    clear_hooks()


@pytest.fixture
def app(test_app):
    """Alias for test_app for compatibility"""
    return test_app


@pytest.fixture
def client(test_app):
    """Create test client"""
    return test_app.test_client()


@pytest.fixture
def store(app):
    from fedsync.federation.store import FollowerStore
    return FollowerStore()


@pytest.fixture
def inbox_store(app):
    from fedsync.federation.store import InboxStore
    return InboxStore()


@pytest.fixture
def job_queue():
    """JobQueue on a mocked redis, so nothing is really scheduled"""
    from fedsync.federation.scheduler import JobQueue
    return JobQueue(redis_client=MagicMock())


@pytest.fixture
def trust_all_signatures(app):
    """Wave every request through the signature gate"""
    from fedsync.hooks import add_hook, remove_hook

    def defer(defer_verification, request=None):
        return True

    add_hook('defer_signature_verification', defer)
    yield
    remove_hook('defer_signature_verification', defer)

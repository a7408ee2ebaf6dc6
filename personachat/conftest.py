# personachat/conftest.py
import os
import sys
import tempfile
import time
from pathlib import Path

import jwt
import pytest

# Test environment must be in place before settings are imported
_DB_DIR = tempfile.mkdtemp(prefix="personachat-tests-")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("TEST_DATABASE_URL", f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret-0123456789abcdefghij")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("PAYPAL_WEBHOOK_SECRET", "paypal-test-secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "razorpay-test-secret")
os.environ.setdefault("CHAT_RATE_LIMIT_PER_MINUTE", "60")

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Fresh tables for every test."""
    from personachat.core.database import reset_database

    reset_database()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_process_state():
    """Clear the process-wide affinity cache and metrics between tests."""
    from personachat.core.metrics import METRICS
    from personachat.features.sessions.service import affinity_cache

    affinity_cache.clear()
    METRICS.reset()
    yield
    affinity_cache.clear()


@pytest.fixture
def make_token():
    """Mint a bearer token the way the identity provider would."""
    def _make(uid: str = "user_1", *, expires_in: int = 3600, secret: str = None, **claims) -> str:
        payload = {"sub": uid, "iat": int(time.time()), "exp": int(time.time()) + expires_in}
        payload.update(claims)
        return jwt.encode(payload, secret or os.environ["AUTH_JWT_SECRET"], algorithm="HS256")

    return _make


@pytest.fixture
def auth_headers(make_token):
    def _headers(uid: str = "user_1", **claims) -> dict:
        return {"Authorization": f"Bearer {make_token(uid, **claims)}"}

    return _headers


@pytest.fixture
def app():
    from personachat.main import app as fastapi_app

    fastapi_app.state.rate_limiter.reset()
    return fastapi_app


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)

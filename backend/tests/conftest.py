"""
Shared pytest fixtures for the Pledge Hub test suite.

Every test gets its own SQLite file database with the full schema, plus
factories for users, approved brokerage links, sessions and pledges.
"""

import os
import sys
from datetime import timedelta
from decimal import Decimal

import pytest

# Settings are read at import time
os.environ["JWT_SECRET"] = "test-secret-key"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["LOG_FORMAT"] = "text"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["PAYMENT_TEST_MODE"] = "true"

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from fastapi.testclient import TestClient

from api.dependencies import get_db
from api.main import app
from api.utils.auth import create_access_token
from pledgehub.db.models import Base, User
from pledgehub.db.session import make_engine, make_session_factory
from pledgehub.domain.consent import DigitalConsent, RiskAcknowledgment
from pledgehub.services.access_gate import AccessGate
from pledgehub.services.session_store import SessionStore
from pledgehub.services.submission import PledgeSubmission
from pledgehub.utils.datetime import utc_now

ZERODHA_ACCOUNT = "ABCD1234EFGH5678"
SECOND_ZERODHA_ACCOUNT = "WXYZ9876QRST5432"


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    test_engine = make_engine(f"sqlite:///{tmp_path / 'pledgehub_test.db'}")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


def _create_user(db, email, role="user"):
    user = User(email=email, role=role, display_name=email.split("@")[0])
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def admin_user(db_session):
    return _create_user(db_session, "admin@example.com", role="admin")


@pytest.fixture
def regular_user(db_session):
    return _create_user(db_session, "trader@example.com")


@pytest.fixture
def second_user(db_session):
    return _create_user(db_session, "second@example.com")


@pytest.fixture
def approve_access(db_session, admin_user):
    """Submit and approve an access request; returns the approved request."""

    def _approve(user, account_id=ZERODHA_ACCOUNT, broker="zerodha",
                 experience="intermediate", income="10l_to_25l"):
        gate = AccessGate(db_session)
        request = gate.submit_request(
            user.id, account_id, broker, experience=experience, income=income
        ).unwrap()
        return gate.review(request.id, "approved", admin_user.id).unwrap()

    return _approve


@pytest.fixture
def approved_user(regular_user, approve_access):
    approve_access(regular_user)
    return regular_user


@pytest.fixture
def make_session(db_session, admin_user):
    """Create an active session that started an hour ago and ends tomorrow."""

    def _make(**overrides):
        now = utc_now()
        fields = {
            "stock_symbol": "RELIANCE",
            "stock_name": "Reliance Industries",
            "session_mode": "buy_only",
            "session_start": now - timedelta(hours=1),
            "session_end": now + timedelta(days=1),
            "min_qty": 1,
            "max_qty": 1000,
            "convenience_fee_type": "flat",
            "convenience_fee_amount": Decimal("50"),
        }
        fields.update(overrides)
        return SessionStore(db_session).create_session(admin_user.id, **fields).unwrap()

    return _make


def complete_disclosure():
    return RiskAcknowledgment(
        acknowledged=True,
        categories=["market", "execution", "financial"],
        acknowledged_at=utc_now(),
        disclosure_version="1.0",
    )


def complete_consent():
    return DigitalConsent(
        agreed_to_terms=True,
        agreed_to_risks=True,
        agreed_to_execution=True,
        signature="Test Trader",
        signed_at=utc_now(),
    )


@pytest.fixture
def submission_factory():
    """Build a fully consented submission; override any field by keyword."""

    def _build(session_id, qty=10, price_target=Decimal("100"), **overrides):
        fields = {
            "session_id": session_id,
            "qty": qty,
            "price_target": Decimal(str(price_target)),
            "risk_acknowledgment": complete_disclosure(),
            "digital_consent": complete_consent(),
        }
        fields.update(overrides)
        return PledgeSubmission(**fields)

    return _build


@pytest.fixture
def pledge_body():
    """JSON body for POST /pledges with complete disclosure and consent."""

    def _body(session_id, qty=10, price_target="100.00", **overrides):
        body = {
            "session_id": session_id,
            "qty": qty,
            "price_target": price_target,
            "risk_acknowledgment": complete_disclosure().model_dump(mode="json"),
            "digital_consent": complete_consent().model_dump(mode="json"),
        }
        body.update(overrides)
        return body

    return _body


@pytest.fixture
def test_client(session_factory):
    """FastAPI test client bound to the per-test database."""

    def _get_test_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_test_db
    # Not used as a context manager: the lifespan (schema bootstrap, scheduler) stays off
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Bearer headers for a stored user."""

    def _headers(user):
        token = create_access_token(
            data={"sub": user.id, "email": user.email, "role": user.role},
            expires_delta=timedelta(hours=1),
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers

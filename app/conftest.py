import os

# Settings are cached on first import, so the test environment goes in first
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret"
os.environ["EMAIL_HOST"] = "smtp.example.com"
os.environ["EMAIL_USER"] = "mailer@example.com"
os.environ["EMAIL_PASS"] = "mailer-pass"
os.environ["FRONTEND_URL"] = "http://frontend.test"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_secret"
os.environ.pop("ADMIN_PASSWORD", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import email_service
import models_sqlalchemy as models
import paystack
from api_endpoints import app, get_db
from auth_service import create_access_token, hash_password
from seed import seed_locations, seed_routes

# ---------- TEST FIXTURES ----------

TEST_DATABASE_URL = "sqlite:///:memory:"
TEST_PASSWORD = "secret123"


class FakePaystack(paystack.PaystackClient):
    """Records gateway calls instead of talking to Paystack."""

    def __init__(self):
        super().__init__(secret_key="sk_test_secret", base_url="https://paystack.invalid")
        self.initialized = []
        self.verified = []
        self.verify_status = "success"
        self.fail_initialize = False

    def initialize_transaction(self, email, amount_kobo, reference, callback_url, metadata=None):
        if self.fail_initialize:
            raise paystack.PaystackError("Gateway unavailable")
        self.initialized.append({
            "email": email,
            "amount_kobo": amount_kobo,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata,
        })
        return {
            "authorization_url": f"https://checkout.paystack.test/{reference}",
            "access_code": f"ac_{reference}",
            "reference": reference,
        }

    def verify_transaction(self, reference):
        self.verified.append(reference)
        return {"status": self.verify_status, "reference": reference}


@pytest.fixture(scope="function")
def engine():
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(bind=engine)
    yield engine
    models.Base.metadata.drop_all(bind=engine)
    engine.dispose()

@pytest.fixture(scope="function")
def db_session(engine):
    """A seeded DB session for each test."""
    Session = sessionmaker(bind=engine, autoflush=False)
    session = Session()
    seed_locations(session)
    seed_routes(session)
    yield session
    session.close()

@pytest.fixture(scope="function")
def gateway():
    return FakePaystack()

@pytest.fixture(scope="function")
def client(db_session, gateway):
    """Override get_db and the Paystack client for FastAPI TestClient."""

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[paystack.get_paystack_client] = lambda: gateway
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()

# ---------- MOCK OUTGOING EMAIL ----------

@pytest.fixture(autouse=True)
def sent_emails(monkeypatch):
    sent = []

    def fake_send_email(to, template, data, subject=None):
        email_service.render_template(template, data)
        sent.append({"to": to, "template": template, "data": data})

    monkeypatch.setattr(email_service, "send_email", fake_send_email)
    return sent

# ---------- USERS ----------

@pytest.fixture
def make_user(db_session):
    def _make_user(email="ada@example.com", name="Ada Obi", role="user", verified=True, password=TEST_PASSWORD):
        user = models.User(
            email=email,
            name=name,
            password_hash=hash_password(password),
            role=role,
            is_verified=verified,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _make_user

def auth_header(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}

@pytest.fixture
def user(make_user):
    return make_user()

@pytest.fixture
def user_headers(user):
    return auth_header(user)

@pytest.fixture
def admin(make_user):
    return make_user(email="admin@staya.com", name="Staya Admin", role="admin")

@pytest.fixture
def admin_headers(admin):
    return auth_header(admin)

@pytest.fixture
def stranger_headers(make_user):
    return auth_header(make_user(email="musa@example.com", name="Musa Bello"))

@pytest.fixture
def headers_for():
    return auth_header

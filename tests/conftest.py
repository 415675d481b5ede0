"""
Shared pytest fixtures for the color run service.

Sets required environment variables BEFORE any colorrun module is imported so
that pydantic-settings and the SQLAlchemy engine use safe test values.
"""
from __future__ import annotations

import os
import tempfile

# ── Set env vars before any colorrun import ──────────────────────────────────
os.environ.setdefault("COLORRUN_DB_URL", "sqlite://")
os.environ.setdefault("COLORRUN_SECRET_KEY", "test-secret")
os.environ.setdefault("COLORRUN_ADMIN_USERNAME", "admin")
os.environ.setdefault("COLORRUN_ADMIN_PASSWORD", "admin-pass")
os.environ.setdefault("COLORRUN_ADMIN_EMAIL", "admin@example.org")
os.environ.setdefault("CLAIM_PASSWORD", "self-secret")
os.environ.setdefault("STAFF_CLAIM_PASSWORD", "staff-secret")
os.environ.setdefault("SEED_ON_STARTUP", "false")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="colorrun-uploads-"))

# ── Third-party ──────────────────────────────────────────────────────────────
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

# ── colorrun imports (safe after env vars are set) ───────────────────────────
from colorrun import db, models, notify, services
from colorrun import main as app_main
from colorrun.ratelimit import LoginRateLimiter
from colorrun.registrations import create_registration
from colorrun.schemas import PaymentSubmission
from colorrun.seed import seed_reference_data
from colorrun.settings import settings


class FakeMailer:
    """Records outgoing mail instead of talking to SMTP."""

    def __init__(self) -> None:
        self.sent: list[notify.OutgoingMail] = []
        self.fail = False

    def send(self, mail: notify.OutgoingMail) -> None:
        if self.fail:
            raise ConnectionRefusedError("smtp down")
        self.sent.append(mail)


# ── DB fixtures ──────────────────────────────────────────────────────────────

@pytest.fixture
def db_session(tmp_path, monkeypatch):
    """Fresh schema plus seeded categories and jerseys for every test."""
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))
    db.init_db()
    db.Base.metadata.drop_all(bind=db._engine)
    db.Base.metadata.create_all(bind=db._engine)
    session = db.session_factory()()
    seed_reference_data(session)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def mailer(monkeypatch) -> FakeMailer:
    fake = FakeMailer()
    monkeypatch.setattr(notify, "mailer", fake)
    return fake


@pytest.fixture
def category(db_session):
    def _get(name: str) -> models.RaceCategory:
        return db_session.execute(select(models.RaceCategory).where(models.RaceCategory.name == name)).scalar_one()
    return _get


# ── Submission helpers ───────────────────────────────────────────────────────

@pytest.fixture
def submission():
    def _build(items, *, email="rina@example.com", name="Rina Runner", registration_type="individual", group_name=None, amount=None):
        return PaymentSubmission(
            full_name=name,
            email=email,
            phone="08123456789",
            registration_type=registration_type,
            group_name=group_name,
            items=items,
            amount=amount,
            proof_sender_name=name,
        )
    return _build


@pytest.fixture
def register(db_session, submission):
    """Submit a cart straight through the writer; returns the SubmissionResult."""
    def _register(items, **kwargs):
        return create_registration(db_session, submission(items, **kwargs), "/uploads/proofs/test.png")
    return _register


# ── API fixtures ─────────────────────────────────────────────────────────────

@pytest.fixture
def client(db_session, monkeypatch):
    monkeypatch.setattr(app_main, "login_limiter", LoginRateLimiter())
    services.ensure_admin_user(db_session)
    return TestClient(app_main.app)


@pytest.fixture
def admin_client(client):
    r = client.post("/admin/login", json={"username": "admin", "password": "admin-pass"})
    assert r.status_code == 200, r.text
    return client

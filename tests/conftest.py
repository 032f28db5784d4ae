"""
Pytest configuration and fixtures for all tests
"""

import os
from datetime import datetime, timedelta

# Must be set before anything imports the settings singleton
os.environ["PV_ENVIRONMENT"] = "test"
os.environ["PV_DATABASE_URL"] = "sqlite://"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from acceptance_api.app import app
from acceptance_api.bot_check import set_captcha_verifier
from acceptance_api.cache import ReadCache, set_read_cache
from acceptance_api.config import Settings, get_settings
from acceptance_api.database import InsurancePlan, Provider, get_db, init_db
from acceptance_api.rate_limiter import build_rate_limiter, set_rate_limiter
from acceptance_api.verification_service import Fingerprint, VerificationLedger


PRIMARY_CARE_PROVIDER = "1234567890"
MENTAL_HEALTH_PROVIDER = "9876543210"
PLAN_A = "PLAN-A"
PLAN_B = "PLAN-B"


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_globals():
    """Fresh limiter, cache and bot check for every test."""
    set_rate_limiter(build_rate_limiter(get_settings()))
    set_read_cache(ReadCache())
    set_captcha_verifier(None)
    yield
    set_rate_limiter(None)
    set_read_cache(None)
    set_captcha_verifier(None)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    session.add_all([
        Provider(id=PRIMARY_CARE_PROVIDER, primary_specialty="Internal Medicine"),
        Provider(
            id=MENTAL_HEALTH_PROVIDER,
            primary_specialty="Psychiatry",
            taxonomy_description="Psychiatry & Neurology",
        ),
        InsurancePlan(id=PLAN_A, plan_name="Acme Gold PPO"),
        InsurancePlan(id=PLAN_B, plan_name="Acme Silver HMO"),
    ])
    session.commit()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 12, 0, 0))


@pytest.fixture
def ledger(db_session, settings, clock):
    return VerificationLedger(db_session, settings=settings, cache=ReadCache(), clock=clock)


@pytest.fixture
def client(db_session, session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def fingerprint(ip: str = "10.0.0.1", email: str = None) -> Fingerprint:
    return Fingerprint(source_ip=ip, email=email, user_agent="pytest")

"""Pytest fixtures for SignatureHub tests."""
import os
import re
import tempfile

# Settings are read at import time, so the environment must be in place first.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DEMO_MODE"] = "false"
os.environ["AUTO_CREATE_TABLES"] = "false"
os.environ["PUBLIC_URL"] = "https://sign.test"
os.environ["LOG_FILE"] = os.path.join(tempfile.gettempdir(), "signaturehub-tests.log")

import uuid  # noqa: E402
from datetime import date  # noqa: E402
from typing import List, Optional  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, SQLModel, select  # noqa: E402

from signaturehub.core.dependencies import hash_api_key  # noqa: E402
from signaturehub.core.exceptions import NotifierError  # noqa: E402
from signaturehub.db.core import engine  # noqa: E402
from signaturehub.db import schema  # noqa: E402,F401
from signaturehub.db.schema import ApiKey, SignatureRequest, SigningToken  # noqa: E402
from signaturehub.main import app  # noqa: E402
from signaturehub.models.package import PackageCreate, SignerAssignment  # noqa: E402
from signaturehub.services.notifier import Channel, Notifier, set_notifier  # noqa: E402
from signaturehub.services.rate_limit import (  # noqa: E402
    RouteLimits, VerificationThrottle, reset_route_limits, reset_verification_throttle
)


TEST_API_KEY = "sk_test_key_12345"
TEST_TENANT_ID = uuid.UUID("7f2c1c1e-3a5b-4c6d-8e9f-0a1b2c3d4e5f")


# =============================================================================
# Fakes
# =============================================================================


class RecordingChannel(Channel):
    """Captures outbound messages instead of delivering them."""

    def __init__(self, fail: bool = False):
        self.messages: List[dict] = []
        self.fail = fail

    def deliver(self, destination: str, subject: str, body: str) -> None:
        if self.fail:
            raise NotifierError("simulated provider outage")
        self.messages.append({"destination": destination, "subject": subject, "body": body})

    def to(self, destination: str) -> List[dict]:
        return [m for m in self.messages if m["destination"] == destination]

    def last_code(self, destination: Optional[str] = None) -> str:
        for message in reversed(self.messages):
            if destination and message["destination"] != destination:
                continue
            match = re.search(r"verification code: (\d+)", message["subject"])
            if match:
                return match.group(1)
        raise AssertionError("no verification code was sent")


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def tables():
    SQLModel.metadata.create_all(engine)
    yield
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session():
    with Session(engine) as session:
        yield session


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture(autouse=True)
def notifier(channel):
    notifier = Notifier(email=channel, sms=channel)
    set_notifier(notifier)
    yield notifier
    set_notifier(None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def throttle(clock):
    throttle = VerificationThrottle(clock=clock)
    reset_verification_throttle(throttle)
    yield throttle
    reset_verification_throttle(None)


@pytest.fixture(autouse=True)
def route_limits(clock):
    limits = RouteLimits(clock=clock)
    reset_route_limits(limits)
    yield limits
    reset_route_limits(None)


@pytest.fixture
def tenant(session):
    api_key = ApiKey(key_hash=hash_api_key(TEST_API_KEY), tenant_id=TEST_TENANT_ID, tenant_name="Test Shows")
    session.add(api_key)
    session.commit()
    session.refresh(api_key)
    return api_key


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def auth_headers(tenant):
    return {"X-API-Key": TEST_API_KEY}


# =============================================================================
# Helpers
# =============================================================================


def token_from_url(sign_url: str) -> str:
    return sign_url.rstrip("/").split("/")[-1]


def load_request(session: Session, token_value: str) -> SignatureRequest:
    session.expire_all()
    token = session.exec(select(SigningToken).where(SigningToken.token == token_value)).one()
    return session.get(SignatureRequest, token.request_id)


def load_token(session: Session, token_value: str) -> SigningToken:
    session.expire_all()
    return session.exec(select(SigningToken).where(SigningToken.token == token_value)).one()


def mark_verified(session: Session, token_value: str) -> None:
    token = load_token(session, token_value)
    token.is_verified = True
    token.code_channel = "email"
    session.add(token)
    session.commit()


def package_input(signers, **kwargs) -> PackageCreate:
    defaults = {
        "document_name": "Entry Agreement",
        "document_content": "<p>{{signerName}} agrees as {{signerRoles}} for {{eventName}}.</p>",
        "merge_variables": {"eventName": "Spring Classic"},
        "event_date": date(2025, 6, 1),
    }
    defaults.update(kwargs)
    return PackageCreate(signers=[SignerAssignment(**s) for s in signers], **defaults)


@pytest.fixture
def make_request(session):
    """Creates a standalone request through the service layer and returns the create response."""
    from signaturehub.models.request import RequestCreate
    from signaturehub.services.request import RequestService

    def _make(**overrides):
        data = {
            "document_name": "Liability Waiver",
            "document_content": "<p>I, {{signerName}}, accept the terms.</p>",
            "signer_name": "Jordan Smith",
            "signer_email": "jordan@example.com",
        }
        data.update(overrides)
        return RequestService(session).create_request(TEST_TENANT_ID, RequestCreate(**data))

    return _make

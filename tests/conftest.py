from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from db import build_engine, create_db_and_tables, get_session
from mailer import get_notifier
from main import app
from models import HelpRequest, User, utcnow
from ratelimit import limiter
from routers.auth import create_session_token, hash_password


class FakeNotifier:
    """Records outgoing mail; can be told to fail like a dead SMTP server."""

    def __init__(self):
        self.sent = []
        self.codes = []
        self.reset_links = []
        self.fail = False
        self.before_fail = None

    def _maybe_fail(self):
        if self.fail:
            if self.before_fail is not None:
                self.before_fail()
            raise ConnectionError("SMTP connection refused")

    def notify_owner_of_claim(self, owner_email, payload):
        self._maybe_fail()
        self.sent.append((owner_email, payload))
        return True

    def send_verification_code(self, to_email, code):
        self._maybe_fail()
        self.codes.append((to_email, code))

    def send_password_reset(self, to_email, reset_url):
        self._maybe_fail()
        self.reset_links.append((to_email, reset_url))

    @property
    def last_code(self) -> str:
        return self.codes[-1][1]


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def make_user(session):
    counter = {"n": 0}

    def _make(role: str = "user", email: str | None = None, full_name: str = "Test User") -> User:
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            full_name=full_name,
            role=role,
            password_hash=hash_password("correct-horse"),
            email_verified_at=utcnow(),
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return _make


def build_request(owner_id: int, **overrides) -> HelpRequest:
    fields = dict(
        user_id=owner_id,
        help_type="volunteer",
        category="school",
        target_group="children",
        topic="education",
        region="north",
        title="Reading buddies",
        short_summary="Looking for volunteers to read with kids",
        full_description="Looking for volunteers to read with kids after school.",
        status="open",
    )
    fields.update(overrides)
    return HelpRequest(**fields)


@pytest.fixture
def make_request(session):
    def _make(owner: User, **overrides) -> HelpRequest:
        req = build_request(owner.id, **overrides)
        session.add(req)
        session.commit()
        session.refresh(req)
        return req

    return _make


@pytest.fixture
def app_overrides(engine, notifier):
    def get_session_override():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[get_notifier] = lambda: notifier
    limiter.reset()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def client(app_overrides) -> TestClient:
    return TestClient(app)


@pytest.fixture
def client_for(app_overrides):
    """TestClient already logged in as the given user."""

    def _client(user: User) -> TestClient:
        return TestClient(app, cookies={"session": create_session_token(user.id)})

    return _client


@pytest.fixture
def reload(engine):
    def _reload(request_id: int) -> HelpRequest | None:
        with Session(engine) as s:
            return s.get(HelpRequest, request_id)

    return _reload

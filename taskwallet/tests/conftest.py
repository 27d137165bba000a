import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from taskwallet.api import create_app
from taskwallet.config import Settings
from taskwallet.db import Database
from taskwallet.models import SignupRequest, TaskCreateRequest
from taskwallet.services import Services

ADMIN_PASSWORD = "test-admin-password"


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.drop_all()
    database.engine.dispose()


@pytest.fixture
def services(db, clock):
    return Services.build(db, clock=clock, rng=random.Random(7))


@pytest.fixture
def make_user(services):
    counter = iter(range(1, 10_000))

    def _make_user(name="user", invite_code=None, upi=None, balance=None):
        n = next(counter)
        user = services.users.signup(SignupRequest(
            name=name.title(),
            email=f"{name}{n}@example.com",
            phone=f"+9198000{n:05d}",
            upi=upi,
            invite_code=invite_code,
        ))
        if balance:
            services.admin.adjust_balance(user.id, Decimal(balance), "test funding")
            user = services.users.get_user(user.id)
        return user

    return _make_user


@pytest.fixture
def make_task(services):
    def _make_task(price="20", title="Follow our page"):
        task, _ = services.tasks.create_task(TaskCreateRequest(
            title=title,
            description="Follow and screenshot",
            instruction="Open the link, follow, come back",
            price=Decimal(price),
        ))
        return task

    return _make_task


@pytest.fixture
def client(services):
    app = create_app(services, Settings(database_url="sqlite://", admin_password=ADMIN_PASSWORD))
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"Admin-Password": ADMIN_PASSWORD}

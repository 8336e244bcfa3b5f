"""
Shared pytest fixtures available to every test file automatically.
No imports needed in test files: pytest discovers this by convention.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.deps import (
    can_admin_write_booking,
    can_cancel_booking,
    can_modify_booking,
    can_read_or_admin_booking,
    can_write_booking,
    get_booking_store,
    get_current_user,
    get_notifications_client,
    get_payment_gateway,
    get_payment_secret,
)
from app.errors import register_error_handlers
from app.routers.booking import router
from app.routers.vehicles import router as vehicles_router

from .factories import SECRET, make_admin, make_customer, vehicle
from .fakes import FakeGateway, FakeNotifier, InMemoryBookingStore

# ---------------------------------------------------------------------------
# Redis is never touched in tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def no_slots_cache():
    with (
        patch("app.routers.booking.get_slots_cache", AsyncMock(return_value=None)),
        patch("app.routers.booking.set_slots_cache", AsyncMock()),
        patch("app.routers.booking.invalidate_slots_cache", AsyncMock()),
        patch("app.sweeper.invalidate_slots_cache", AsyncMock()),
    ):
        yield


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture()
def store():
    return InMemoryBookingStore(vehicles=[vehicle()])


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def notifier():
    return FakeNotifier()


# ---------------------------------------------------------------------------
# App builder: used by all client fixtures
# ---------------------------------------------------------------------------


def build_app(
    current_user,
    store=None,
    gateway=None,
    notifier=None,
) -> FastAPI:
    """
    Fresh FastAPI app with auth/scope dependencies overridden to return
    `current_user` unconditionally, wired to in-memory collaborators.
    """
    app = FastAPI()
    register_error_handlers(app)
    app.include_router(vehicles_router)
    app.include_router(router)

    async def _user():
        return current_user

    for dep in (
        can_read_or_admin_booking,
        can_write_booking,
        can_cancel_booking,
        can_modify_booking,
        can_admin_write_booking,
        get_current_user,
    ):
        app.dependency_overrides[dep] = _user

    s = store if store is not None else InMemoryBookingStore(vehicles=[vehicle()])
    g = gateway if gateway is not None else FakeGateway()
    n = notifier if notifier is not None else FakeNotifier()
    app.dependency_overrides[get_booking_store] = lambda: s
    app.dependency_overrides[get_payment_gateway] = lambda: g
    app.dependency_overrides[get_notifications_client] = lambda: n
    app.dependency_overrides[get_payment_secret] = lambda: SECRET

    return app


# ---------------------------------------------------------------------------
# Reusable client fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def customer_client(store, gateway, notifier):
    app = build_app(make_customer(), store=store, gateway=gateway, notifier=notifier)
    return TestClient(app, raise_server_exceptions=True)


@pytest.fixture()
def admin_client(store):
    return TestClient(build_app(make_admin(), store=store), raise_server_exceptions=True)


@pytest.fixture()
def anon_app(store):
    """
    App with only the store overridden.
    Use this when you want real scope/auth deps to run so you can assert 401/403/422.
    """
    app = FastAPI()
    register_error_handlers(app)
    app.include_router(vehicles_router)
    app.include_router(router)
    app.dependency_overrides[get_booking_store] = lambda: store
    return app


@pytest.fixture()
def client_factory(store, gateway, notifier):
    def _make(current_user, **collaborators) -> TestClient:
        kwargs = dict(store=store, gateway=gateway, notifier=notifier)
        kwargs.update(collaborators)
        return TestClient(build_app(current_user, **kwargs), raise_server_exceptions=True)

    return _make

"""
Shared pytest fixtures available to every test file automatically.
No imports needed in test files, pytest discovers this by convention.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.deps import (
    can_cancel_booking,
    can_manage_booking,
    can_read_or_manage_booking,
    get_booking_client,
    get_current_user,
)
from app.routers.booking import router

from .factories import make_admin, make_booking_client, make_client, make_owner


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    """Keep the rates cache off the network: always a miss, writes dropped."""
    get_cache = AsyncMock(return_value=None)
    set_cache = AsyncMock(return_value=None)
    monkeypatch.setattr("app.routers.booking.get_rates_cache", get_cache)
    monkeypatch.setattr("app.routers.booking.set_rates_cache", set_cache)
    return get_cache, set_cache


# ---------------------------------------------------------------------------
# App builder: used by all client fixtures
# ---------------------------------------------------------------------------


def build_app(current_user, booking_client=None) -> FastAPI:
    """
    Fresh FastAPI app with auth/scope dependencies overridden to return
    `current_user` unconditionally.

    Pass `booking_client` to inject a custom mock.
    """
    app = FastAPI()
    app.include_router(router)

    async def _user():
        return current_user

    for dep in (
        can_read_or_manage_booking,
        can_manage_booking,
        can_cancel_booking,
        get_current_user,
    ):
        app.dependency_overrides[dep] = _user

    bc = booking_client if booking_client is not None else make_booking_client()
    app.dependency_overrides[get_booking_client] = lambda: bc

    return app


# ---------------------------------------------------------------------------
# Reusable client fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def client_client():
    return TestClient(build_app(make_client()), raise_server_exceptions=True)


@pytest.fixture()
def owner_client():
    return TestClient(build_app(make_owner()), raise_server_exceptions=True)


@pytest.fixture()
def admin_client():
    return TestClient(build_app(make_admin()), raise_server_exceptions=True)


@pytest.fixture()
def anon_app():
    """
    Bare app with NO auth overrides.
    Use this when you want real scope/auth deps to run so you can assert 401/403/422.
    """
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_booking_client] = lambda: make_booking_client()
    return app


@pytest.fixture()
def client_factory():
    def _make(current_user, booking_client=None) -> TestClient:
        return TestClient(
            build_app(current_user, booking_client=booking_client),
            raise_server_exceptions=True,
        )

    return _make

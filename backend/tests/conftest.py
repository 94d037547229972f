from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from chatdeck.api import admin, chat, sessions, system
from chatdeck.core.context import prompt_cache
from chatdeck.core.security import get_current_user

USER = {"id": 1, "username": "alice", "role": "user", "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc)}
ADMIN = {"id": 2, "username": "admin", "role": "admin", "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc)}


@pytest.fixture(autouse=True)
def _reset_prompt_cache():
    prompt_cache.invalidate()
    yield
    prompt_cache.invalidate()


@pytest.fixture
def app() -> FastAPI:
    application = FastAPI()
    for module in (chat, sessions, admin, system):
        application.include_router(module.router)
    application.dependency_overrides[get_current_user] = lambda: USER
    return application


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture
def admin_client(app: FastAPI) -> TestClient:
    app.dependency_overrides[get_current_user] = lambda: ADMIN
    return TestClient(app)

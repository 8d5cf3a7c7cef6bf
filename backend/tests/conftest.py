import os
import uuid

os.environ.setdefault("STORAGE_BACKEND", "memory")

import pytest
from fastapi.testclient import TestClient

from backend import main
from backend.main import PERSONA_LOCKS, RATE_LIMITER, InMemoryJournalStore, app


@pytest.fixture(autouse=True)
def reset_state(monkeypatch: pytest.MonkeyPatch) -> InMemoryJournalStore:
    store = InMemoryJournalStore()
    monkeypatch.setattr(main, "STORE", store)
    monkeypatch.setattr(main, "LLM_CLIENT", None)
    RATE_LIMITER.hits.clear()
    PERSONA_LOCKS.clear()
    return store


@pytest.fixture()
def store(reset_state: InMemoryJournalStore) -> InMemoryJournalStore:
    return reset_state


@pytest.fixture()
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture()
def auth_context(client: TestClient) -> tuple[dict[str, str], str]:
    email = f"user-{uuid.uuid4().hex}@example.com"
    password = "supersecret"
    response = client.post(
        "/auth/register",
        json={"email": email, "password": password},
    )
    assert response.status_code == 200
    token = response.json()["token"]
    headers = {"Authorization": f"Bearer {token}"}
    profile = client.get("/auth/me", headers=headers).json()["user"]
    return headers, profile["user_id"]

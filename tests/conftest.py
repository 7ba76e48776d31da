from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

import auth
from database import MemoryTreeStore, get_store
from main import app

PASSWORD = "secret1"


def catalog():
    return {
        "products": {
            "diamond": {"name": "Diamond", "category": "Ores", "description": "Shiny and hard.",
                        "price": 2.0, "stock": 10},
            "iron-ingot": {"name": "Iron Ingot", "category": "Ores", "description": "Smelted iron.",
                           "price": 0.5, "stock": 100},
            "golden-apple": {"name": "Golden Apple", "category": "Food", "description": "Grants absorption.",
                             "price": 3.0, "discountPrice": 2.5, "stock": 4},
            "starter-kit": {"name": "Starter Kit", "category": "Kits", "description": "Day one bundle.",
                            "price": 8.0, "stock": 0, "kit": ["Stone Sword", "Torch x32"]},
        },
        "branches": ["Spawn", "Nether Hub"],
        "promotions": {"free_shipping": False, "discount_percentage": 0, "points_boost": 0},
    }


@pytest.fixture
def store():
    return MemoryTreeStore(catalog())


@pytest.fixture
def api(store):
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(store):
    def _make(username, password=PASSWORD, approved=True, points=0, rank="member", email=None):
        pw_hash, salt = auth.hash_password(password)
        store.set(f"users/{username}", {
            "email": email or f"{username}@pickles.io",
            "password_hash": pw_hash,
            "salt": salt,
            "approved": approved,
            "points": points,
            "rank": rank,
        })
        return username
    return _make


@pytest.fixture
def session_for(store, make_user):
    """Build a service-layer Session without going through HTTP."""
    def _session(username, **kwargs):
        if store.get(f"users/{username}") is None:
            make_user(username, **kwargs)
        return auth.Session(
            token=f"token-{username}",
            user_id=username,
            user=store.get(f"users/{username}"),
            expires_at=auth.utcnow() + timedelta(hours=1),
        )
    return _session


@pytest.fixture
def login(api, make_user):
    """Create a user and return Authorization headers for them."""
    def _login(username, **kwargs):
        make_user(username, **kwargs)
        resp = api.post("/auth/login", json={"username": username, "password": PASSWORD})
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}
    return _login


@pytest.fixture
def admin_headers(login):
    return login("overseer", rank="admin")

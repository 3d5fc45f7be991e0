"""
Pytest fixtures for the merkle airdrop service. Each test gets its own SQLite DB.
"""

from __future__ import annotations

import os
import sys

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# Importing app builds the module-level app; keep it off the on-disk default DB.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_MERKLE_KEY", "test-merkle-key")
os.environ.setdefault("LOG_FORMAT", "console")

WALLET_A = "0x" + "a" * 39 + "1"
WALLET_B = "0x" + "b" * 39 + "2"
WALLET_C = "0x" + "c" * 39 + "3"


@pytest.fixture
def app(tmp_path):
    from app import create_app
    from cache import MemoryCache
    from extensions import db

    flask_app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'merkle.db'}",
        "RATELIMIT_ENABLED": False,
        "MERKLE_CACHE": MemoryCache(ttl_seconds=60, max_size=100),
    })
    with flask_app.app_context():
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def repo(app):
    return app.extensions["merkle_trees"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_client(client):
    r = client.post("/api/admin/merkle/login", json={"key": "test-merkle-key", "name": "ops"})
    assert r.status_code == 200
    return client


@pytest.fixture
def scenario_allocations():
    """Second entry is a case-variant duplicate of the first."""
    return [
        {"walletAddress": WALLET_A.upper().replace("0X", "0x"), "amount": "100"},
        {"walletAddress": WALLET_A, "amount": "50"},
        {"walletAddress": WALLET_B.upper().replace("0X", "0x"), "amount": "200"},
    ]

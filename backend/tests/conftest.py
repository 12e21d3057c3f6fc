"""
Pytest configuration and fixtures for the dbrest tests.

Everything runs against an in-memory SQLite database shared through a
StaticPool, so the Flask app, the schema catalog and the query runner all see
the same tables.
"""

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from dbrest import db
from dbrest.main import create_app
from dbrest.passwords import PasswordHasher

TEST_SALT = "pepper"

SCHEMA = [
    """
    CREATE TABLE widgets (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        age INTEGER,
        status TEXT
    )
    """,
    """
    CREATE TABLE users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT UNIQUE,
        password TEXT,
        role TEXT
    )
    """,
    "CREATE VIEW v_adults AS SELECT id, name, age FROM widgets WHERE age >= 18",
]

WIDGETS = [
    {"name": "gear", "age": 10, "status": "active"},
    {"name": "gizmo", "age": 25, "status": "pending"},
    {"name": "sprocket", "age": 40, "status": "retired"},
    {"name": "widget", "age": 70, "status": "active"},
]


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep the real config/ directory and environment out of the tests."""
    monkeypatch.setenv("DBREST_CONFIG_DIR", str(tmp_path))
    for name in ("PASSWORD_SALT", "SECRET_KEY", "DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    # installs REGEXP before the first connection is opened
    db.configure_engine(eng)
    with eng.begin() as conn:
        for ddl in SCHEMA:
            conn.execute(text(ddl))
        conn.execute(
            text("INSERT INTO widgets (name, age, status) VALUES (:name, :age, :status)"),
            WIDGETS,
        )
    yield eng
    db.dispose_engine()


@pytest.fixture
def hasher():
    return PasswordHasher(TEST_SALT)


@pytest.fixture
def make_app(engine):
    def _make(**overrides):
        settings = {
            "TESTING": True,
            "START_LOG": False,
            "DATABASE_ENGINE": engine,
            "PASSWORD_SALT": TEST_SALT,
            "SECRET_KEY": "test-session-secret",
        }
        settings.update(overrides)
        return create_app(settings)

    return _make


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def add_user(engine, hasher):
    def _add(email, password, role=None):
        with engine.begin() as conn:
            conn.execute(
                text("INSERT INTO users (email, password, role) VALUES (:email, :password, :role)"),
                {"email": email, "password": hasher.hash(password), "role": role},
            )

    return _add

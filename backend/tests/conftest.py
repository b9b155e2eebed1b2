import uuid
from contextlib import contextmanager

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from safeguard import auth_service, blob_store, db, ledger_service, main, workflow_service
from safeguard.auth_service import AuthUser, get_current_user
from safeguard.db import build_engine, init_db
from safeguard.workflow_models import User


@pytest.fixture
def session_factory(monkeypatch, tmp_path):
    engine = build_engine(f"sqlite:///{(tmp_path / 'test.db').as_posix()}")
    init_db(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

    for module in (db, workflow_service, auth_service, ledger_service):
        monkeypatch.setattr(module, "SessionLocal", factory)
    monkeypatch.setattr(blob_store, "DATA_DIR", str(tmp_path / "blobs"))

    yield factory

    engine.dispose()


@pytest.fixture
def make_user(session_factory):
    def _make(role: str, email: str | None = None, full_name: str | None = None, is_active: bool = True) -> AuthUser:
        uid = uuid.uuid4()
        email = email or f"{role}-{uid.hex[:8]}@example.com"
        with session_factory() as s:
            s.add(User(id=uid, email=email, full_name=full_name, role=role, is_active=is_active))
            s.commit()
        return AuthUser(id=uid, email=email, role=role)

    return _make


@pytest.fixture
def app_with_temp_data(monkeypatch, tmp_path, session_factory):
    monkeypatch.setattr(main, "DATA_DIR", str(tmp_path))
    monkeypatch.setattr(main, "_startup_db_bootstrap", lambda: None)

    yield main.app, tmp_path

    main.app.dependency_overrides.clear()


@pytest.fixture
def client_factory(app_with_temp_data):
    app, _tmp_path = app_with_temp_data

    @contextmanager
    def _factory(user: AuthUser | None = None):
        if user:
            app.dependency_overrides[get_current_user] = lambda: user
        else:
            app.dependency_overrides.pop(get_current_user, None)

        with TestClient(app) as client:
            yield client

        app.dependency_overrides.clear()

    return _factory

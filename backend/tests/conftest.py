import os, tempfile, uuid
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from main import app
from db import Base, get_db
from security import issue_session_token
import store

@pytest.fixture(scope="session")
def tmp_db_path():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    return path

@pytest.fixture(scope="session")
def test_engine(tmp_db_path):
    url = f"sqlite:///{tmp_db_path}"
    engine = create_engine(url, connect_args={"check_same_thread": False})

    # SQLite force foreign key constraints
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    return engine

@pytest.fixture(scope="session")
def TestingSessionLocal(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

@pytest.fixture(scope="session", autouse=True)
def override_di(TestingSessionLocal):
    def _get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()
    app.dependency_overrides[get_db] = _get_db

@pytest.fixture
def client():
    return TestClient(app)

@pytest.fixture
def db(TestingSessionLocal):
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def auth():
    """auth(user_id, role) -> request headers carrying a session token."""
    def _auth(user_id, role="respondent"):
        return {"Authorization": f"Bearer {issue_session_token(user_id, role)}"}
    return _auth

@pytest.fixture
def admin_hdr(auth):
    return auth("admin-1", "administrator")

@pytest.fixture
def uid():
    """Fresh user ids so tests sharing the session DB never collide."""
    return lambda prefix="user": f"{prefix}-{uuid.uuid4().hex[:8]}"

@pytest.fixture
def make_survey(db):
    def _make(definition=None, title="Test Survey"):
        definition = definition if definition is not None else {
            "pages": [{"name": "page1", "elements": [{"type": "text", "name": "q1", "title": "Anything?"}]}]
        }
        survey, _ = store.save_survey(db, definition, title=title)
        return survey
    return _make

import os, tempfile

# the app refuses to start without a database url, so point it somewhere before importing it
_fd, _APP_DB = tempfile.mkstemp(suffix=".db")
os.close(_fd)
os.environ["DATABASE_URL"] = f"sqlite:///{_APP_DB}"
os.environ["OPENAI_API_KEY"] = ""
os.environ["ADMIN_API_KEY"] = "test-key"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from main import app
from db import Base, get_db
from security import verify_admin

HDR = {"X-API-Key": "test-key"}

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

    return engine

@pytest.fixture(autouse=True)
def fresh_tables(test_engine):
    Base.metadata.drop_all(bind=test_engine)
    Base.metadata.create_all(bind=test_engine)
    yield

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
    app.dependency_overrides[verify_admin] = lambda: None

@pytest.fixture
def db(TestingSessionLocal):
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def client(monkeypatch):
    # Mock the language-model summary
    def fake_summarize(top_problems, response_count):
        return f"mock summary of {len(top_problems)} problems from {response_count} responses"
    monkeypatch.setattr("main.summarize", fake_summarize)
    monkeypatch.setattr("main.is_configured", lambda: True)
    return TestClient(app)

SURVEY = {
    "id": "config-test",
    "title": "Pain Point Survey",
    "description": "Rate how often and how badly each problem hits you",
    "sections": [
        {
            "id": "query-performance",
            "name": "Query Performance & Tuning",
            "color": "#3b82f6",
            "problems": [
                {"id": 1, "title": "Query performance keeps degrading over time"},
                {"id": 2, "title": "It's hard to identify the right indexes"},
                {"id": 3, "title": "Query plans change unexpectedly"},
            ],
        },
        {
            "id": "ai-deployment",
            "name": "AI Deployment",
            "problems": [
                {"id": 7, "title": "Do you deploy on-prem?", "questionType": "single-choice",
                 "options": ["Yes", "No"]},
                {"id": 8, "title": "Which clouds do you use?", "questionType": "multiple-choice",
                 "options": ["AWS", "Azure", "Google Cloud"]},
                {"id": 9, "title": "How do you work?", "questionType": "slider-labeled",
                 "options": ["Entirely CLI", "Balanced", "Entirely GUI"]},
            ],
        },
    ],
}

@pytest.fixture
def survey(client):
    r = client.post("/config", json=SURVEY, headers=HDR)
    assert r.status_code == 200, r.text
    return r.json()["id"]

def slider(problem_id, frequency, severity):
    return {"problemId": problem_id, "frequency": frequency, "severity": severity}

def submit(client, responses, session_id=None, sub_id=None, timestamp="2025-01-15T10:00:00Z", name="Tester"):
    body = {
        "submission": {"timestamp": timestamp, "responses": responses},
        "name": name,
        "sessionId": session_id,
    }
    if sub_id:
        body["submission"]["id"] = sub_id
    return client.post("/submissions", json=body)

def new_session(client, name="Pilot", **extra):
    r = client.post("/sessions", json={"name": name, **extra}, headers=HDR)
    assert r.status_code == 200, r.text
    return r.json()

import os
import sys
from pathlib import Path

SERVICE_DIR = Path(__file__).resolve().parents[1]
if str(SERVICE_DIR) not in sys.path:
    sys.path.insert(0, str(SERVICE_DIR))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EVENTS_ENABLED", "false")

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import get_db
from main import app
from models import Base
from routes import resolve_account, get_notifier, get_session_factory
from service import ConversationService

CLIENT_ID = 1
FREELANCER_ID = 2
OUTSIDER_ID = 3


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event_type, data, recipients):
        self.events.append((event_type, data, list(recipients)))

    def of_type(self, event_type):
        return [event for event in self.events if event[0] == event_type]


def as_user(user_id: int) -> dict:
    return {"X-User-Id": str(user_id)}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(db, notifier):
    return ConversationService(db, notifier=notifier)


@pytest.fixture
def conversation(service):
    return service.create_conversation(CLIENT_ID, FREELANCER_ID, job_id=10, project_title="Logo design")


@pytest.fixture
def client(session_factory, notifier):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def override_account(request: Request):
        return {"id": int(request.headers.get("X-User-Id", CLIENT_ID)), "role": "client"}

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[resolve_account] = override_account
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()

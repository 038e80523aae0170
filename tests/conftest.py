"""
Pytest configuration for the project management API tests.

Provides:
1. An in-memory SQLite database shared by the app and the test through StaticPool
2. Users of each role with ready-made bearer headers
3. An outbox that captures every outbound email / SMS / WhatsApp message
4. A fake object storage
"""

import os

# Configure the app before it is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["MAILJET_API_KEY"] = ""
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["WHATSAPP_API_URL"] = ""
os.environ["S3_ACCESS_KEY"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import notifications
import reminders
from database import Base, get_db, make_engine
from main import app
from models import Project, Task, User
from permissions import init_permissions
from security import create_access_token, hash_password
from storage import get_storage


# -----------------------------------------------------------------------------
# Database
# -----------------------------------------------------------------------------
@pytest.fixture
def engine():
    eng = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    init_permissions(session)
    yield session
    session.close()


# -----------------------------------------------------------------------------
# Fakes
# -----------------------------------------------------------------------------
class FakeStorage:
    def __init__(self):
        self.objects = {}

    def upload(self, key, fileobj, content_type=None):
        self.objects[key] = fileobj.read()
        return f"http://storage.test/documents/{key}"

    def presigned_url(self, key, expires=None):
        return f"http://storage.test/documents/{key}?X-Amz-Signature=fake"

    def delete(self, key):
        self.objects.pop(key, None)


class Outbox:
    def __init__(self):
        self.emails = []
        self.sms = []
        self.whatsapp = []

    def send_email(self, to_email, to_name, subject, html_body, text_body=""):
        self.emails.append({"to": to_email, "subject": subject, "html": html_body, "text": text_body})
        return True

    def send_sms(self, phone, body):
        self.sms.append({"to": phone, "body": body})
        return True

    def send_whatsapp(self, phone, body):
        self.whatsapp.append({"to": phone, "body": body})
        return True

    def recipients(self):
        return sorted(e["to"] for e in self.emails)


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def outbox(monkeypatch):
    box = Outbox()
    for module in (notifications, reminders):
        monkeypatch.setattr(module, "send_email", box.send_email)
        monkeypatch.setattr(module, "send_sms", box.send_sms)
        monkeypatch.setattr(module, "send_whatsapp", box.send_whatsapp)
    return box


@pytest.fixture
def client(session_factory, db_session, fake_storage):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: fake_storage
    yield TestClient(app)
    app.dependency_overrides.clear()


# -----------------------------------------------------------------------------
# Users & data
# -----------------------------------------------------------------------------
@pytest.fixture
def make_user(db_session):
    def _make(name, email, role="EMPLOYEE", password="secret", phone=None):
        user = User(name=name, email=email, role=role, password_hash=hash_password(password), phone=phone)
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def admin(make_user):
    return make_user("Ada Admin", "admin@example.com", role="ADMIN")


@pytest.fixture
def manager(make_user):
    return make_user("Max Manager", "manager@example.com", role="PROJECT_MANAGER")


@pytest.fixture
def employee(make_user):
    return make_user("Eve Employee", "eve@example.com", role="EMPLOYEE", phone="70 12 34 56")


@pytest.fixture
def outsider(make_user):
    return make_user("Oscar Outsider", "oscar@example.com", role="EMPLOYEE")


@pytest.fixture
def auth_header():
    def _header(user):
        return {"Authorization": f"Bearer {create_access_token(user)}"}

    return _header


@pytest.fixture
def project(db_session, manager):
    p = Project(title="Website redesign", manager_id=manager.id, created_by_id=manager.id)
    db_session.add(p)
    db_session.commit()
    return p


@pytest.fixture
def task(db_session, project, manager, employee):
    t = Task(title="Write landing copy", project_id=project.id, created_by_id=manager.id)
    t.assignees = [employee]
    db_session.add(t)
    db_session.commit()
    return t

"""
Tests for user administration, activity logs, the dashboard, in-app
notifications, export and the health routes.
"""

import csv
import io
import threading
from datetime import date

import pytest
from sqlalchemy import func, select

from database import Base, make_engine, run_reads
from models import ActivityLog, Document, Notification, Project, Task, User


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------
def test_root(client):
    res = client.get("/")
    assert res.status_code == 200
    assert res.json()["ok"] is True


def test_database_check(client):
    body = client.get("/test").json()
    assert body["backend"] == "running"
    assert body["database"] == "connected"
    assert "tasks" in body["tables"]


# -----------------------------------------------------------------------------
# Users
# -----------------------------------------------------------------------------
class TestUsers:
    def test_admin_creates_user_with_role_alias(self, client, admin, auth_header):
        res = client.post(
            "/users",
            json={"name": "Paul", "email": "Paul@Example.com", "password": "pw", "role": "manager"},
            headers=auth_header(admin),
        )
        assert res.status_code == 201
        assert res.json()["email"] == "paul@example.com"
        assert res.json()["role"] == "PROJECT_MANAGER"

    def test_invalid_role(self, client, admin, auth_header):
        res = client.post(
            "/users", json={"name": "P", "email": "p@x.com", "password": "pw", "role": "boss"}, headers=auth_header(admin)
        )
        assert res.status_code == 400

    def test_manager_reads_but_cannot_write(self, client, manager, employee, auth_header):
        headers = auth_header(manager)
        assert client.get("/users", headers=headers).status_code == 200
        assert client.get(f"/users/{employee.id}", headers=headers).status_code == 200
        assert client.patch(f"/users/{employee.id}", json={"name": "X"}, headers=headers).status_code == 403

    def test_employee_cannot_list_users(self, client, employee, auth_header):
        assert client.get("/users", headers=auth_header(employee)).status_code == 403

    def test_update_password_and_deactivate(self, client, db_session, admin, employee, auth_header):
        headers = auth_header(admin)
        res = client.patch(f"/users/{employee.id}", json={"password": "new-pass"}, headers=headers)
        assert res.status_code == 200
        assert client.post("/auth/login", json={"email": employee.email, "password": "new-pass"}).status_code == 200

        client.put(f"/users/{employee.id}", json={"is_active": False}, headers=headers)
        assert client.post("/auth/login", json={"email": employee.email, "password": "new-pass"}).status_code == 401

        log = db_session.query(ActivityLog).filter_by(entity_type="user", entity_id=employee.id).first()
        assert "password_hash" not in log.meta["fields"]

    def test_email_conflict(self, client, admin, employee, manager, auth_header):
        res = client.patch(f"/users/{employee.id}", json={"email": manager.email}, headers=auth_header(admin))
        assert res.status_code == 409

    def test_delete(self, client, db_session, admin, employee, auth_header):
        headers = auth_header(admin)
        assert client.delete(f"/users/{admin.id}", headers=headers).status_code == 400
        assert client.delete(f"/users/{employee.id}", headers=headers).status_code == 200
        assert client.get(f"/users/{employee.id}", headers=headers).status_code == 404
        db_session.expire_all()
        assert db_session.query(User).filter_by(email="eve@example.com").count() == 0


# -----------------------------------------------------------------------------
# Activity logs
# -----------------------------------------------------------------------------
class TestActivityLogs:
    def test_filters_and_limit(self, client, project, manager, employee, auth_header):
        headers = auth_header(manager)
        for title in ("A", "B", "C"):
            client.post("/tasks", json={"title": title, "project_id": project.id}, headers=headers)
        client.put("/profile", json={"name": "Max M."}, headers=headers)

        logs = client.get("/activity-logs", params={"entity_type": "task"}, headers=headers).json()
        assert len(logs) == 3
        assert {entry["action"] for entry in logs} == {"create"}
        assert logs[0]["user_name"] == "Max M."

        assert len(client.get("/activity-logs", params={"limit": 2}, headers=headers).json()) == 2
        assert client.get("/activity-logs", params={"limit": 0}, headers=headers).status_code == 400

        # every role can read the log
        assert client.get("/activity-logs", headers=auth_header(employee)).status_code == 200


# -----------------------------------------------------------------------------
# Dashboard
# -----------------------------------------------------------------------------
class TestDashboard:
    def test_stats(self, client, db_session, project, task, employee, manager, auth_header):
        task.due_date = date(2000, 1, 1)
        db_session.commit()
        body = client.get("/dashboard/stats", headers=auth_header(employee)).json()
        assert body["totalProjects"] == 1
        assert body["totalTasks"] == 1
        assert body["tasksByStatus"] == {"TODO": 1}
        assert body["projectsByStatus"] == {"PLANNING": 1}
        assert body["myTasks"] == 1
        assert body["myProjects"] == 0
        assert body["overdueTasks"] == 1
        assert [t["id"] for t in body["recentTasks"]] == [task.id]

        manager_view = client.get("/dashboard/stats", headers=auth_header(manager)).json()
        assert manager_view["myProjects"] == 1
        assert manager_view["myTasks"] == 0

    def test_stats_match_direct_queries(self, client, db_session, project, task, admin, auth_header):
        db_session.add(Task(title="Ship", project_id=project.id, status="COMPLETED", created_by_id=admin.id))
        db_session.add(Document(name="spec.pdf", file_url="http://x/spec.pdf", project_id=project.id, uploaded_by_id=admin.id))
        db_session.commit()

        body = client.get("/dashboard/stats", headers=auth_header(admin)).json()
        assert body["totalProjects"] == db_session.query(Project).count()
        assert body["totalTasks"] == db_session.query(Task).count() == 2
        assert body["totalUsers"] == db_session.query(User).count()
        assert body["totalDocuments"] == 1
        assert body["tasksByStatus"] == {"TODO": 1, "COMPLETED": 1}
        assert body["overdueTasks"] == 0
        assert {t["id"] for t in body["recentTasks"]} == {t.id for t in db_session.query(Task)}
        assert [p["id"] for p in body["recentProjects"]] == [project.id]
        assert body["recentProjects"][0]["manager_name"] == "Max Manager"

    def test_requires_auth(self, client):
        assert client.get("/dashboard/stats").status_code == 401


class TestConcurrentReads:
    @pytest.fixture
    def file_engine(self, tmp_path):
        eng = make_engine(f"sqlite:///{tmp_path}/reads.db")
        Base.metadata.create_all(eng)
        yield eng
        eng.dispose()

    def test_jobs_overlap_on_separate_sessions(self, file_engine):
        barrier = threading.Barrier(2, timeout=5)
        seen = []

        def job(session):
            seen.append(id(session))
            barrier.wait()
            return session.scalar(select(func.count(User.id)))

        assert run_reads(file_engine, {"a": job, "b": job}) == {"a": 0, "b": 0}
        assert len(set(seen)) == 2

    def test_failing_job_raises(self, file_engine):
        def broken(session):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            run_reads(file_engine, {"ok": lambda s: 1, "broken": broken})

    def test_no_jobs(self, file_engine):
        assert run_reads(file_engine, {}) == {}


# -----------------------------------------------------------------------------
# In-app notifications
# -----------------------------------------------------------------------------
class TestInAppNotifications:
    def test_list_and_mark_read(self, client, db_session, employee, manager, auth_header):
        db_session.add(Notification(user_id=employee.id, type="TASK_ASSIGNED", title="T", body="B"))
        db_session.add(Notification(user_id=manager.id, type="TASK_ASSIGNED", title="T", body="B"))
        db_session.commit()
        headers = auth_header(employee)

        [notice] = client.get("/notifications", headers=headers).json()
        assert notice["read"] is False
        res = client.put(f"/notifications/{notice['id']}/read", headers=headers)
        assert res.json()["read"] is True
        assert client.get("/notifications", params={"unread_only": True}, headers=headers).json() == []

        other = db_session.query(Notification).filter_by(user_id=manager.id).one()
        assert client.put(f"/notifications/{other.id}/read", headers=headers).status_code == 404


# -----------------------------------------------------------------------------
# Export
# -----------------------------------------------------------------------------
class TestExport:
    def test_json_export(self, client, project, task, admin, auth_header):
        res = client.post("/export", json={"types": ["projects", "tasks", "users"]}, headers=auth_header(admin))
        assert res.status_code == 200
        data = res.json()["data"]
        assert [p["title"] for p in data["projects"]] == ["Website redesign"]
        assert [t["id"] for t in data["tasks"]] == [task.id]
        assert "password_hash" not in data["users"][0]

    def test_csv_export(self, client, project, admin, auth_header):
        res = client.post("/export", json={"types": ["projects"], "format": "csv"}, headers=auth_header(admin))
        assert res.status_code == 200
        assert res.headers["content-type"].startswith("text/csv")
        assert "attachment" in res.headers["content-disposition"]
        rows = list(csv.reader(io.StringIO(res.text)))
        assert rows[0] == ["# projects"]
        assert rows[1][:2] == ["id", "title"]
        assert rows[2][1] == "Website redesign"

    def test_date_range_filters_rows(self, client, project, admin, auth_header):
        res = client.post(
            "/export",
            json={"types": ["projects"], "dateRange": {"start": "1999-01-01", "end": "1999-12-31"}},
            headers=auth_header(admin),
        )
        assert res.json()["data"] == {"projects": []}

    def test_unknown_type(self, client, admin, auth_header):
        assert client.post("/export", json={"types": ["secrets"]}, headers=auth_header(admin)).status_code == 400

    def test_employee_cannot_export(self, client, employee, auth_header):
        assert client.post("/export", json={}, headers=auth_header(employee)).status_code == 403

"""
Tests for the assignee decision workflow: respond, refuse, reject and the
single-use email links.
"""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

import confirmations
import workflow
from models import ActivityLog, EmailConfirmation, Notification, Task, TaskResponse, utcnow


def redirect_params(res):
    assert res.status_code == 302
    location = res.headers["location"]
    assert location.startswith("http://localhost:3000/redirect?")
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


# -----------------------------------------------------------------------------
# POST /tasks/{id}/respond
# -----------------------------------------------------------------------------
class TestRespond:
    def test_accept_then_second_response_conflicts(self, client, db_session, task, employee, auth_header, outbox):
        headers = auth_header(employee)
        res = client.post(f"/tasks/{task.id}/respond", json={"response": "accepted"}, headers=headers)
        assert res.status_code == 201
        body = res.json()
        assert body["response"] == "accepted"
        assert body["task_status"] == "IN_PROGRESS"

        res = client.post(f"/tasks/{task.id}/respond", json={"response": "rejected", "reason": "busy"}, headers=headers)
        assert res.status_code == 409
        assert res.json()["existing_response"] == "accepted"

        db_session.expire_all()
        assert db_session.query(TaskResponse).filter_by(task_id=task.id).count() == 1
        assert task.status == "IN_PROGRESS"

    def test_reject_requires_reason(self, client, db_session, task, employee, auth_header):
        res = client.post(f"/tasks/{task.id}/respond", json={"response": "rejected"}, headers=auth_header(employee))
        assert res.status_code == 400
        db_session.expire_all()
        assert task.status == "TODO"
        assert db_session.query(TaskResponse).count() == 0

    def test_reject_with_reason_refuses_task(self, client, db_session, task, employee, auth_header):
        res = client.post(
            f"/tasks/{task.id}/respond",
            json={"response": "rejected", "reason": "  on leave  "},
            headers=auth_header(employee),
        )
        assert res.status_code == 201
        assert res.json()["reason"] == "on leave"
        db_session.expire_all()
        assert task.status == "REFUSED"
        assert task.refusal_reason == "on leave"

    def test_invalid_response_value(self, client, task, employee, auth_header):
        res = client.post(f"/tasks/{task.id}/respond", json={"response": "maybe"}, headers=auth_header(employee))
        assert res.status_code == 400

    def test_non_assignee_is_forbidden(self, client, db_session, task, outsider, auth_header):
        res = client.post(f"/tasks/{task.id}/respond", json={"response": "accepted"}, headers=auth_header(outsider))
        assert res.status_code == 403
        assert db_session.query(TaskResponse).count() == 0

    def test_unknown_task(self, client, employee, auth_header):
        res = client.post("/tasks/nope/respond", json={"response": "accepted"}, headers=auth_header(employee))
        assert res.status_code == 404

    def test_closed_task_cannot_be_accepted(self, client, db_session, task, employee, auth_header):
        task.status = "COMPLETED"
        db_session.commit()
        res = client.post(f"/tasks/{task.id}/respond", json={"response": "accepted"}, headers=auth_header(employee))
        assert res.status_code == 400
        db_session.expire_all()
        assert task.status == "COMPLETED"

    def test_get_response_state(self, client, task, employee, auth_header):
        headers = auth_header(employee)
        assert client.get(f"/tasks/{task.id}/respond", headers=headers).json()["has_responded"] is False
        client.post(f"/tasks/{task.id}/respond", json={"response": "accepted"}, headers=headers)
        body = client.get(f"/tasks/{task.id}/respond", headers=headers).json()
        assert body["has_responded"] is True
        assert body["response"] == "accepted"

    def test_responsible_people_are_notified(self, client, db_session, task, employee, manager, admin, auth_header, outbox):
        client.post(f"/tasks/{task.id}/respond", json={"response": "accepted"}, headers=auth_header(employee))
        assert outbox.recipients() == ["admin@example.com", "manager@example.com"]
        assert all("accepted" in e["subject"] for e in outbox.emails)
        notices = db_session.query(Notification).filter_by(user_id=manager.id).all()
        assert [n.type for n in notices] == ["TASK_ACCEPTED"]

    def test_manager_who_is_admin_gets_one_email(self, client, db_session, project, task, employee, admin, auth_header, outbox):
        project.manager_id = admin.id
        db_session.commit()
        client.post(
            f"/tasks/{task.id}/respond",
            json={"response": "rejected", "reason": "no time"},
            headers=auth_header(employee),
        )
        assert outbox.recipients() == ["admin@example.com"]
        assert "no time" in outbox.emails[0]["text"]

    def test_concurrent_insert_is_reported_as_conflict(self, client, db_session, task, employee, auth_header, monkeypatch):
        # Another request wins the race after our pre-check
        db_session.add(TaskResponse(task_id=task.id, user_id=employee.id, response="accepted"))
        db_session.commit()

        real_find = workflow.find_response
        calls = []

        def racy_find(db, task_id, user_id):
            calls.append(task_id)
            if len(calls) == 1:
                return None
            return real_find(db, task_id, user_id)

        monkeypatch.setattr(workflow, "find_response", racy_find)
        res = client.post(f"/tasks/{task.id}/respond", json={"response": "accepted"}, headers=auth_header(employee))
        assert res.status_code == 409
        assert res.json()["existing_response"] == "accepted"
        db_session.expire_all()
        assert task.status == "TODO"
        assert db_session.query(ActivityLog).filter_by(action="accept_task").count() == 0


# -----------------------------------------------------------------------------
# POST /tasks/{id}/refuse and /reject
# -----------------------------------------------------------------------------
class TestRefuseAndReject:
    def test_refuse_records_reason_and_activity(self, client, db_session, task, employee, auth_header):
        res = client.post(f"/tasks/{task.id}/refuse", json={"reason": "Out of scope"}, headers=auth_header(employee))
        assert res.status_code == 200
        assert res.json()["task"]["status"] == "REFUSED"
        assert res.json()["task"]["refusal_reason"] == "Out of scope"

        entry = db_session.query(ActivityLog).filter_by(action="refused").one()
        assert entry.entity_id == task.id
        assert entry.user_id == employee.id
        assert entry.meta["reason"] == "Out of scope"

    @pytest.mark.parametrize("body", [{"reason": ""}, {"reason": "   "}, {}])
    def test_refuse_without_reason_changes_nothing(self, client, db_session, task, employee, auth_header, body):
        res = client.post(f"/tasks/{task.id}/refuse", json=body, headers=auth_header(employee))
        assert res.status_code == 400
        db_session.expire_all()
        assert task.status == "TODO"
        assert task.refusal_reason is None

    def test_refuse_by_non_assignee(self, client, db_session, task, outsider, auth_header):
        res = client.post(f"/tasks/{task.id}/refuse", json={"reason": "nope"}, headers=auth_header(outsider))
        assert res.status_code == 403
        db_session.expire_all()
        assert task.status == "TODO"

    @pytest.mark.parametrize(
        "path, body",
        [
            ("refuse", {"reason": ""}),
            ("refuse", {}),
            ("refuse", None),
            ("reject", {"rejectionReason": ""}),
            ("reject", {}),
        ],
    )
    def test_non_assignee_is_forbidden_before_reason_check(self, client, task, outsider, auth_header, path, body):
        res = client.post(f"/tasks/{task.id}/{path}", json=body, headers=auth_header(outsider))
        assert res.status_code == 403
        assert res.json()["error"] == "You are not assigned to this task"

    @pytest.mark.parametrize("path, body", [("refuse", {"reason": ""}), ("reject", {"rejectionReason": ""})])
    def test_unknown_task_is_not_found_before_reason_check(self, client, employee, auth_header, path, body):
        res = client.post(f"/tasks/nope/{path}", json=body, headers=auth_header(employee))
        assert res.status_code == 404

    def test_empty_reject_reason_by_assignee(self, client, db_session, task, employee, auth_header):
        res = client.post(f"/tasks/{task.id}/reject", json={"rejectionReason": "  "}, headers=auth_header(employee))
        assert res.status_code == 400
        db_session.expire_all()
        assert task.status == "TODO"

    def test_refuse_after_accept_conflicts(self, client, task, employee, auth_header):
        headers = auth_header(employee)
        client.post(f"/tasks/{task.id}/respond", json={"response": "accepted"}, headers=headers)
        res = client.post(f"/tasks/{task.id}/refuse", json={"reason": "changed my mind"}, headers=headers)
        assert res.status_code == 409

    def test_reject_accepts_camel_case_reason(self, client, db_session, task, employee, auth_header):
        res = client.post(
            f"/tasks/{task.id}/reject",
            json={"rejectionReason": "Missing specs"},
            headers=auth_header(employee),
        )
        assert res.status_code == 200
        assert res.json()["success"] is True
        db_session.expire_all()
        assert task.status == "REFUSED"
        assert task.refusal_reason == "Missing specs"
        assert db_session.query(ActivityLog).filter_by(action="reject_task").count() == 1

    def test_reject_by_non_assignee(self, client, task, outsider, auth_header):
        res = client.post(f"/tasks/{task.id}/reject", json={"rejectionReason": "x"}, headers=auth_header(outsider))
        assert res.status_code == 403

    def test_reject_requires_auth(self, client, task):
        assert client.post(f"/tasks/{task.id}/reject", json={"rejectionReason": "x"}).status_code == 401


# -----------------------------------------------------------------------------
# Email links
# -----------------------------------------------------------------------------
@pytest.fixture
def link_token(db_session, task, employee):
    token = confirmations.issue_token(db_session, employee.id, "task", task.id)
    db_session.commit()
    return token


class TestRejectLink:
    def test_valid_token_redirects_to_reason_form(self, client, db_session, task, link_token):
        res = client.get(f"/tasks/{task.id}/reject-link", params={"token": link_token}, follow_redirects=False)
        params = redirect_params(res)
        assert params["reject_task"] == "true"
        assert params["taskId"] == task.id
        assert params["message"]

        db_session.expire_all()
        confirmation = db_session.query(EmailConfirmation).filter_by(token=link_token).one()
        assert confirmation.confirmed is True
        assert confirmation.confirmed_at is not None

    def test_token_is_single_use(self, client, task, link_token):
        client.get(f"/tasks/{task.id}/reject-link", params={"token": link_token}, follow_redirects=False)
        res = client.get(f"/tasks/{task.id}/reject-link", params={"token": link_token}, follow_redirects=False)
        assert redirect_params(res) == {"error": "token_already_used"}

    def test_missing_and_unknown_tokens(self, client, task):
        res = client.get(f"/tasks/{task.id}/reject-link", follow_redirects=False)
        assert redirect_params(res) == {"error": "invalid_token"}
        res = client.get(f"/tasks/{task.id}/reject-link", params={"token": "deadbeef"}, follow_redirects=False)
        assert redirect_params(res) == {"error": "invalid_token"}

    def test_expired_token(self, client, db_session, task, link_token):
        confirmation = db_session.query(EmailConfirmation).filter_by(token=link_token).one()
        confirmation.expires_at = utcnow() - timedelta(minutes=1)
        db_session.commit()
        res = client.get(f"/tasks/{task.id}/reject-link", params={"token": link_token}, follow_redirects=False)
        assert redirect_params(res) == {"error": "token_expired"}

    def test_token_for_other_task_is_not_consumed(self, client, db_session, project, manager, task, link_token):
        other = Task(title="Other", project_id=project.id, created_by_id=manager.id)
        db_session.add(other)
        db_session.commit()

        res = client.get(f"/tasks/{other.id}/reject-link", params={"token": link_token}, follow_redirects=False)
        assert redirect_params(res) == {"error": "invalid_task"}

        res = client.get(f"/tasks/{task.id}/reject-link", params={"token": link_token}, follow_redirects=False)
        assert redirect_params(res)["reject_task"] == "true"


class TestAcceptLink:
    def test_accept_link_records_acceptance(self, client, db_session, task, employee, link_token, outbox, manager):
        res = client.get(f"/tasks/{task.id}/accept-link", params={"token": link_token}, follow_redirects=False)
        params = redirect_params(res)
        assert params == {"accepted_task": "true", "taskId": task.id}

        db_session.expire_all()
        assert task.status == "IN_PROGRESS"
        response = db_session.query(TaskResponse).filter_by(task_id=task.id, user_id=employee.id).one()
        assert response.response == "accepted"
        assert db_session.query(EmailConfirmation).filter_by(token=link_token).one().confirmed is True
        assert outbox.recipients() == ["manager@example.com"]

    def test_accept_link_after_response_keeps_token(self, client, db_session, task, employee, auth_header, link_token):
        client.post(f"/tasks/{task.id}/respond", json={"response": "accepted"}, headers=auth_header(employee))
        res = client.get(f"/tasks/{task.id}/accept-link", params={"token": link_token}, follow_redirects=False)
        assert redirect_params(res) == {"error": "already_responded"}
        db_session.expire_all()
        assert db_session.query(EmailConfirmation).filter_by(token=link_token).one().confirmed is False

    def test_accept_link_for_unassigned_user(self, client, db_session, task, outsider):
        token = confirmations.issue_token(db_session, outsider.id, "task", task.id)
        db_session.commit()
        res = client.get(f"/tasks/{task.id}/accept-link", params={"token": token}, follow_redirects=False)
        assert redirect_params(res) == {"error": "not_assigned"}

    def test_accept_link_bad_token(self, client, task):
        res = client.get(f"/tasks/{task.id}/accept-link", params={"token": "nope"}, follow_redirects=False)
        assert redirect_params(res) == {"error": "invalid_token"}

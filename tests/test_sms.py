import threading
from types import SimpleNamespace

import pytest
import requests

from coaching_app import db
from coaching_app.errors import ValidationError
from coaching_app.models import SmsLog
from coaching_app.results.services import bulk_save_results, publish_results
from coaching_app.settings import update_settings
from coaching_app.sms import services
from coaching_app.sms.services import (
    count_recipients, normalize_phone, render_template, send_bulk_result_sms, send_custom_sms,
)
from conftest import login, make_student, make_test, make_user, mark_test_attendance


class FakeProvider:
    """Stands in for ``requests.get``; numbers in ``failing`` are rejected."""

    def __init__(self, failing=(), fail_times=None):
        self.failing = set(failing)
        self.fail_times = fail_times
        self.calls = []

    def __call__(self, url, params=None, timeout=None):
        self.calls.append(dict(params or {}))
        number = (params or {}).get("number")
        rejected = number in self.failing
        if rejected and self.fail_times is not None:
            attempts = sum(1 for c in self.calls if c.get("number") == number)
            rejected = attempts <= self.fail_times
        if rejected:
            return SimpleNamespace(status_code=200, text="", json=lambda: {"response_code": 1007, "error_message": "Balance insufficient"})
        return SimpleNamespace(status_code=200, text="", json=lambda: {"response_code": 202, "success_message": "SMS Submitted"})


@pytest.fixture()
def sms_enabled(app):
    with app.app_context():
        update_settings("sms_settings", {"enabled": True, "api_key": "key-123", "sender_id": "8809617"})


@pytest.mark.parametrize("raw, expected", [
    ("01711-223344", "8801711223344"),
    ("+880 1711 223344", "8801711223344"),
    ("1711223344", "8801711223344"),
    ("8801711223344", "8801711223344"),
    ("", ""),
    (None, ""),
])
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_render_template_replaces_known_placeholders():
    text = render_template("Hi {studentName}, roll {roll}. {unknown}", {"studentName": "Alice", "roll": "100001"})
    assert text == "Hi Alice, roll 100001. {unknown}"


def _published_test(app):
    """Scored test flagged as published without going through the publish hook."""
    with app.app_context():
        test = make_test()
        alice = make_student("100001", name="Alice", guardian_phone="01711000001")
        bob = make_student("100002", name="Bob", guardian_phone="01711000002")
        carol = make_student("100003", name="Carol", guardian_phone=None)
        dave = make_student("100004", name="Dave")
        mark_test_attendance(test, {alice: "present", bob: "present", carol: "present", dave: "absent"})
        marks = [(alice, (80, 70, 75)), (bob, (40, 40, 40)), (carol, (10, 10, 10))]
        bulk_save_results([
            {"test_id": test.test_id, "student_id": s.student_id,
             "subject_marks": dict(zip(("Physics", "Chemistry", "Math"), m))}
            for s, m in marks
        ])
        test.is_published = True
        db.session.commit()
        return test.test_id


def test_publishing_sends_result_sms(app, monkeypatch, sms_enabled):
    provider = FakeProvider()
    monkeypatch.setattr(services.requests, "get", provider)
    test_id = _published_test(app)
    with app.app_context():
        publish_results(test_id)
        assert sorted(c["number"] for c in provider.calls) == ["8801711000001", "8801711000002"]
        assert db.session.query(SmsLog).filter_by(test_id_fk=test_id, status="sent").count() == 2


def test_result_sms_refused_when_disabled(app, monkeypatch):
    provider = FakeProvider()
    monkeypatch.setattr(services.requests, "get", provider)
    test_id = _published_test(app)
    with app.app_context():
        outcome = send_bulk_result_sms(test_id)
        assert outcome == {"success": False, "reason": "SMS service is disabled"}
        update_settings("sms_settings", {"enabled": True})
        assert "not configured" in send_bulk_result_sms(test_id)["reason"]
    assert provider.calls == []


def test_env_credentials_override_settings(app, monkeypatch):
    monkeypatch.setenv("BULKSMSBD_API_KEY", "env-key")
    monkeypatch.setenv("BULKSMSBD_SENDER_ID", "env-sender")
    with app.app_context():
        update_settings("sms_settings", {"enabled": True, "api_key": "db-key", "sender_id": "db-sender"})
        cfg = services.get_sms_config()
        assert (cfg.api_key, cfg.sender_id, cfg.ready) == ("env-key", "env-sender", True)


def test_result_sms_sends_once_per_student(app, monkeypatch, sms_enabled):
    test_id = _published_test(app)
    provider = FakeProvider()
    monkeypatch.setattr(services.requests, "get", provider)
    with app.app_context():
        outcome = send_bulk_result_sms(test_id, sent_by=None)
        assert outcome == {"success": True, "sent": 2, "failed": 0, "total": 2, "skipped": 1}
        messages = {c["number"]: c["message"] for c in provider.calls}
        assert messages["8801711000001"].startswith("Dear Alice, Your Weekly Test 1 result: 225/300. Highest Score: 225.")
        assert "120/300" in messages["8801711000002"]
        assert provider.calls[0]["api_key"] == "key-123"
        assert provider.calls[0]["senderid"] == "8809617"

        again = send_bulk_result_sms(test_id)
        assert again == {"success": True, "sent": 0, "failed": 0, "total": 0, "skipped": 3}
        assert len(provider.calls) == 2
        assert db.session.query(SmsLog).filter_by(status="sent").count() == 2


def test_failed_sms_is_retried(app, monkeypatch, sms_enabled):
    test_id = _published_test(app)
    provider = FakeProvider(failing={"8801711000002"}, fail_times=2)
    monkeypatch.setattr(services.requests, "get", provider)
    with app.app_context():
        outcome = send_bulk_result_sms(test_id)
        assert outcome["sent"] == 2
        assert outcome["failed"] == 0
        log = db.session.query(SmsLog).filter_by(phone="8801711000002").one()
        assert log.status == "sent"
        assert log.retry_count == 2


def test_permanent_failure_stops_after_max_retries(app, monkeypatch, sms_enabled):
    test_id = _published_test(app)
    provider = FakeProvider(failing={"8801711000002"})
    monkeypatch.setattr(services.requests, "get", provider)
    with app.app_context():
        outcome = send_bulk_result_sms(test_id)
        assert (outcome["sent"], outcome["failed"]) == (1, 1)
        log = db.session.query(SmsLog).filter_by(phone="8801711000002").one()
        assert log.status == "failed"
        assert log.retry_count == 3
        assert log.error_message == "Balance insufficient"
        # first attempt plus three retries
        assert sum(1 for c in provider.calls if c["number"] == "8801711000002") == 4

        # the failed guardian is still eligible next time
        monkeypatch.setattr(services.requests, "get", FakeProvider())
        assert send_bulk_result_sms(test_id)["sent"] == 1


def test_network_error_is_a_failed_send(app, monkeypatch, sms_enabled):
    def offline(*args, **kwargs):
        raise requests.ConnectionError("no route to host")

    monkeypatch.setattr(services.requests, "get", offline)
    with app.app_context():
        make_student("100001", guardian_phone="01711000001")
        outcome = send_custom_sms({"class_name": "10"}, "Hello")
        assert (outcome["sent"], outcome["failed"]) == (0, 1)
        assert "no route to host" in db.session.query(SmsLog).one().error_message


def test_custom_sms_filters_and_placeholders(app, monkeypatch, sms_enabled):
    provider = FakeProvider()
    monkeypatch.setattr(services.requests, "get", provider)
    with app.app_context():
        make_student("100001", name="Alice", phone="01811000001")
        make_student("100002", name="Bob", phone=None)
        make_student("200001", name="Zed", class_name="9", phone="01811000009")
        make_student("100003", name="Sam", phone="01811000003", status="inactive")

        assert count_recipients({"class_name": "10"}, "phone") == {
            "total_students": 2, "with_phone": 1, "without_phone": 1,
        }
        outcome = send_custom_sms({"class_name": "10"}, "Dear {studentName} ({roll}), class at 5pm", phone_field="phone")
        assert outcome == {"success": True, "sent": 1, "failed": 0, "total": 1, "skipped": 1}
        assert provider.calls[0]["message"] == "Dear Alice (100001), class at 5pm"
        assert db.session.query(SmsLog).one().sms_type == "custom_sms"

        with pytest.raises(ValidationError):
            send_custom_sms({}, "   ")
        with pytest.raises(ValidationError):
            count_recipients({}, "email")


def test_balance(app, monkeypatch, sms_enabled):
    monkeypatch.setattr(services.requests, "get", lambda url, params=None, timeout=None: SimpleNamespace(
        status_code=200, json=lambda: {"response_code": 202, "balance": 512.5},
    ))
    with app.app_context():
        assert services.check_balance()["balance"] == 512.5


def test_sms_endpoints(app, client, monkeypatch, sms_enabled):
    provider = FakeProvider()
    monkeypatch.setattr(services.requests, "get", provider)
    with app.app_context():
        make_user()
        unpublished = make_test("Weekly Test 9").test_id
    test_id = _published_test(app)
    login(client)

    rv = client.post(f"/api/sms/send-result/{unpublished}")
    assert rv.status_code == 400

    rv = client.post(f"/api/sms/send-result/{test_id}")
    assert rv.status_code == 200
    assert rv.get_json()["data"]["sent"] == 2

    stats = client.get("/api/sms/stats").get_json()["data"]
    assert (stats["total"], stats["sent"], stats["today_sent"]) == (2, 2, 2)

    logs = client.get("/api/sms/logs?status=sent&type=result_sms").get_json()
    assert logs["meta"]["total"] == 2

    rv = client.post("/api/sms/recipient-count", json={"filters": {"class_name": "10"}})
    assert rv.get_json()["data"]["total_students"] == 4

    with app.app_context():
        update_settings("sms_settings", {"enabled": False})
    rv = client.post("/api/sms/send-custom", json={"filters": {}, "message": "Hi"})
    assert rv.status_code == 400
    assert rv.get_json()["error"]["code"] == "sms_unavailable"


def test_dispatch_sends_in_bounded_chunks(app, monkeypatch, sms_enabled):
    lock = threading.Lock()
    state = {"in_flight": 0, "peak": 0}
    events = []

    def provider(cfg, phone, message, timeout):
        with lock:
            state["in_flight"] += 1
            state["peak"] = max(state["peak"], state["in_flight"])
            events.append("send")
        threading.Event().wait(0.02)
        with lock:
            state["in_flight"] -= 1
        return services.SendOutcome(True, {"response_code": 202})

    monkeypatch.setattr(services, "call_provider", provider)
    monkeypatch.setattr(services.time, "sleep", lambda seconds: events.append(seconds))
    app.config["SMS_CHUNK_DELAY_SECONDS"] = 1.5
    with app.app_context():
        for i in range(1, 13):
            make_student(f"1000{i:02d}")
        outcome = send_custom_sms({"class_name": "10"}, "Fees due on Friday")

    assert outcome["sent"] == 12
    assert 1 <= state["peak"] <= 5
    # five, pause, five, pause, two
    assert events == ["send"] * 5 + [1.5] + ["send"] * 5 + [1.5] + ["send"] * 2


def test_log_filters_reject_non_numeric_ids(app, client):
    with app.app_context():
        make_user()
    login(client)
    for query in ("test_id=abc", "student_id=1e3"):
        rv = client.get(f"/api/sms/logs?{query}")
        assert rv.status_code == 400
        assert rv.get_json()["error"]["code"] == "validation_error"
    assert client.get("/api/sms/logs?test_id=7").status_code == 200

    rv = client.post("/api/sms/recipient-count", json={"filters": {"student_ids": ["one"]}})
    assert rv.status_code == 400

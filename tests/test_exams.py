import re
from datetime import date

import pytest
from werkzeug.security import generate_password_hash

from coaching_app import db, socketio
from coaching_app.errors import ValidationError
from coaching_app.exams.services import (
    cancel_test, check_time_range, clean_subjects, create_test, delete_test, generate_test_code, update_test,
)
from coaching_app.models import Notification
from coaching_app.results.services import bulk_save_results
from conftest import SUBJECTS, login, make_student, make_user


def _test_payload(**overrides):
    payload = {
        "test_name": "Monthly Physics",
        "class_name": "10",
        "section": "A",
        "date": "2024-03-10",
        "start_time": "10:00",
        "end_time": "11:30",
        "room": "R1",
        "subjects": [dict(s) for s in SUBJECTS],
    }
    payload.update(overrides)
    return payload


def test_time_range_validation():
    assert check_time_range("10:00", "11:30") == 90
    assert check_time_range(None, None) is None
    with pytest.raises(ValidationError):
        check_time_range(None, None, required=True)
    with pytest.raises(ValidationError):
        check_time_range("10:00", "09:59")
    with pytest.raises(ValidationError):
        check_time_range("24:00", "25:00")


def test_subject_validation():
    cleaned = clean_subjects([{"name": " Physics ", "max_marks": "50", "pass_marks": 17}])
    assert cleaned == [{"name": "Physics", "max_marks": 50.0, "pass_marks": 17.0}]
    for bad in (
        [],
        [{"name": "Physics", "max_marks": 0}],
        [{"name": "Physics", "max_marks": 50, "pass_marks": 60}],
        [{"name": "Physics", "max_marks": 50}, {"name": "Physics", "max_marks": 50}],
        [{"max_marks": 50}],
    ):
        with pytest.raises(ValidationError):
            clean_subjects(bad)


def test_generated_code_format(app):
    with app.app_context():
        code = generate_test_code(date(2024, 3, 10))
        assert re.fullmatch(r"T2403[A-Z]{4}", code)


def test_create_notifies_class(app):
    with app.app_context():
        test = create_test(_test_payload(test_code="phy-01"), user_id=None)
        assert test.test_code == "PHY-01"
        assert test.duration == 90
        assert test.notified_created is True
        notice = db.session.query(Notification).one()
        assert notice.type == "test_scheduled"
        assert (notice.recipient_class, notice.recipient_section) == ("10", "A")

        with pytest.raises(ValidationError):
            create_test(_test_payload(test_code="PHY-01"))
        quiet = create_test(_test_payload(), send_notification=False)
        assert re.fullmatch(r"T2403[A-Z]{4}", quiet.test_code)
        assert db.session.query(Notification).count() == 1


def test_reschedule_resets_reminders(app):
    with app.app_context():
        test = create_test(_test_payload(), send_notification=False)
        test.reminder_24h_sent = True
        test.reminder_1h_sent = True
        db.session.commit()

        test, rescheduled = update_test(test.test_id, {"room": "R2"})
        assert rescheduled is False
        assert test.reminder_24h_sent is True

        test, rescheduled = update_test(test.test_id, {"date": "2024-03-12", "start_time": "14:00", "end_time": "15:00"})
        assert rescheduled is True
        assert (test.reminder_24h_sent, test.reminder_1h_sent, test.duration) == (False, False, 60)
        assert db.session.query(Notification).filter_by(type="test_rescheduled").count() == 1

        update_test(test.test_id, {"date": "2024-03-13", "notify_students": False})
        assert db.session.query(Notification).filter_by(type="test_rescheduled").count() == 1


def test_subjects_locked_once_results_exist(app):
    with app.app_context():
        test = create_test(_test_payload(), send_notification=False)
        student = make_student("100001")
        bulk_save_results([{"test_id": test.test_id, "student_id": student.student_id,
                            "subject_marks": {"Physics": 50}}], skip_attendance_check=True)
        with pytest.raises(ValidationError):
            update_test(test.test_id, {"subjects": [{"name": "Physics", "max_marks": 50}]})
        with pytest.raises(ValidationError):
            delete_test(test.test_id)
        # other fields stay editable
        update_test(test.test_id, {"test_name": "Monthly Physics (A)"})


def test_cancel_test(app):
    with app.app_context():
        test = create_test(_test_payload(), send_notification=False)
        cancelled = cancel_test(test.test_id, reason="Hartal")
        assert cancelled.status == "cancelled"
        notice = db.session.query(Notification).filter_by(type="test_cancelled").one()
        assert "Reason: Hartal" in notice.message
        assert notice.priority == "high"
        with pytest.raises(ValidationError):
            cancel_test(test.test_id)


def test_exam_endpoints(app, client):
    with app.app_context():
        make_user()
    login(client)
    rv = client.post("/api/tests/", json=_test_payload())
    assert rv.status_code == 201
    test_id = rv.get_json()["data"]["test_id"]

    rv = client.post("/api/tests/", json=_test_payload(subjects=[]))
    assert rv.status_code == 400

    listing = client.get("/api/tests/?class_name=10").get_json()
    assert listing["meta"]["total"] == 1

    staff_socket = socketio.test_client(app)
    staff_socket.emit("authenticate", {"user_type": "user", "user_id": 1, "role": "staff"}, callback=True)
    rv = client.put(f"/api/tests/{test_id}", json={"room": "Hall"})
    assert rv.get_json()["data"]["room"] == "Hall"
    events = [m["args"][0] for m in staff_socket.get_received() if m["name"] == "schedule-updated"]
    assert events[0]["type"] == "test_updated"
    assert events[0]["entity_id"] == test_id
    staff_socket.disconnect()

    detail = client.get(f"/api/tests/{test_id}").get_json()["data"]
    assert detail["result_count"] == 0

    rv = client.delete(f"/api/tests/{test_id}")
    assert rv.status_code == 200
    assert client.get(f"/api/tests/{test_id}").status_code == 404


def test_students_only_see_their_class(app, client):
    with app.app_context():
        create_test(_test_payload(), send_notification=False)
        other = create_test(_test_payload(class_name="9"), send_notification=False)
        other_id = other.test_id
        make_student("100001", password_hash=generate_password_hash("pw123456"))
    assert client.post("/api/auth/student-login", json={"roll": "100001", "password": "pw123456"}).status_code == 200
    listing = client.get("/api/tests/?class_name=9").get_json()
    assert [t["class_name"] for t in listing["data"]] == ["10"]
    assert client.get(f"/api/tests/{other_id}").status_code == 404
    assert client.post("/api/tests/", json=_test_payload()).status_code == 403

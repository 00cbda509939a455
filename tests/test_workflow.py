import pytest

from coaching_app import db
from coaching_app.errors import WorkflowError
from coaching_app.models import Attendance, Result
from coaching_app.workflow.services import (
    ATTENDANCE_NOT_MARKED, STUDENT_ABSENT, STUDENT_NOT_IN_ATTENDANCE,
    attendance_status, can_enter_results, eligible_students, ensure_attendance_for_tests,
    infer_attendance_from_result,
)
from conftest import login, make_student, make_test, make_user, mark_test_attendance


def test_gate_requires_test_attendance(app):
    with app.app_context():
        test = make_test()
        alice = make_student("100001")
        decision = can_enter_results(test.test_id)
        assert not decision.allowed
        assert decision.reason == ATTENDANCE_NOT_MARKED

        mark_test_attendance(test, {alice: "present"})
        assert can_enter_results(test.test_id).allowed
        assert can_enter_results(test.test_id, alice.student_id).allowed


def test_gate_reasons_per_student(app):
    with app.app_context():
        test = make_test()
        alice = make_student("100001")
        bob = make_student("100002")
        carol = make_student("100003")
        mark_test_attendance(test, {alice: "late", bob: "absent"})

        assert can_enter_results(test.test_id, alice.student_id).allowed
        assert can_enter_results(test.test_id, bob.student_id).reason == STUDENT_ABSENT
        assert can_enter_results(test.test_id, carol.student_id).reason == STUDENT_NOT_IN_ATTENDANCE


def test_ensure_attendance_names_the_test(app):
    with app.app_context():
        ready = make_test("Weekly Test 1")
        pending = make_test("Weekly Test 2")
        mark_test_attendance(ready, {make_student("100001"): "present"})

        ensure_attendance_for_tests([ready.test_id])
        with pytest.raises(WorkflowError) as exc:
            ensure_attendance_for_tests([ready.test_id, pending.test_id])
        assert exc.value.reason == ATTENDANCE_NOT_MARKED
        assert "Weekly Test 2" in exc.value.message
        # an explicit override skips the check
        ensure_attendance_for_tests([pending.test_id], skip_check=True)


def test_result_implies_attendance(app):
    with app.app_context():
        test = make_test()
        alice = make_student("100001")
        result = Result(test_id_fk=test.test_id, student_id_fk=alice.student_id, subject_marks={}, total_marks=0)
        db.session.add(result)
        db.session.commit()

        record = infer_attendance_from_result(result)
        assert record.status == "present"
        assert record.attendance_date == test.test_date
        assert record.class_name == "10"
        # second call finds the existing row
        assert infer_attendance_from_result(result) is None
        assert db.session.query(Attendance).count() == 1


def test_eligible_students_and_status(app):
    with app.app_context():
        test = make_test()
        alice = make_student("100001")
        bob = make_student("100002")
        make_student("100003")
        make_student("200001", class_name="9")
        mark_test_attendance(test, {alice: "present", bob: "absent"})

        split = eligible_students(test.test_id)
        assert [e["roll"] for e in split["eligible"]] == ["100001"]
        reasons = {e["roll"]: e["reason"] for e in split["ineligible"]}
        assert reasons == {"100002": STUDENT_ABSENT, "100003": STUDENT_NOT_IN_ATTENDANCE}

        status = attendance_status(test.test_id)
        assert status["expected_students"] == 3
        assert status["not_marked"] == 1
        assert status["attendance"]["absent"] == 1
        assert status["can_enter_results"]["allowed"] is True


def test_validate_result_entry_endpoint(app, client):
    with app.app_context():
        make_user()
        test_id = make_test().test_id
    login(client)
    rv = client.post("/api/workflow/validate-result-entry", json={"test_id": test_id})
    assert rv.status_code == 200
    body = rv.get_json()
    assert body["data"]["allowed"] is False
    assert body["data"]["reason"] == ATTENDANCE_NOT_MARKED


def test_workflow_routes_require_login(app, client):
    with app.app_context():
        test_id = make_test().test_id
    rv = client.get(f"/api/workflow/attendance-status/{test_id}")
    assert rv.status_code == 401
    assert rv.get_json()["error"]["code"] == "unauthorized"

import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from coaching_app import db
from coaching_app.attendance.services import mark_attendance
from coaching_app.errors import ValidationError, WorkflowError
from coaching_app.models import Attendance, Notification, Result, Student
from coaching_app.results.services import (
    bulk_save_results, find_result, get_merit_list, publish_results, recalculate_ranks, sync_results_with_attendance,
    validate_results,
)
from coaching_app.workflow.services import ATTENDANCE_NOT_MARKED, STUDENT_ABSENT
from conftest import login, make_student, make_test, make_user, mark_test_attendance


def _marks(physics, chemistry, math):
    return {"Physics": physics, "Chemistry": chemistry, "Math": math}


def _seed(app):
    """Test with two present students and one absent; returns ids."""
    with app.app_context():
        test = make_test()
        alice = make_student("100001", name="Alice")
        bob = make_student("100002", name="Bob")
        carol = make_student("100003", name="Carol")
        mark_test_attendance(test, {alice: "present", bob: "present", carol: "absent"})
        return test.test_id, alice.student_id, bob.student_id, carol.student_id


def test_bulk_save_scores_and_ranks(app):
    test_id, alice, bob, carol = _seed(app)
    with app.app_context():
        summary = bulk_save_results([
            {"test_id": test_id, "student_id": alice, "subject_marks": _marks(80, 70, 75)},
            {"test_id": test_id, "student_id": bob, "subject_marks": _marks(40, 40, 40)},
            {"test_id": test_id, "student_id": carol, "subject_marks": _marks(90, 90, 90)},
        ])
        assert summary["created"] == 2
        assert summary["skipped"] == 1
        assert summary["errors"][0]["reason"] == STUDENT_ABSENT

        first = find_result(test_id, alice)
        assert (first.total_marks, first.max_marks, first.percentage, first.grade, first.rank) == (225, 300, 75.0, "A", 1)
        second = find_result(test_id, bob)
        assert (second.total_marks, second.percentage, second.grade, second.rank) == (120, 40.0, "C", 2)
        assert find_result(test_id, carol) is None


def test_bulk_save_updates_existing_result(app):
    test_id, alice, bob, _ = _seed(app)
    with app.app_context():
        bulk_save_results([{"test_id": test_id, "student_id": alice, "subject_marks": _marks(10, 10, 10)}])
        summary = bulk_save_results([{"test_id": test_id, "student_id": alice, "subject_marks": _marks(50, 50, 50)}])
        assert summary == {"created": 0, "updated": 1, "skipped": 0, "errors": []}
        assert find_result(test_id, alice).total_marks == 150
        assert db.session.query(Result).count() == 1


def test_bulk_save_requires_attendance(app):
    with app.app_context():
        test = make_test()
        student = make_student("100001")
        with pytest.raises(WorkflowError) as exc:
            bulk_save_results([{"test_id": test.test_id, "student_id": student.student_id, "subject_marks": _marks(1, 1, 1)}])
        assert exc.value.reason == ATTENDANCE_NOT_MARKED
        assert db.session.query(Result).count() == 0


def test_bulk_save_skip_check_infers_attendance(app):
    with app.app_context():
        test = make_test()
        student = make_student("100001")
        summary = bulk_save_results(
            [{"test_id": test.test_id, "student_id": student.student_id, "subject_marks": _marks(50, 50, 50)}],
            skip_attendance_check=True,
        )
        assert summary["created"] == 1
        record = db.session.execute(select(Attendance).filter_by(test_id_fk=test.test_id)).scalars().one()
        assert record.status == "present"


def test_bulk_save_rejects_bad_marks_per_row(app):
    test_id, alice, bob, _ = _seed(app)
    with app.app_context():
        summary = bulk_save_results([
            {"test_id": test_id, "student_id": alice, "subject_marks": _marks(101, 0, 0)},
            {"test_id": test_id, "student_id": bob, "subject_marks": {"History": 10}},
            {"test_id": test_id, "student_id": 9999, "subject_marks": _marks(1, 1, 1)},
        ])
        assert summary["created"] == 0
        assert summary["skipped"] == 3
        assert "between 0 and 100" in summary["errors"][0]["error"]
        assert "Unknown subject" in summary["errors"][1]["error"]
        assert summary["errors"][2]["error"] == "Student not found"


def test_validate_results_is_dry_run(app):
    test_id, alice, _, carol = _seed(app)
    with app.app_context():
        report = validate_results([
            {"test_id": test_id, "student_id": alice, "subject_marks": {"Physics": 50}},
            {"test_id": test_id, "student_id": carol, "subject_marks": _marks(1, 1, 1)},
        ])
        assert report["valid"] is False
        assert report["error_count"] == 1
        assert any("Missing marks" in w for w in report["rows"][0]["warnings"])
        assert db.session.query(Result).count() == 0


def test_sync_marks_absent_and_restores(app):
    test_id, alice, bob, _ = _seed(app)
    with app.app_context():
        bulk_save_results([
            {"test_id": test_id, "student_id": alice, "subject_marks": _marks(80, 70, 75)},
            {"test_id": test_id, "student_id": bob, "subject_marks": _marks(40, 40, 40)},
        ])
        summary = mark_attendance({
            "type": "test", "date": "2024-01-15", "class_name": "10", "section": "A", "test_id": test_id,
            "students": [{"student_id": alice, "status": "absent"}, {"student_id": bob, "status": "present"}],
        })
        assert summary["changed_students"] == [{"student_id": alice, "old_status": "present", "new_status": "absent"}]

        sync = sync_results_with_attendance(test_id, summary["changed_students"])
        assert sync["marked_absent"] == 1
        assert sync["affected_students"] == [alice]
        assert sync["sms_triggered"] is False
        assert find_result(test_id, alice).is_absent is True
        assert find_result(test_id, alice).rank is None
        assert find_result(test_id, bob).rank == 1

        sync = sync_results_with_attendance(test_id, [{"student_id": alice, "new_status": "late"}])
        assert sync["restored"] == 1
        assert find_result(test_id, alice).rank == 1
        assert find_result(test_id, bob).rank == 2

        sync = sync_results_with_attendance(test_id, [{"student_id": 9999, "new_status": "absent"}])
        assert sync["no_result_found"] == 1


def test_marking_middle_student_absent_moves_lower_ranks_up(app):
    with app.app_context():
        test = make_test()
        top, middle, bottom = (make_student(roll) for roll in ("100001", "100002", "100003"))
        mark_test_attendance(test, {top: "present", middle: "present", bottom: "present"})
        bulk_save_results([
            {"test_id": test.test_id, "student_id": s.student_id, "subject_marks": _marks(score, score, score)}
            for s, score in ((top, 90), (middle, 60), (bottom, 30))
        ])
        ids = [s.student_id for s in (top, middle, bottom)]
        assert [find_result(test.test_id, i).rank for i in ids] == [1, 2, 3]

        sync_results_with_attendance(test.test_id, [{"student_id": ids[1], "new_status": "absent"}])
        assert [find_result(test.test_id, i).rank for i in ids] == [1, None, 2]
        _, entries, stats = get_merit_list(test.test_id)
        assert [(e["student_id"], e["rank"]) for e in entries] == [(ids[0], 1), (ids[2], 2)]
        assert stats["absent_count"] == 1


def test_rank_recalculation_is_idempotent(app):
    with app.app_context():
        test = make_test()
        students = [make_student(f"10000{i}") for i in range(1, 6)]
        mark_test_attendance(test, {s: "present" for s in students})
        bulk_save_results([
            {"test_id": test.test_id, "student_id": s.student_id, "subject_marks": _marks(score, score, score)}
            for s, score in zip(students, (30, 30, 20, 50, 20))
        ])
        first = {r.student_id_fk: r.rank for r in db.session.query(Result)}
        assert sorted(first.values()) == [1, 2, 2, 4, 4]

        assert recalculate_ranks(test.test_id) == 5
        assert recalculate_ranks(test.test_id) == 5
        assert {r.student_id_fk: r.rank for r in db.session.query(Result)} == first


def test_non_object_result_rows_are_rejected(app):
    test_id, alice, _, _ = _seed(app)
    with app.app_context():
        for rows in (["junk"], [{"test_id": test_id, "student_id": alice, "subject_marks": _marks(1, 1, 1)}, 7]):
            with pytest.raises(ValidationError):
                bulk_save_results(rows)
            with pytest.raises(ValidationError):
                validate_results(rows)
        with pytest.raises(ValidationError):
            sync_results_with_attendance(test_id, ["absent"])
        assert db.session.query(Result).count() == 0


def test_merit_list_and_publish(app):
    test_id, alice, bob, carol = _seed(app)
    with app.app_context():
        with pytest.raises(ValidationError):
            publish_results(test_id)
        bulk_save_results([
            {"test_id": test_id, "student_id": alice, "subject_marks": _marks(80, 70, 75)},
            {"test_id": test_id, "student_id": bob, "subject_marks": _marks(80, 70, 75)},
        ])
        test, entries, stats = get_merit_list(test_id)
        # equal totals share rank 1; ties fall back to roll order
        assert [(e["student_id"], e["rank"], e["percentile"]) for e in entries] == [
            (alice, 1, 100.0), (bob, 1, 100.0),
        ]
        assert stats["highest"] == 225
        assert stats["pass_count"] == 2

        test, ranked = publish_results(test_id)
        assert ranked == 2
        assert test.is_published is True
        assert test.published_at is not None
        notice = db.session.execute(select(Notification).filter_by(type="result_published")).scalars().one()
        assert notice.recipient_class == "10"
        assert notice.related_entity_id == test_id


def test_bulk_endpoint_reports_workflow_violation(app, client):
    with app.app_context():
        make_user()
        test_id = make_test().test_id
        student_id = make_student("100001").student_id
    login(client)
    rv = client.post("/api/results/bulk", json={"results": [
        {"test_id": test_id, "student_id": student_id, "subject_marks": _marks(1, 2, 3)},
    ]})
    assert rv.status_code == 400
    body = rv.get_json()
    assert body["success"] is False
    assert body["reason"] == ATTENDANCE_NOT_MARKED
    assert body["error"]["code"] == "workflow_violation"

    # admins may override the check
    rv = client.post("/api/results/bulk", json={"skip_attendance_check": True, "results": [
        {"test_id": test_id, "student_id": student_id, "subject_marks": _marks(1, 2, 3)},
    ]})
    assert rv.status_code == 200
    assert rv.get_json()["data"]["created"] == 1


def test_marking_attendance_syncs_results(app, client):
    test_id, alice, bob, _ = _seed(app)
    with app.app_context():
        make_user()
        bulk_save_results([{"test_id": test_id, "student_id": alice, "subject_marks": _marks(80, 70, 75)}])
    login(client)
    rv = client.post("/api/attendance/mark", json={
        "type": "test", "date": "2024-01-15", "class_name": "10", "section": "A", "test_id": test_id,
        "students": [{"student_id": alice, "status": "absent"}],
    })
    assert rv.status_code == 200
    data = rv.get_json()["data"]
    assert data["updated"] == 1
    assert data["sync"]["marked_absent"] == 1
    with app.app_context():
        assert find_result(test_id, alice).is_absent is True


def test_student_sees_only_published_results(app, client):
    test_id, alice, _, _ = _seed(app)
    with app.app_context():
        bulk_save_results([{"test_id": test_id, "student_id": alice, "subject_marks": _marks(80, 70, 75)}])
        db.session.get(Student, alice).password_hash = generate_password_hash("alicepw")
        db.session.commit()
    rv = client.post("/api/auth/student-login", json={"roll": "100001", "password": "alicepw"})
    assert rv.status_code == 200

    rv = client.get(f"/api/results/student/{alice}")
    assert rv.get_json()["data"]["results"] == []
    rv = client.get(f"/api/results/merit-list/{test_id}")
    assert rv.status_code == 404

    with app.app_context():
        publish_results(test_id)
    rv = client.get(f"/api/results/student/{alice}")
    results = rv.get_json()["data"]["results"]
    assert len(results) == 1
    assert results[0]["grade"] == "A"
    assert results[0]["attendance_status"] == "present"

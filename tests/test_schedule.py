from datetime import date

import pytest

from coaching_app import db
from coaching_app.errors import ValidationError
from coaching_app.models import ClassSession, Notification
from coaching_app.schedule.services import (
    ScheduleConflict, add_materials, cancel_session, create_session, find_conflicts, reschedule_session,
    update_session,
)
from conftest import login, make_test, make_user

DAY = date(2024, 4, 1)


def _session(**overrides):
    data = {
        "subject": "Physics",
        "class_name": "10",
        "section": "A",
        "date": "2024-04-01",
        "start_time": "09:00",
        "end_time": "10:00",
        "room": "R1",
    }
    data.update(overrides)
    return data


def test_create_notifies_and_defaults_title(app):
    with app.app_context():
        session = create_session(_session())
        assert session.title == "Physics"
        assert session.notified_created is True
        notice = db.session.query(Notification).one()
        assert notice.type == "class_scheduled"
        assert notice.related_entity_id == session.class_id

        with pytest.raises(ValidationError):
            create_session(_session(end_time="08:00"))
        with pytest.raises(ValidationError):
            create_session(_session(subject=""))


def test_conflicts_by_class_and_room(app):
    with app.app_context():
        create_session(_session(), send_notification=False)

        # touching ranges do not clash
        assert find_conflicts(DAY, "10:00", "11:00", class_name="10", section="A", room="R1") == []

        by_class = find_conflicts(DAY, "09:30", "10:30", class_name="10", section="A", room="R9")
        assert [c["reason"] for c in by_class] == ["class"]

        # another section of the same class in another room is free
        assert find_conflicts(DAY, "09:30", "10:30", class_name="10", section="B", room="R2") == []

        by_room = find_conflicts(DAY, "09:30", "10:30", class_name="9", room="R1")
        assert [c["reason"] for c in by_room] == ["room"]

        with pytest.raises(ScheduleConflict) as exc:
            create_session(_session(class_name="9", start_time="09:15", end_time="09:45"))
        assert exc.value.status_code == 409
        assert exc.value.conflicts[0]["type"] == "class"

        # explicit opt-out
        create_session(_session(class_name="9", start_time="09:15", end_time="09:45"), check_conflicts=False,
                       send_notification=False)


def test_tests_in_the_same_room_clash(app):
    with app.app_context():
        make_test(room="Hall", start_time="11:00", end_time="12:00", test_date=DAY)
        conflicts = find_conflicts(DAY, "11:30", "12:30", class_name="9", room="Hall")
        assert [(c["type"], c["reason"]) for c in conflicts] == [("test", "room")]
        assert find_conflicts(DAY, "11:30", "12:30", class_name="9", room="R1") == []


def test_cancelled_sessions_free_the_slot(app):
    with app.app_context():
        session = create_session(_session(), send_notification=False)
        cancel_session(session.class_id, reason="Teacher ill", notify_students=False)
        assert find_conflicts(DAY, "09:00", "10:00", class_name="10", section="A", room="R1") == []
        with pytest.raises(ValidationError):
            cancel_session(session.class_id)


def test_update_ignores_itself_but_not_others(app):
    with app.app_context():
        first = create_session(_session(), send_notification=False)
        create_session(_session(start_time="11:00", end_time="12:00"), send_notification=False)
        update_session(first.class_id, {"end_time": "10:30"})
        with pytest.raises(ScheduleConflict):
            update_session(first.class_id, {"end_time": "11:30"})


def test_reschedule(app):
    with app.app_context():
        session = create_session(_session(), send_notification=False)
        session.reminder_24h_sent = True
        db.session.commit()

        moved, old_date = reschedule_session(session.class_id, {"date": "2024-04-03", "start_time": "15:00",
                                                                "end_time": "16:00"})
        assert old_date == DAY
        assert moved.status == "rescheduled"
        assert moved.rescheduled_from == DAY
        assert moved.reminder_24h_sent is False
        notice = db.session.query(Notification).filter_by(type="class_rescheduled").one()
        assert "to Wednesday, 03 April 2024 at 15:00" in notice.message

        with pytest.raises(ValidationError):
            reschedule_session(session.class_id, {"start_time": "15:00", "end_time": "16:00"})


def test_materials(app):
    with app.app_context():
        session = create_session(_session(), send_notification=False)
        add_materials(session.class_id, [{"title": "Chapter 3 notes", "url": "https://example.com/ch3.pdf"}])
        add_materials(session.class_id, [{"title": "Worksheet"}])
        stored = db.session.get(ClassSession, session.class_id)
        assert [m["title"] for m in stored.materials] == ["Chapter 3 notes", "Worksheet"]
        assert db.session.query(Notification).filter_by(type="class_materials_added").count() == 2
        with pytest.raises(ValidationError):
            add_materials(session.class_id, [{"url": "no title"}])
        with pytest.raises(ValidationError):
            add_materials(session.class_id, [])


def test_schedule_endpoints(app, client):
    with app.app_context():
        make_user()
    login(client)
    rv = client.post("/api/classes/", json=_session())
    assert rv.status_code == 201
    class_id = rv.get_json()["data"]["class_id"]

    rv = client.post("/api/classes/", json=_session(class_name="9"))
    assert rv.status_code == 409
    body = rv.get_json()
    assert body["error"]["code"] == "schedule_conflict"
    assert body["conflicts"][0]["id"] == class_id

    rv = client.post("/api/classes/check-conflicts", json={
        "date": "2024-04-01", "start_time": "09:30", "end_time": "10:30", "room": "R1", "exclude_id": class_id,
    })
    assert rv.get_json()["data"] == {"has_conflicts": False, "conflicts": []}

    rv = client.post(f"/api/classes/{class_id}/reschedule", json={
        "date": "2024-04-02", "start_time": "09:00", "end_time": "10:00",
    })
    assert rv.get_json()["data"]["status"] == "rescheduled"

    rv = client.post(f"/api/classes/{class_id}/materials", json={"materials": [{"title": "Slides"}]})
    assert rv.get_json()["data"]["materials"] == [{"title": "Slides"}]

    listing = client.get("/api/classes/?class_name=10").get_json()
    assert listing["meta"]["total"] == 1

    assert client.delete(f"/api/classes/{class_id}").status_code == 200
    assert client.get(f"/api/classes/{class_id}").status_code == 404

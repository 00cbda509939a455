from datetime import date

import pytest
from werkzeug.security import generate_password_hash

from coaching_app import create_app, db, cache
from coaching_app.models import Attendance, Student, Test, User
from coaching_app.settings import init_settings
from coaching_app.tasks import task_queue

SUBJECTS = [
    {"name": "Physics", "max_marks": 100, "pass_marks": 33},
    {"name": "Chemistry", "max_marks": 100, "pass_marks": 33},
    {"name": "Math", "max_marks": 100, "pass_marks": 33},
]


@pytest.fixture(scope="session")
def app(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path.as_posix()}",
        "RATELIMIT_ENABLED": False,
        "TASKS_EAGER": True,
        "TASK_RETRY_DELAYS": (0,),
        "SCHEDULER_ENABLED": False,
        "LOG_TO_FILE": False,
        "NOTIFICATION_EMAIL_ENABLED": False,
        "VAPID_PUBLIC_KEY": None,
        "VAPID_PRIVATE_KEY": None,
        "SMS_CHUNK_DELAY_SECONDS": 0,
        "SMS_RETRY_DELAYS": (0, 0, 0),
    })
    return app


@pytest.fixture(autouse=True)
def clean_db(app, monkeypatch):
    monkeypatch.delenv("BULKSMSBD_API_KEY", raising=False)
    monkeypatch.delenv("BULKSMSBD_SENDER_ID", raising=False)
    with app.app_context():
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        init_settings()
        cache.clear()
    task_queue.dead_letters.clear()
    yield
    with app.app_context():
        db.session.remove()


@pytest.fixture()
def client(app):
    return app.test_client()


# ==========================================
# FACTORIES (call inside an app context)
# ==========================================

def make_user(username="admin", password="secret", role="admin", **kwargs):
    user = User(username=username, password_hash=generate_password_hash(password), role=role, **kwargs)
    db.session.add(user)
    db.session.commit()
    return user


def make_student(roll, name=None, class_name="10", section="A", **kwargs):
    kwargs.setdefault("guardian_phone", "01711000" + roll[-3:].rjust(3, "0"))
    student = Student(roll=roll, name=name or f"Student {roll}", class_name=class_name, section=section, **kwargs)
    db.session.add(student)
    db.session.commit()
    return student


def make_test(name="Weekly Test 1", class_name="10", section="A", subjects=None, test_date=None, **kwargs):
    test = Test(
        test_name=name,
        test_code=kwargs.pop("test_code", f"T2401{name[-1].upper()}XYZ"[:16]),
        class_name=class_name,
        section=section,
        test_date=test_date or date(2024, 1, 15),
        subjects=subjects if subjects is not None else [dict(s) for s in SUBJECTS],
        **kwargs,
    )
    db.session.add(test)
    db.session.commit()
    return test


def mark_test_attendance(test, statuses):
    """``statuses`` maps student -> status."""
    for student, status in statuses.items():
        db.session.add(Attendance(
            student_id_fk=student.student_id,
            attendance_type="test",
            attendance_date=test.test_date,
            test_id_fk=test.test_id,
            class_name=test.class_name,
            section=test.section,
            status=status,
        ))
    db.session.commit()


def login(client, username="admin", password="secret"):
    response = client.post("/api/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.get_json()
    return response

import logging
from sqlalchemy import select, func, or_
from werkzeug.security import generate_password_hash

from .. import db
from ..errors import NotFoundError, ValidationError
from ..models import STUDENT_STATUSES, Student

logger = logging.getLogger(__name__)

GROUP_CODES = {"science": "1", "commerce": "2", "arts": "3"}
EDITABLE_FIELDS = ("name", "class_name", "section", "group", "phone", "guardian_phone", "email", "status")
SORTABLE = {"roll": Student.roll, "name": Student.name, "created_at": Student.created_at}


def _class_code(class_name):
    code = str(class_name).strip()
    lowered = code.lower()
    if "1st" in lowered or code == "11":
        return "1"
    if "2nd" in lowered or code == "12":
        return "2"
    return code


def generate_roll(class_name, group=None):
    """Class code + group code + a 3-digit running number, e.g. ``110007``."""
    prefix = _class_code(class_name) + GROUP_CODES.get((group or "").strip().lower(), "0")
    rolls = db.session.execute(select(Student.roll).where(Student.roll.like(f"{prefix}%"))).scalars()
    last = 0
    for roll in rolls:
        tail = roll[len(prefix):]
        if tail.isdigit():
            last = max(last, int(tail))
    return f"{prefix}{last + 1:03d}"


def _money(value, field):
    try:
        amount = float(value or 0)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative")
    return amount


def create_student(data):
    name = (data.get("name") or "").strip()
    class_name = str(data.get("class_name") or "").strip()
    if not name or not class_name:
        raise ValidationError("name and class_name are required")
    status = data.get("status") or "active"
    if status not in STUDENT_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(STUDENT_STATUSES)}")
    roll = (data.get("roll") or "").strip().upper() or generate_roll(class_name, data.get("group"))
    if db.session.execute(select(Student.student_id).filter_by(roll=roll)).first() is not None:
        raise ValidationError(f"Roll {roll} is already taken")

    total_fee = _money(data.get("total_fee"), "total_fee")
    paid = _money(data.get("paid_amount"), "paid_amount")
    # portal password defaults to the student's phone number
    password = data.get("password") or data.get("phone")
    student = Student(
        roll=roll,
        name=name,
        class_name=class_name,
        section=data.get("section") or None,
        group=data.get("group") or None,
        phone=data.get("phone") or None,
        guardian_phone=data.get("guardian_phone") or None,
        email=data.get("email") or None,
        status=status,
        total_fee=total_fee,
        paid_amount=paid,
        password_hash=generate_password_hash(password) if password else None,
    )
    db.session.add(student)
    db.session.commit()
    logger.info("Enrolled student %s (%s) in class %s", student.student_id, roll, class_name)
    return student


def get_student(student_id):
    student = db.session.get(Student, student_id)
    if student is None:
        raise NotFoundError("Student not found")
    return student


def update_student(student_id, data):
    student = get_student(student_id)
    if data.get("status") and data["status"] not in STUDENT_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(STUDENT_STATUSES)}")
    for field in EDITABLE_FIELDS:
        if field in data:
            if field in ("name", "class_name") and not data[field]:
                raise ValidationError(f"{field} cannot be empty")
            setattr(student, field, data[field])
    for field in ("total_fee", "paid_amount"):
        if field in data:
            setattr(student, field, _money(data[field], field))
    if data.get("password"):
        student.password_hash = generate_password_hash(data["password"])
    db.session.commit()
    return student


def list_students(filters, page=1, limit=20):
    query = select(Student)
    for key in ("class_name", "section", "group", "status"):
        if filters.get(key):
            query = query.where(getattr(Student, key) == filters[key])
    if filters.get("search"):
        term = f"%{filters['search']}%"
        query = query.where(or_(Student.name.ilike(term), Student.roll.ilike(term), Student.phone.ilike(term)))
    total = db.session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    column = SORTABLE.get(filters.get("sort_by") or "roll", Student.roll)
    order = column.desc() if filters.get("sort_order") == "desc" else column.asc()
    rows = db.session.execute(query.order_by(order).offset((page - 1) * limit).limit(limit)).scalars().all()
    return rows, total

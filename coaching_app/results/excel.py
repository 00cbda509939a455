from io import BytesIO

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from sqlalchemy import select

from .. import db
from ..errors import ValidationError
from ..models import Student
from ..workflow.services import expected_students

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill("solid", fgColor="4F46E5")


def _style_header(ws):
    for cell in ws[ws.max_row]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL


def _subject_names(test):
    return [s["name"] for s in (test.subjects or [])]


def export_results_workbook(test, results):
    wb = Workbook()
    ws = wb.active
    ws.title = "Results"
    ws.append([f"{test.test_name} ({test.test_code}) | Class {test.class_name}"
               f"{' - ' + test.section if test.section else ''} | {test.test_date.isoformat()}"])
    subjects = _subject_names(test)
    ws.append(["Rank", "Roll", "Name", *subjects, "Total", "Max", "Percentage", "Grade", "Status", "Remarks"])
    _style_header(ws)
    for result in results:
        marks = result.subject_marks or {}
        ws.append([
            result.rank if not result.is_absent else None,
            result.roll,
            result.student.name if result.student else "",
            *[marks.get(name) for name in subjects],
            result.total_marks,
            result.max_marks,
            result.percentage,
            result.grade,
            "Absent" if result.is_absent else "Present",
            result.remarks or "",
        ])
    ws.column_dimensions["C"].width = 28
    bio = BytesIO()
    wb.save(bio)
    bio.seek(0)
    return bio


def build_results_template(test):
    """Blank entry sheet: one row per active student of the test's class."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Marks"
    subjects = test.subjects or []
    ws.append(["Roll", "Name", *[f"{s['name']} ({float(s.get('max_marks') or 0):g})" for s in subjects], "Remarks"])
    _style_header(ws)
    for student in expected_students(test.class_name, test.section):
        ws.append([student.roll, student.name, *[None for _ in subjects], None])
    ws.column_dimensions["B"].width = 28
    bio = BytesIO()
    wb.save(bio)
    bio.seek(0)
    return bio


def _subject_for_header(header, subjects):
    label = str(header).strip()
    for name in subjects:
        if label == name or label.startswith(f"{name} ("):
            return name
    return None


def parse_results_upload(file_storage, test):
    """Read an uploaded marks sheet into result rows for ``bulk_save_results``.

    Returns ``(rows, errors)``; rows whose roll is unknown are reported, not
    raised.
    """
    try:
        df = pd.read_excel(file_storage, dtype={"Roll": str})
    except (ValueError, OSError) as e:
        raise ValidationError(f"Could not read workbook: {e}")
    if "Roll" not in df.columns:
        raise ValidationError("Workbook must have a 'Roll' column")

    subjects = _subject_names(test)
    columns = {col: _subject_for_header(col, subjects) for col in df.columns}
    if not any(columns.values()):
        raise ValidationError("No subject columns matched this test")

    rolls = [str(r).strip() for r in df["Roll"] if not pd.isna(r)]
    students = {
        s.roll: s for s in db.session.execute(select(Student).where(Student.roll.in_(rolls))).scalars()
    }
    rows, errors = [], []
    for index, record in df.iterrows():
        roll_val = record.get("Roll")
        if pd.isna(roll_val) or not str(roll_val).strip():
            continue
        roll = str(roll_val).strip()
        student = students.get(roll)
        if student is None:
            errors.append({"row": int(index) + 2, "roll": roll, "error": "Unknown roll"})
            continue
        marks = {}
        for col, subject in columns.items():
            if subject is None:
                continue
            value = record.get(col)
            marks[subject] = None if pd.isna(value) else value
        remarks = record.get("Remarks") if "Remarks" in df.columns else None
        rows.append({
            "test_id": test.test_id,
            "student_id": student.student_id,
            "subject_marks": marks,
            "remarks": None if remarks is None or pd.isna(remarks) else str(remarks),
        })
    return rows, errors

"""Pure grading helpers: no database access."""

GRADE_BANDS = (
    (80, "A+"),
    (70, "A"),
    (60, "A-"),
    (50, "B"),
    (40, "C"),
    (33, "D"),
)
PASS_PERCENTAGE = 33


def compute_grade(percentage):
    for threshold, grade in GRADE_BANDS:
        if percentage >= threshold:
            return grade
    return "F"


def _as_mark(value):
    if value is None or value == "":
        return 0.0
    return float(value)


def compute_totals(subject_marks, subjects):
    """Return ``(total, max_marks, percentage)`` for marks keyed by subject name.

    Only the test's own subjects count; a missing subject scores zero.
    """
    marks = subject_marks or {}
    total = 0.0
    max_marks = 0.0
    for subject in subjects or []:
        total += _as_mark(marks.get(subject["name"]))
        max_marks += float(subject.get("max_marks") or 0)
    percentage = round(total / max_marks * 100, 2) if max_marks > 0 else 0.0
    return total, max_marks, percentage


def assign_competition_ranks(items, score=lambda item: item.total_marks):
    """Pair each item with its competition rank ("1224" ranking).

    Items are ordered by descending score. Equal scores share a rank and the
    next lower score takes its 1-based position.
    """
    ordered = sorted(items, key=score, reverse=True)
    ranked = []
    current = 0
    for index, item in enumerate(ordered):
        if index == 0 or score(item) < score(ordered[index - 1]):
            current = index + 1
        ranked.append((item, current))
    return ranked


def percentile_for(rank, total):
    if not total:
        return 0.0
    return round((total - rank + 1) / total * 100, 2)


def summarize(totals_and_percentages, absent_count=0):
    """Statistics over non-absent ``(total_marks, percentage, grade)`` rows."""
    rows = list(totals_and_percentages)
    distribution = {grade: 0 for _, grade in GRADE_BANDS}
    distribution["F"] = 0
    if not rows:
        return {
            "total": 0, "absent_count": absent_count, "highest": 0, "lowest": 0, "average": 0,
            "median": 0, "pass_count": 0, "pass_percentage": 0, "grade_distribution": distribution,
        }
    scores = sorted(r[0] for r in rows)
    passed = sum(1 for r in rows if r[1] >= PASS_PERCENTAGE)
    for _, _, grade in rows:
        distribution[grade or "F"] = distribution.get(grade or "F", 0) + 1
    return {
        "total": len(rows),
        "absent_count": absent_count,
        "highest": scores[-1],
        "lowest": scores[0],
        "average": round(sum(scores) / len(scores), 2),
        "median": scores[len(scores) // 2],
        "pass_count": passed,
        "pass_percentage": round(passed / len(rows) * 100, 2),
        "grade_distribution": distribution,
    }

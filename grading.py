"""
Grade points, GPA/CGPA and course-outcome mark aggregation.

Everything here works on plain values so the same rules are shared by the
grade upload, the student dashboard and the CSV exports.
"""
from typing import Dict, Iterable, List, Optional, Tuple

GRADE_POINTS = {'O': 10, 'A+': 9, 'A': 8, 'B+': 7, 'B': 6, 'U': 0}
SKIP_MARKERS = {'', '-', 'AB', 'ABSENT', 'NAN', 'NONE'}
PARTITION_KEYS = {'THEORY': 'theory', 'PRACTICAL': 'practical', 'EXPERIENTIAL': 'experiential'}


class InvalidGradeError(ValueError):
    pass


def normalize_grade(value) -> Optional[str]:
    """
    Return the canonical grade for a sheet cell.
    Blank and absent markers give None, unknown grades raise InvalidGradeError.
    """
    if value is None:
        return None
    grade = str(value).strip().upper()
    if grade in SKIP_MARKERS:
        return None
    if grade not in GRADE_POINTS:
        raise InvalidGradeError(grade)
    return grade


def compute_gpa(records: Iterable[Tuple[float, str]]) -> Optional[float]:
    """
    Weighted grade point average over (credits, grade) pairs.
    U grades and zero-credit courses do not count. None when nothing counts.
    """
    total_points = 0.0
    total_credits = 0.0
    for credits, grade in records:
        credits = float(credits or 0)
        if grade == 'U' or credits <= 0 or grade not in GRADE_POINTS:
            continue
        total_points += credits * GRADE_POINTS[grade]
        total_credits += credits
    if total_credits == 0:
        return None
    return round(total_points / total_credits, 2)


def display_value(value) -> str:
    return '-' if value is None else f"{value:.2f}"


def co_mark(tools: List[Dict], marks: Dict[int, float]) -> float:
    """
    Weighted CO mark out of 100.

    tools: dicts with toolId, weightage and maxMarks
    marks: toolId -> marks obtained (missing counts as 0)
    """
    weighted = 0.0
    total_weight = 0.0
    for tool in tools:
        max_marks = float(tool.get('maxMarks') or 100)
        if max_marks <= 0:
            continue
        weightage = tool.get('weightage')
        weight = (100.0 if weightage is None else float(weightage)) / 100
        obtained = float(marks.get(tool['toolId']) or 0)
        weighted += (obtained / max_marks) * weight
        total_weight += weight
    if total_weight == 0:
        return 0.0
    return round(weighted / total_weight * 100, 2)


def consolidated_co_mark(tools: List[Dict], marks: Dict[int, float]) -> float:
    """Sum of weighted tool percentages, as shown in the CO-wise export."""
    total = 0.0
    for tool in tools:
        max_marks = float(tool.get('maxMarks') or 0)
        if max_marks <= 0:
            continue
        obtained = float(marks.get(tool['toolId']) or 0)
        total += (obtained / max_marks) * (float(tool.get('weightage') or 0) / 100)
    return round(total * 100, 2)


def partition_averages(co_marks: List[Tuple[str, float]]) -> Dict[str, float]:
    """Theory/practical/experiential averages and the final average of (coType, mark) pairs."""
    buckets = {key: [] for key in PARTITION_KEYS.values()}
    for co_type, mark in co_marks:
        key = PARTITION_KEYS.get((co_type or '').upper())
        if key:
            buckets[key].append(mark)

    result = {}
    for key, values in buckets.items():
        result[key] = round(sum(values) / len(values), 2) if values else 0.0

    typed = [mark for values in buckets.values() for mark in values]
    result['final'] = round(sum(typed) / len(typed), 2) if typed else 0.0
    return result

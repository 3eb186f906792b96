from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

DAY_CODES = ['MON', 'TUE', 'WED', 'THU', 'FRI', 'SAT']
PRESENT_STATUSES = {'P', 'OD'}


def dates_between(start: date, end: date) -> List[date]:
    if start > end:
        return []
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


def day_code(day: date) -> Optional[str]:
    """Timetable day code for a date, None on Sunday."""
    weekday = day.weekday()
    return DAY_CODES[weekday] if weekday < len(DAY_CODES) else None


def day_order(code: str) -> int:
    return DAY_CODES.index(code) if code in DAY_CODES else len(DAY_CODES)


def expand_timetable(entries: List[Dict], start: date, end: date) -> Dict[str, List[Dict]]:
    """Map each ISO date in the range to the timetable entries that fall on it."""
    by_day = {}
    for entry in sorted(entries, key=lambda e: (day_order(e['dayOfWeek']), e['periodNumber'])):
        by_day.setdefault(entry['dayOfWeek'], []).append(entry)

    schedule = {}
    for current in dates_between(start, end):
        code = day_code(current)
        schedule[current.isoformat()] = list(by_day.get(code, [])) if code else []
    return schedule


def summarize(statuses: Iterable[str]) -> Dict:
    total = 0
    present = 0
    for status in statuses:
        total += 1
        if status in PRESENT_STATUSES:
            present += 1
    percentage = round(present / total * 100, 2) if total else 0.0
    return {'total': total, 'present': present, 'percentage': percentage}


def find_unmarked(entries: List[Dict], start: date, end: date,
                  marked: Set[Tuple[str, int, int]]) -> List[Dict]:
    """
    Timetable periods in the range with no attendance at all.
    marked holds (iso date, period number, course id) keys that have records.
    """
    unmarked = []
    for iso_date, periods in expand_timetable(entries, start, end).items():
        for entry in periods:
            if (iso_date, entry['periodNumber'], entry['courseId']) in marked:
                continue
            unmarked.append({
                'date': iso_date,
                'dayOfWeek': entry['dayOfWeek'],
                'periodNumber': entry['periodNumber'],
                'courseId': entry['courseId'],
                'courseCode': entry.get('courseCode'),
                'courseTitle': entry.get('courseTitle'),
                'sectionId': entry.get('sectionId'),
                'sectionName': entry.get('sectionName'),
            })
    return unmarked
